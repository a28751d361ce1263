"""
CertChain — Index Store

Mutable, non-authoritative relational copy of certificate fields plus the
append-only verification log. It is a cache: it may be stale or absent, and
every failure surfaces as ``IndexUnavailable`` — never as "not found".

Upserts reconcile against an existing row by ledger identifier, then content
pointer, then legacy key, then surrogate id, so the same logical certificate
is never stored twice (legacy rows gain a token id; chain-first rows are
updated in place). A pointer or legacy-key match is only adopted when the row
has no token id yet or the same one: re-minting identical payload bytes is a
distinct certificate and gets its own row.

Backends:
  - ``InMemoryIndexStore``
  - ``PostgresIndexStore`` (asyncpg pool, schema created on connect)
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import asyncpg
import structlog

from certchain.primitives.certificate import (
    CertificateStats,
    IndexRecord,
    VerificationLogEntry,
)
from certchain.primitives.common import utc_now
from certchain.primitives.errors import IndexUnavailable

if TYPE_CHECKING:
    from certchain.config import IndexConfig

logger = structlog.get_logger("certchain.clients.index_store")

# Linkage fields: an incoming None never erases a known value.
_STICKY_FIELDS = ("token_id", "content_pointer", "roll_number", "blockchain_tx_hash")

# Match keys that may only adopt a row not yet bound to another ledger identifier.
_LINK_KEYS = ("content_pointer", "roll_number")


def merge_records(existing: IndexRecord, incoming: IndexRecord) -> IndexRecord:
    """
    Fold ``incoming`` into ``existing``.

    Keeps the surrogate id and creation time, never drops a known linkage
    field, and never un-revokes.
    """
    update = incoming.model_dump(exclude={"id", "created_at", "updated_at"})
    for field in _STICKY_FIELDS:
        if update[field] is None:
            update[field] = getattr(existing, field)
    update["is_revoked"] = existing.is_revoked or incoming.is_revoked
    update["updated_at"] = utc_now()
    return existing.model_copy(update=update)


def _adoptable(row: IndexRecord, incoming: IndexRecord) -> bool:
    return (
        incoming.token_id is None
        or row.token_id is None
        or row.token_id == incoming.token_id
    )


def _matches(record: IndexRecord, term: str) -> bool:
    needle = term.lower()
    return any(
        needle in value.lower()
        for value in (record.name, record.issued_to, record.issuer, record.organization)
    )


def _newest_first(records: list[IndexRecord]) -> list[IndexRecord]:
    return sorted(records, key=lambda r: (r.created_at, r.id), reverse=True)


# ─── Interface ────────────────────────────────────────────────────


class IndexStore(ABC):
    """Abstract searchable certificate index + audit log."""

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def health_check(self) -> dict[str, Any]:
        return {"status": "connected"}

    @abstractmethod
    async def upsert_certificate(self, record: IndexRecord) -> IndexRecord: ...

    @abstractmethod
    async def query_by_issuer(self, wallet_address: str) -> list[IndexRecord]:
        """Newest first."""
        ...

    @abstractmethod
    async def query_by_identifier(self, token_id: int) -> IndexRecord | None: ...

    @abstractmethod
    async def query_by_content_pointer(self, pointer: str) -> IndexRecord | None: ...

    @abstractmethod
    async def query_by_legacy_key(self, key: str) -> IndexRecord | None:
        """Case-sensitive exact match on ``roll_number``."""
        ...

    @abstractmethod
    async def query_by_recipient(self, name: str) -> list[IndexRecord]: ...

    @abstractmethod
    async def search(
        self, term: str, issuer_wallet_address: str | None = None,
    ) -> list[IndexRecord]:
        """Case-insensitive substring over name, recipient, issuer, organisation."""
        ...

    @abstractmethod
    async def recent_certificates(self, limit: int = 10) -> list[IndexRecord]:
        """Non-revoked, newest first."""
        ...

    @abstractmethod
    async def mark_revoked(self, token_id: int) -> IndexRecord | None: ...

    @abstractmethod
    async def stats(self, wallet_address: str) -> CertificateStats: ...

    @abstractmethod
    async def append_verification_log(self, entry: VerificationLogEntry) -> None: ...

    @abstractmethod
    async def query_recent_log(self, n: int = 10) -> list[VerificationLogEntry]:
        """Newest first."""
        ...

    @abstractmethod
    async def verification_history(self, token_id: int) -> list[VerificationLogEntry]:
        """Newest first."""
        ...


# ─── In-memory backend ────────────────────────────────────────────


class InMemoryIndexStore(IndexStore):
    def __init__(self) -> None:
        self._records: dict[str, IndexRecord] = {}
        self._log: list[VerificationLogEntry] = []

    def _find_existing(self, record: IndexRecord) -> IndexRecord | None:
        rows = list(self._records.values())
        match_keys = (
            ("token_id", record.token_id),
            ("content_pointer", record.content_pointer),
            ("roll_number", record.roll_number),
        )
        for field, value in match_keys:
            if value is None:
                continue
            for row in rows:
                if getattr(row, field) != value:
                    continue
                if field in _LINK_KEYS and not _adoptable(row, record):
                    continue
                return row
        return self._records.get(record.id)

    async def upsert_certificate(self, record: IndexRecord) -> IndexRecord:
        existing = self._find_existing(record)
        stored = merge_records(existing, record) if existing else record
        self._records[stored.id] = stored
        return stored

    async def query_by_issuer(self, wallet_address: str) -> list[IndexRecord]:
        return _newest_first([
            r for r in self._records.values() if r.issuer_wallet_address == wallet_address
        ])

    async def query_by_identifier(self, token_id: int) -> IndexRecord | None:
        return next((r for r in self._records.values() if r.token_id == token_id), None)

    async def query_by_content_pointer(self, pointer: str) -> IndexRecord | None:
        return next(
            (r for r in self._records.values() if r.content_pointer == pointer), None,
        )

    async def query_by_legacy_key(self, key: str) -> IndexRecord | None:
        return next((r for r in self._records.values() if r.roll_number == key), None)

    async def query_by_recipient(self, name: str) -> list[IndexRecord]:
        needle = name.lower()
        return _newest_first([
            r for r in self._records.values() if needle in r.issued_to.lower()
        ])

    async def search(
        self, term: str, issuer_wallet_address: str | None = None,
    ) -> list[IndexRecord]:
        rows = [
            r for r in self._records.values()
            if issuer_wallet_address is None or r.issuer_wallet_address == issuer_wallet_address
        ]
        if term:
            rows = [r for r in rows if _matches(r, term)]
        return _newest_first(rows)

    async def recent_certificates(self, limit: int = 10) -> list[IndexRecord]:
        return _newest_first([r for r in self._records.values() if not r.is_revoked])[:limit]

    async def mark_revoked(self, token_id: int) -> IndexRecord | None:
        existing = await self.query_by_identifier(token_id)
        if existing is None:
            return None
        updated = existing.model_copy(update={"is_revoked": True, "updated_at": utc_now()})
        self._records[updated.id] = updated
        return updated

    async def stats(self, wallet_address: str) -> CertificateStats:
        return CertificateStats.from_records(await self.query_by_issuer(wallet_address))

    async def append_verification_log(self, entry: VerificationLogEntry) -> None:
        self._log.append(entry)

    async def query_recent_log(self, n: int = 10) -> list[VerificationLogEntry]:
        return sorted(self._log, key=lambda e: (e.verified_at, e.id), reverse=True)[:n]

    async def verification_history(self, token_id: int) -> list[VerificationLogEntry]:
        return sorted(
            (e for e in self._log if e.token_id == token_id),
            key=lambda e: (e.verified_at, e.id),
            reverse=True,
        )

    @property
    def record_count(self) -> int:
        return len(self._records)

    @property
    def log_count(self) -> int:
        return len(self._log)


# ─── Postgres backend ─────────────────────────────────────────────

TABLE_SQL = """
CREATE TABLE IF NOT EXISTS certificates (
    id                        TEXT PRIMARY KEY,
    token_id                  BIGINT,
    content_pointer           TEXT,
    name                      TEXT NOT NULL DEFAULT '',
    issued_to                 TEXT NOT NULL DEFAULT '',
    issuer                    TEXT NOT NULL DEFAULT '',
    organization              TEXT NOT NULL DEFAULT '',
    issue_date                TEXT NOT NULL DEFAULT '',
    expiry_date               TEXT,
    certificate_type          TEXT NOT NULL DEFAULT '',
    issuer_wallet_address     TEXT NOT NULL DEFAULT '',
    recipient_wallet_address  TEXT,
    additional_details        TEXT,
    blockchain_tx_hash        TEXT,
    roll_number               TEXT,
    is_revoked                BOOLEAN NOT NULL DEFAULT FALSE,
    created_at                TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at                TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_certificates_token_id
    ON certificates (token_id) WHERE token_id IS NOT NULL;
DROP INDEX IF EXISTS uq_certificates_content_pointer;
CREATE UNIQUE INDEX IF NOT EXISTS uq_certificates_pointer_token
    ON certificates (content_pointer, token_id) WHERE content_pointer IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_certificates_content_pointer ON certificates (content_pointer);
CREATE INDEX IF NOT EXISTS idx_certificates_roll_number ON certificates (roll_number);
CREATE INDEX IF NOT EXISTS idx_certificates_issuer
    ON certificates (issuer_wallet_address, created_at DESC);

CREATE TABLE IF NOT EXISTS verification_logs (
    id                    TEXT PRIMARY KEY,
    verified_at           TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    kind                  TEXT NOT NULL,
    outcome               TEXT NOT NULL,
    token_id              BIGINT,
    extracted_identifier  TEXT,
    matched_record_id     TEXT,
    requester             JSONB NOT NULL DEFAULT '{}',
    extracted_details     JSONB,
    message               TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_verification_logs_time ON verification_logs (verified_at DESC);
CREATE INDEX IF NOT EXISTS idx_verification_logs_token
    ON verification_logs (token_id, verified_at DESC);
"""

_CERT_COLUMNS = (
    "id", "token_id", "content_pointer", "name", "issued_to", "issuer",
    "organization", "issue_date", "expiry_date", "certificate_type",
    "issuer_wallet_address", "recipient_wallet_address", "additional_details",
    "blockchain_tx_hash", "roll_number", "is_revoked", "created_at", "updated_at",
)
_CERT_SELECT = f"SELECT {', '.join(_CERT_COLUMNS)} FROM certificates"

_LOG_COLUMNS = (
    "id", "verified_at", "kind", "outcome", "token_id", "extracted_identifier",
    "matched_record_id", "requester", "extracted_details", "message",
)


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_record(row: asyncpg.Record) -> IndexRecord:
    return IndexRecord.model_validate(dict(row))


def _row_to_entry(row: asyncpg.Record) -> VerificationLogEntry:
    data = dict(row)
    data["requester"] = json.loads(data["requester"]) if data["requester"] else {}
    if data["extracted_details"]:
        data["extracted_details"] = json.loads(data["extracted_details"])
    return VerificationLogEntry.model_validate(data)


class PostgresIndexStore(IndexStore):
    """
    Async Postgres index with connection pooling.
    """

    def __init__(self, config: IndexConfig) -> None:
        self._config = config
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        """Create connection pool and initialise schema."""
        self._pool = await asyncpg.create_pool(
            dsn=self._config.dsn,
            min_size=1,
            max_size=self._config.pool_size,
            ssl="require" if self._config.ssl else None,
            command_timeout=self._config.command_timeout_s,
        )
        logger.info(
            "index_store_connected",
            host=self._config.host,
            database=self._config.database,
        )
        async with self._pool.acquire() as conn:
            for statement in TABLE_SQL.split(";"):
                stmt = statement.strip()
                if stmt:
                    await conn.execute(stmt)
        logger.info("index_store_schema_initialised")

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("index_store_disconnected")

    async def health_check(self) -> dict[str, Any]:
        try:
            async with self._acquire() as conn:
                await conn.fetchval("SELECT 1")
            return {"status": "connected"}
        except IndexUnavailable as e:
            logger.error("index_health_check_failed", error=str(e))
            return {"status": "disconnected", "error": str(e)}

    @asynccontextmanager
    async def _acquire(self) -> AsyncIterator[asyncpg.Connection]:
        """Borrow a connection; translate every driver failure to IndexUnavailable."""
        if self._pool is None:
            raise IndexUnavailable("Index store not connected")
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
            raise IndexUnavailable(f"Index store error: {exc}") from exc

    # ── Certificates ──────────────────────────────────────────

    async def upsert_certificate(self, record: IndexRecord) -> IndexRecord:
        async with self._acquire() as conn, conn.transaction():
            existing_row = None
            match_keys = (
                ("token_id", record.token_id),
                ("content_pointer", record.content_pointer),
                ("roll_number", record.roll_number),
                ("id", record.id),
            )
            for column, value in match_keys:
                if value is None:
                    continue
                sql = f"{_CERT_SELECT} WHERE {column} = $1"
                args: list[Any] = [value]
                if column in _LINK_KEYS and record.token_id is not None:
                    sql += " AND (token_id IS NULL OR token_id = $2)"
                    args.append(record.token_id)
                existing_row = await conn.fetchrow(
                    f"{sql} ORDER BY created_at LIMIT 1 FOR UPDATE", *args,
                )
                if existing_row is not None:
                    break

            if existing_row is not None:
                stored = merge_records(_row_to_record(existing_row), record)
                assignments = ", ".join(
                    f"{col} = ${i}" for i, col in enumerate(_CERT_COLUMNS[1:], start=2)
                )
                await conn.execute(
                    f"UPDATE certificates SET {assignments} WHERE id = $1",
                    *(getattr(stored, col) for col in _CERT_COLUMNS),
                )
            else:
                stored = record
                placeholders = ", ".join(f"${i}" for i in range(1, len(_CERT_COLUMNS) + 1))
                await conn.execute(
                    f"INSERT INTO certificates ({', '.join(_CERT_COLUMNS)}) "
                    f"VALUES ({placeholders})",
                    *(getattr(stored, col) for col in _CERT_COLUMNS),
                )
        return stored

    async def _fetch_records(self, sql: str, *args: Any) -> list[IndexRecord]:
        async with self._acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [_row_to_record(row) for row in rows]

    async def _fetch_record(self, sql: str, *args: Any) -> IndexRecord | None:
        async with self._acquire() as conn:
            row = await conn.fetchrow(sql, *args)
        return _row_to_record(row) if row is not None else None

    async def query_by_issuer(self, wallet_address: str) -> list[IndexRecord]:
        return await self._fetch_records(
            f"{_CERT_SELECT} WHERE issuer_wallet_address = $1 ORDER BY created_at DESC",
            wallet_address,
        )

    async def query_by_identifier(self, token_id: int) -> IndexRecord | None:
        return await self._fetch_record(f"{_CERT_SELECT} WHERE token_id = $1", token_id)

    async def query_by_content_pointer(self, pointer: str) -> IndexRecord | None:
        return await self._fetch_record(
            f"{_CERT_SELECT} WHERE content_pointer = $1", pointer,
        )

    async def query_by_legacy_key(self, key: str) -> IndexRecord | None:
        return await self._fetch_record(
            f"{_CERT_SELECT} WHERE roll_number = $1 ORDER BY created_at LIMIT 1", key,
        )

    async def query_by_recipient(self, name: str) -> list[IndexRecord]:
        return await self._fetch_records(
            f"{_CERT_SELECT} WHERE issued_to ILIKE $1 ESCAPE '\\' ORDER BY created_at DESC",
            f"%{_escape_like(name)}%",
        )

    async def search(
        self, term: str, issuer_wallet_address: str | None = None,
    ) -> list[IndexRecord]:
        clauses: list[str] = []
        args: list[Any] = []
        if issuer_wallet_address is not None:
            args.append(issuer_wallet_address)
            clauses.append(f"issuer_wallet_address = ${len(args)}")
        if term:
            args.append(f"%{_escape_like(term)}%")
            n = len(args)
            clauses.append(
                "(" + " OR ".join(
                    f"{col} ILIKE ${n} ESCAPE '\\'"
                    for col in ("name", "issued_to", "issuer", "organization")
                ) + ")"
            )
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return await self._fetch_records(f"{_CERT_SELECT}{where} ORDER BY created_at DESC", *args)

    async def recent_certificates(self, limit: int = 10) -> list[IndexRecord]:
        return await self._fetch_records(
            f"{_CERT_SELECT} WHERE NOT is_revoked ORDER BY created_at DESC LIMIT $1", limit,
        )

    async def mark_revoked(self, token_id: int) -> IndexRecord | None:
        return await self._fetch_record(
            "UPDATE certificates SET is_revoked = TRUE, updated_at = NOW() "
            f"WHERE token_id = $1 RETURNING {', '.join(_CERT_COLUMNS)}",
            token_id,
        )

    async def stats(self, wallet_address: str) -> CertificateStats:
        # Expiry dates are free-form text; classify in Python like the
        # in-memory backend so both agree.
        return CertificateStats.from_records(await self.query_by_issuer(wallet_address))

    # ── Verification log ──────────────────────────────────────

    async def append_verification_log(self, entry: VerificationLogEntry) -> None:
        row = entry.to_row()
        async with self._acquire() as conn:
            await conn.execute(
                f"INSERT INTO verification_logs ({', '.join(_LOG_COLUMNS)}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9::jsonb, $10)",
                *(row[col] for col in _LOG_COLUMNS),
            )

    async def _fetch_entries(self, sql: str, *args: Any) -> list[VerificationLogEntry]:
        async with self._acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [_row_to_entry(row) for row in rows]

    async def query_recent_log(self, n: int = 10) -> list[VerificationLogEntry]:
        return await self._fetch_entries(
            f"SELECT {', '.join(_LOG_COLUMNS)} FROM verification_logs "
            "ORDER BY verified_at DESC LIMIT $1",
            n,
        )

    async def verification_history(self, token_id: int) -> list[VerificationLogEntry]:
        return await self._fetch_entries(
            f"SELECT {', '.join(_LOG_COLUMNS)} FROM verification_logs "
            "WHERE token_id = $1 ORDER BY verified_at DESC",
            token_id,
        )


# ─── Factory ──────────────────────────────────────────────────────


def create_index_store(config: IndexConfig) -> IndexStore:
    if config.backend == "postgres":
        return PostgresIndexStore(config)
    return InMemoryIndexStore()
