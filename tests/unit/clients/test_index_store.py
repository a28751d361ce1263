"""
Unit tests for the index store.

Covers the reconciling upsert (no duplicate rows for one logical
certificate), query ordering, stats classification, the verification log,
and error translation in the Postgres backend.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from certchain.clients.index_store import (
    InMemoryIndexStore,
    PostgresIndexStore,
    TABLE_SQL,
    _escape_like,
    create_index_store,
)
from certchain.config import IndexConfig
from certchain.primitives.certificate import (
    IndexRecord,
    VerificationKind,
    VerificationLogEntry,
    VerificationOutcome,
)
from certchain.primitives.errors import IndexUnavailable

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_record(**overrides) -> IndexRecord:
    fields = {
        "name": "Certificate of Completion",
        "issued_to": "Ada Lovelace",
        "issuer": "Analytical Engine Society",
        "organization": "AES",
        "issue_date": "2024-05-01",
        "certificate_type": "completion",
        "issuer_wallet_address": "0xissuer",
    }
    return IndexRecord(**{**fields, **overrides})


def make_entry(token_id: int | None, minutes: int, **overrides) -> VerificationLogEntry:
    fields = {
        "kind": VerificationKind.LEDGER,
        "outcome": VerificationOutcome.RESOLVED,
        "token_id": token_id,
        "verified_at": BASE_TIME + timedelta(minutes=minutes),
    }
    return VerificationLogEntry(**{**fields, **overrides})


# ─── Upsert reconciliation ────────────────────────────────────────────────────


class TestUpsert:
    @pytest.mark.asyncio
    async def test_same_token_id_updates_in_place(self) -> None:
        store = InMemoryIndexStore()
        first = await store.upsert_certificate(make_record(token_id=7, organization="Old"))
        second = await store.upsert_certificate(make_record(token_id=7, organization="New"))

        assert store.record_count == 1
        assert second.id == first.id
        assert second.created_at == first.created_at
        assert (await store.query_by_identifier(7)).organization == "New"

    @pytest.mark.asyncio
    async def test_legacy_record_gains_token_id(self) -> None:
        store = InMemoryIndexStore()
        legacy = await store.upsert_certificate(make_record(roll_number="R-100"))

        merged = await store.upsert_certificate(make_record(roll_number="R-100", token_id=3))

        assert store.record_count == 1
        assert merged.id == legacy.id
        assert merged.token_id == 3

    @pytest.mark.asyncio
    async def test_chain_first_record_reconciles_by_pointer(self) -> None:
        store = InMemoryIndexStore()
        await store.upsert_certificate(make_record(content_pointer="ptr-a"))

        await store.upsert_certificate(make_record(content_pointer="ptr-a", token_id=9))

        assert store.record_count == 1
        assert (await store.query_by_content_pointer("ptr-a")).token_id == 9

    @pytest.mark.asyncio
    async def test_known_linkage_is_never_erased(self) -> None:
        store = InMemoryIndexStore()
        original = await store.upsert_certificate(
            make_record(token_id=1, content_pointer="ptr-a", blockchain_tx_hash="0xabc"),
        )
        update = make_record(content_pointer="ptr-a", organization="Renamed")
        update = update.model_copy(update={"id": original.id})

        merged = await store.upsert_certificate(update)

        assert merged.token_id == 1
        assert merged.blockchain_tx_hash == "0xabc"
        assert merged.organization == "Renamed"

    @pytest.mark.asyncio
    async def test_upsert_never_unrevokes(self) -> None:
        store = InMemoryIndexStore()
        await store.upsert_certificate(make_record(token_id=1))
        await store.mark_revoked(1)

        merged = await store.upsert_certificate(make_record(token_id=1, is_revoked=False))

        assert merged.is_revoked is True

    @pytest.mark.asyncio
    async def test_distinct_certificates_get_distinct_rows(self) -> None:
        store = InMemoryIndexStore()
        await store.upsert_certificate(make_record(token_id=1, content_pointer="a"))
        await store.upsert_certificate(make_record(token_id=2, content_pointer="b"))
        assert store.record_count == 2

    @pytest.mark.asyncio
    async def test_re_mint_of_same_pointer_gets_its_own_row(self) -> None:
        store = InMemoryIndexStore()
        first = await store.upsert_certificate(make_record(token_id=0, content_pointer="ptr-a"))
        second = await store.upsert_certificate(make_record(token_id=1, content_pointer="ptr-a"))

        assert store.record_count == 2
        assert second.id != first.id
        assert (await store.query_by_identifier(0)).id == first.id
        assert (await store.query_by_identifier(1)).id == second.id

    @pytest.mark.asyncio
    async def test_chain_first_row_is_adopted_once(self) -> None:
        store = InMemoryIndexStore()
        pending = await store.upsert_certificate(make_record(content_pointer="ptr-a"))

        adopted = await store.upsert_certificate(make_record(token_id=4, content_pointer="ptr-a"))
        fresh = await store.upsert_certificate(make_record(token_id=5, content_pointer="ptr-a"))

        assert adopted.id == pending.id
        assert fresh.id != pending.id
        assert store.record_count == 2

    @pytest.mark.asyncio
    async def test_legacy_key_bound_to_other_token_is_not_reused(self) -> None:
        store = InMemoryIndexStore()
        await store.upsert_certificate(make_record(roll_number="R-1", token_id=3))

        await store.upsert_certificate(make_record(roll_number="R-1", token_id=8))

        assert store.record_count == 2
        assert (await store.query_by_identifier(3)).roll_number == "R-1"


# ─── Queries ──────────────────────────────────────────────────────────────────


class TestQueries:
    @pytest.mark.asyncio
    async def test_query_by_issuer_newest_first(self) -> None:
        store = InMemoryIndexStore()
        for i in range(3):
            await store.upsert_certificate(
                make_record(token_id=i, created_at=BASE_TIME + timedelta(days=i)),
            )
        await store.upsert_certificate(make_record(token_id=99, issuer_wallet_address="0xother"))

        records = await store.query_by_issuer("0xissuer")

        assert [r.token_id for r in records] == [2, 1, 0]

    @pytest.mark.asyncio
    async def test_legacy_key_is_exact_and_case_sensitive(self) -> None:
        store = InMemoryIndexStore()
        await store.upsert_certificate(make_record(roll_number="AB-12"))
        assert await store.query_by_legacy_key("AB-12") is not None
        assert await store.query_by_legacy_key("ab-12") is None
        assert await store.query_by_legacy_key("AB-1") is None

    @pytest.mark.asyncio
    async def test_search_is_case_insensitive_across_fields(self) -> None:
        store = InMemoryIndexStore()
        await store.upsert_certificate(make_record(token_id=1, issued_to="Grace Hopper"))
        await store.upsert_certificate(make_record(token_id=2, organization="Navy Labs"))
        await store.upsert_certificate(
            make_record(token_id=3, issued_to="Grace Brewster", issuer_wallet_address="0xother"),
        )

        assert {r.token_id for r in await store.search("grace")} == {1, 3}
        assert {r.token_id for r in await store.search("NAVY")} == {2}
        assert {r.token_id for r in await store.search("grace", "0xother")} == {3}
        assert len(await store.search("")) == 3

    @pytest.mark.asyncio
    async def test_query_by_recipient(self) -> None:
        store = InMemoryIndexStore()
        await store.upsert_certificate(make_record(token_id=1, issued_to="Grace Hopper"))
        await store.upsert_certificate(make_record(token_id=2, issued_to="Ada Lovelace"))
        assert [r.token_id for r in await store.query_by_recipient("hopper")] == [1]

    @pytest.mark.asyncio
    async def test_recent_excludes_revoked_and_respects_limit(self) -> None:
        store = InMemoryIndexStore()
        for i in range(5):
            await store.upsert_certificate(
                make_record(token_id=i, created_at=BASE_TIME + timedelta(hours=i)),
            )
        await store.mark_revoked(4)

        recent = await store.recent_certificates(limit=2)

        assert [r.token_id for r in recent] == [3, 2]

    @pytest.mark.asyncio
    async def test_mark_revoked_unknown_returns_none(self) -> None:
        assert await InMemoryIndexStore().mark_revoked(5) is None


# ─── Stats ────────────────────────────────────────────────────────────────────


class TestStats:
    @pytest.mark.asyncio
    async def test_revoked_wins_over_expired(self) -> None:
        store = InMemoryIndexStore()
        await store.upsert_certificate(make_record(token_id=1))
        await store.upsert_certificate(make_record(token_id=2, expiry_date="2000-01-01"))
        await store.upsert_certificate(make_record(token_id=3, expiry_date="2000-01-01"))
        await store.upsert_certificate(make_record(token_id=4, expiry_date="2999-01-01"))
        await store.mark_revoked(3)

        stats = await store.stats("0xissuer")

        assert (stats.total, stats.valid, stats.revoked, stats.expired) == (4, 2, 1, 1)

    @pytest.mark.asyncio
    async def test_unparseable_expiry_counts_as_valid(self) -> None:
        store = InMemoryIndexStore()
        await store.upsert_certificate(make_record(token_id=1, expiry_date="next spring"))
        stats = await store.stats("0xissuer")
        assert stats.valid == 1


# ─── Verification log ─────────────────────────────────────────────────────────


class TestVerificationLog:
    @pytest.mark.asyncio
    async def test_recent_log_newest_first(self) -> None:
        store = InMemoryIndexStore()
        for minutes in (5, 1, 9):
            await store.append_verification_log(make_entry(1, minutes))

        entries = await store.query_recent_log(2)

        assert [e.verified_at.minute for e in entries] == [9, 5]

    @pytest.mark.asyncio
    async def test_history_is_per_certificate(self) -> None:
        store = InMemoryIndexStore()
        await store.append_verification_log(make_entry(1, 1))
        await store.append_verification_log(make_entry(2, 2))
        await store.append_verification_log(make_entry(1, 3))

        history = await store.verification_history(1)

        assert [e.verified_at.minute for e in history] == [3, 1]
        assert store.log_count == 3

    def test_log_row_flattens_nested_fields(self) -> None:
        row = make_entry(None, 0, kind=VerificationKind.LEGACY, extracted_identifier="R-1").to_row()
        assert row["kind"] == "legacy"
        assert row["extracted_identifier"] == "R-1"
        assert isinstance(row["requester"], str)
        assert row["extracted_details"] is None


# ─── Postgres backend ─────────────────────────────────────────────────────────


class _RefusingAcquire:
    async def __aenter__(self):
        raise OSError("connection refused")

    async def __aexit__(self, *exc_info) -> None:
        return None


class _Borrowed:
    def __init__(self, value) -> None:
        self._value = value

    async def __aenter__(self):
        return self._value

    async def __aexit__(self, *exc_info) -> None:
        return None


class TestPostgresIndexStore:
    @pytest.mark.asyncio
    async def test_unconnected_store_is_unavailable(self) -> None:
        store = PostgresIndexStore(IndexConfig(backend="postgres"))
        with pytest.raises(IndexUnavailable):
            await store.query_by_identifier(1)

    @pytest.mark.asyncio
    async def test_driver_errors_become_index_unavailable(self) -> None:
        store = PostgresIndexStore(IndexConfig(backend="postgres"))
        pool = MagicMock()
        pool.acquire.return_value = _RefusingAcquire()
        store._pool = pool

        with pytest.raises(IndexUnavailable, match="connection refused"):
            await store.query_by_legacy_key("R-1")

        health = await store.health_check()
        assert health["status"] == "disconnected"

    def test_like_patterns_are_escaped(self) -> None:
        assert _escape_like("100%_a\\b") == "100\\%\\_a\\\\b"

    def test_factory_selects_backend(self) -> None:
        assert isinstance(create_index_store(IndexConfig()), InMemoryIndexStore)
        assert isinstance(
            create_index_store(IndexConfig(backend="postgres")), PostgresIndexStore,
        )

    @pytest.mark.asyncio
    async def test_pointer_lookup_skips_rows_bound_to_other_tokens(self) -> None:
        store = PostgresIndexStore(IndexConfig(backend="postgres"))
        conn = MagicMock()
        conn.fetchrow = AsyncMock(return_value=None)
        conn.execute = AsyncMock()
        conn.transaction.return_value = _Borrowed(None)
        pool = MagicMock()
        pool.acquire.return_value = _Borrowed(conn)
        store._pool = pool

        await store.upsert_certificate(make_record(token_id=5, content_pointer="ptr-a"))

        pointer_lookup = conn.fetchrow.await_args_list[1].args
        assert "content_pointer = $1" in pointer_lookup[0]
        assert "token_id IS NULL OR token_id = $2" in pointer_lookup[0]
        assert pointer_lookup[1:] == ("ptr-a", 5)
        assert conn.execute.await_args.args[0].startswith("INSERT INTO certificates")

    def test_schema_allows_several_rows_per_pointer(self) -> None:
        assert "(content_pointer, token_id)" in TABLE_SQL
        assert "ON certificates (content_pointer) WHERE" not in TABLE_SQL
