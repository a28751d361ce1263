"""
CertChain — Resolution Engine

Reconstructs one certificate from the three stores.

The ledger decides existence: if it has no record the certificate does not
exist, whatever the other stores say. Once it exists, revocation is read
from the ledger too; the content store and the index only fill in the rest
and may each be unavailable, in which case the result is returned degraded
rather than failing.

Every resolution (including not-found) is audited through a detached task,
so a slow or broken index never delays the caller.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from certchain.primitives.certificate import (
    CertificatePayload,
    IndexRecord,
    VerificationKind,
    VerificationLogEntry,
    VerificationOutcome,
)
from certchain.primitives.common import RequesterInfo
from certchain.primitives.errors import (
    CertificateNotFound,
    ContentUnavailable,
    IndexUnavailable,
    InvalidContentPointer,
    NotFound,
)
from certchain.systems.resolution.merge import merge_views
from certchain.systems.resolution.types import ResolvedCertificate, VerificationHistory

if TYPE_CHECKING:
    from certchain.clients.content_store import ContentStoreClient
    from certchain.clients.index_store import IndexStore
    from certchain.clients.ledger import LedgerClient
    from certchain.config import ResolutionConfig
    from certchain.core.tasks import DetachedTaskRunner

logger = structlog.get_logger("certchain.systems.resolution")


class ResolutionEngine:
    """
    Dependencies:
        ledger         -- existence and revocation (authoritative)
        content_store  -- payload fields
        index          -- denormalised fields, audit log
        config         -- ResolutionConfig (auxiliary read timeouts)
        tasks          -- detached runner for audit writes
    """

    def __init__(
        self,
        ledger: LedgerClient,
        content_store: ContentStoreClient,
        index: IndexStore,
        config: ResolutionConfig,
        tasks: DetachedTaskRunner,
    ) -> None:
        self._ledger = ledger
        self._content = content_store
        self._index = index
        self._config = config
        self._tasks = tasks
        self._logger = logger.bind(component="resolution")

    async def resolve(
        self, identifier: int, requester: RequesterInfo | None = None,
    ) -> ResolvedCertificate:
        requester = requester or RequesterInfo()
        try:
            core = await self._ledger.get(identifier)
        except NotFound as exc:
            self._audit(
                identifier,
                VerificationOutcome.NOT_FOUND,
                requester,
                "Ledger has no certificate with this identifier",
            )
            raise CertificateNotFound(identifier) from exc

        revoked_task = asyncio.create_task(self._ledger.is_revoked(identifier))
        payload_task = asyncio.create_task(self._read_payload(core.content_pointer))
        record_task = asyncio.create_task(self._read_index(identifier, core.content_pointer))
        tasks = (revoked_task, payload_task, record_task)
        try:
            revoked, (payload, payload_unavailable), (record, index_unavailable) = (
                await asyncio.gather(*tasks)
            )
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        fields, conflicts = merge_views(core, revoked, payload, record)
        resolved = ResolvedCertificate(
            identifier=identifier,
            content_pointer=core.content_pointer,
            revoked=revoked,
            fields=fields,
            conflicts=conflicts,
            gateway_url=self._content.gateway_url(core.content_pointer),
            index_record_id=record.id if record is not None else None,
            payload_unavailable=payload_unavailable,
            index_unavailable=index_unavailable,
        )
        if conflicts:
            self._logger.warning(
                "resolution_sources_disagree",
                identifier=identifier,
                fields=sorted({c.field for c in conflicts}),
            )

        self._audit(
            identifier,
            VerificationOutcome.RESOLVED,
            requester,
            "degraded" if resolved.is_degraded else "",
        )
        return resolved

    async def verification_history(self, identifier: int) -> VerificationHistory:
        """Audit trail for one certificate, newest first. IndexUnavailable propagates."""
        entries = await self._index.verification_history(identifier)
        return VerificationHistory(identifier=identifier, entries=entries)

    # ─── Auxiliary reads ──────────────────────────────────────────

    async def _read_payload(self, pointer: str) -> tuple[CertificatePayload | None, bool]:
        try:
            raw = await asyncio.wait_for(
                self._content.get(pointer), timeout=self._config.payload_timeout_s,
            )
            return CertificatePayload.deserialize(raw), False
        except (ContentUnavailable, InvalidContentPointer, TimeoutError) as exc:
            error: Any = exc
        except ValidationError as exc:
            error = f"undecodable payload: {exc.error_count()} errors"
        self._logger.warning(
            "resolution_payload_unavailable",
            content_pointer=pointer,
            error=str(error) or type(error).__name__,
        )
        return None, True

    async def _read_index(
        self, identifier: int, pointer: str,
    ) -> tuple[IndexRecord | None, bool]:
        try:
            record = await asyncio.wait_for(
                self._index.query_by_identifier(identifier),
                timeout=self._config.index_timeout_s,
            )
            if record is None:
                # Chain-first row whose identifier never got synced
                record = await asyncio.wait_for(
                    self._index.query_by_content_pointer(pointer),
                    timeout=self._config.index_timeout_s,
                )
            return record, False
        except (IndexUnavailable, TimeoutError) as exc:
            self._logger.warning(
                "resolution_index_unavailable",
                identifier=identifier,
                error=str(exc) or type(exc).__name__,
            )
            return None, True

    # ─── Audit ────────────────────────────────────────────────────

    def _audit(
        self,
        identifier: int,
        outcome: VerificationOutcome,
        requester: RequesterInfo,
        message: str,
    ) -> None:
        entry = VerificationLogEntry(
            kind=VerificationKind.LEDGER,
            outcome=outcome,
            token_id=identifier,
            requester=requester,
            message=message,
        )
        self._tasks.spawn(
            self._index.append_verification_log(entry),
            name=f"resolution_audit_{identifier}",
        )
