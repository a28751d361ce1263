"""
CertChain — Issuance Coordinator

Writes one certificate across the three stores in a fixed order:

  1. content store — serialise the payload, ``put`` → pointer
  2. ledger        — ``mint`` → identifier (the commit point)
  3. index         — ``upsert_certificate``, best-effort

Steps 1 and 2 either succeed or abort the issuance with ``IssuanceFailed``.
Once the ledger has minted, the certificate exists: an index failure is
logged and the (identifier, pointer) pair goes onto the pending-sync queue
instead of failing the call.

Batches upload in parallel (bounded), mint once via ``batch_mint`` and keep
payload i ↔ pointer i ↔ identifier i throughout.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from certchain.primitives.certificate import CertificatePayload, IndexRecord
from certchain.primitives.errors import (
    ContentUnavailable,
    IndexUnavailable,
    IssuanceFailed,
    IssuanceStage,
    LedgerError,
)
from certchain.systems.issuance.csv_import import parse_batch_csv
from certchain.systems.issuance.types import (
    BatchIssuanceResult,
    CsvParseResult,
    IssuedCertificate,
    PendingIndexSync,
    RevocationResult,
)

if TYPE_CHECKING:
    from certchain.clients.content_store import ContentStoreClient
    from certchain.clients.index_store import IndexStore
    from certchain.clients.ledger import LedgerClient
    from certchain.config import IssuanceConfig

logger = structlog.get_logger("certchain.systems.issuance")

_REQUIRED_FIELDS = ("name", "issued_to", "issuer", "issue_date")


def _validate(payload: CertificatePayload, item_index: int | None = None) -> None:
    missing = [f for f in _REQUIRED_FIELDS if not getattr(payload, f).strip()]
    if missing:
        raise IssuanceFailed(
            IssuanceStage.VALIDATION,
            f"Missing required fields: {', '.join(missing)}",
            item_index=item_index,
        )


class IssuanceCoordinator:
    """
    Issues certificates across ledger, content store and index.

    Dependencies:
        ledger         -- authoritative mint / revoke
        content_store  -- payload bytes
        index          -- searchable copy (best-effort)
        config         -- IssuanceConfig
    """

    def __init__(
        self,
        ledger: LedgerClient,
        content_store: ContentStoreClient,
        index: IndexStore,
        config: IssuanceConfig,
    ) -> None:
        self._ledger = ledger
        self._content = content_store
        self._index = index
        self._config = config
        self._logger = logger.bind(component="issuance")

        # Pointers with a mint in flight. Single event loop: check-and-add
        # has no await in between, so no lock is needed.
        self._in_flight: set[str] = set()
        self._pending: list[PendingIndexSync] = []

    # ─── Single ───────────────────────────────────────────────────

    async def issue_one(self, payload: CertificatePayload) -> IssuedCertificate:
        _validate(payload)
        pointer = await self._upload(payload)

        if pointer in self._in_flight:
            raise IssuanceFailed(
                IssuanceStage.VALIDATION,
                "A mint for this payload is already in flight",
                content_pointer=pointer,
            )
        self._in_flight.add(pointer)
        try:
            request = payload.mint_request(pointer)
            try:
                receipt = await self._ledger.mint(
                    request.content_pointer,
                    request.holder_name,
                    request.issuer_name,
                    request.issue_date,
                )
            except LedgerError as exc:
                raise self._mint_failure(exc, [pointer]) from exc
        finally:
            self._in_flight.discard(pointer)

        issued = IssuedCertificate(
            identifier=receipt.identifier,
            content_pointer=pointer,
            tx_hash=receipt.tx_hash,
            gateway_url=self._content.gateway_url(pointer),
        )
        await self._sync_index(issued, payload)
        self._logger.info(
            "certificate_issued",
            identifier=issued.identifier,
            content_pointer=pointer,
            index_synced=issued.index_synced,
        )
        return issued

    # ─── Batch ────────────────────────────────────────────────────

    async def issue_batch(self, payloads: list[CertificatePayload]) -> BatchIssuanceResult:
        if not payloads:
            return BatchIssuanceResult()
        if len(payloads) > self._config.max_batch_size:
            raise IssuanceFailed(
                IssuanceStage.VALIDATION,
                f"Batch of {len(payloads)} exceeds the limit of {self._config.max_batch_size}",
            )
        for position, payload in enumerate(payloads):
            _validate(payload, item_index=position)

        pointers = await self._upload_all(payloads)

        for position, pointer in enumerate(pointers):
            if pointer in self._in_flight:
                raise IssuanceFailed(
                    IssuanceStage.VALIDATION,
                    "A mint for this payload is already in flight",
                    item_index=position,
                    content_pointer=pointer,
                )
        claimed = set(pointers)
        self._in_flight |= claimed
        try:
            requests = [p.mint_request(ptr) for p, ptr in zip(payloads, pointers, strict=True)]
            try:
                receipt = await self._ledger.batch_mint(requests)
            except LedgerError as exc:
                raise self._mint_failure(exc, pointers) from exc
        finally:
            self._in_flight -= claimed

        if len(receipt.identifiers) != len(payloads):
            self._logger.error(
                "ledger_receipt_mismatch",
                tx_hash=receipt.tx_hash,
                identifiers=receipt.identifiers,
                content_pointers=pointers,
            )
            raise IssuanceFailed(
                IssuanceStage.LEDGER_MINT,
                f"Ledger returned {len(receipt.identifiers)} identifiers "
                f"for {len(payloads)} certificates",
                content_pointers=pointers,
                tx_hash=receipt.tx_hash,
                outcome_unknown=True,
            )

        items = [
            IssuedCertificate(
                identifier=identifier,
                content_pointer=pointer,
                tx_hash=receipt.tx_hash,
                gateway_url=self._content.gateway_url(pointer),
            )
            for identifier, pointer in zip(receipt.identifiers, pointers, strict=True)
        ]
        await asyncio.gather(*(
            self._sync_index(item, payload)
            for item, payload in zip(items, payloads, strict=True)
        ))

        result = BatchIssuanceResult(items=items, tx_hash=receipt.tx_hash)
        self._logger.info(
            "certificate_batch_issued",
            count=len(items),
            tx_hash=receipt.tx_hash,
            unsynced=len(result.unsynced),
        )
        return result

    async def issue_csv(
        self, text: str, issuer_address: str = "",
    ) -> tuple[BatchIssuanceResult, CsvParseResult]:
        """Parse a CSV upload and issue its valid rows as one batch."""
        parsed = parse_batch_csv(text, issuer_address=issuer_address)
        return await self.issue_batch(parsed.payloads), parsed

    # ─── Revocation ───────────────────────────────────────────────

    async def revoke(self, identifier: int) -> RevocationResult:
        """
        Revoke on the ledger (authoritative; errors propagate), then mirror
        the flag into the index on a best-effort basis.
        """
        await self._ledger.revoke(identifier)
        result = RevocationResult(identifier=identifier)
        try:
            mirrored = await self._index.mark_revoked(identifier)
        except IndexUnavailable as exc:
            result.index_synced = False
            self._logger.error(
                "revocation_index_mirror_failed",
                identifier=identifier,
                error=str(exc),
            )
        else:
            if mirrored is None:
                # Ledger-only certificate: no index row carries the flag.
                result.index_synced = False
                self._logger.warning("revocation_index_row_missing", identifier=identifier)
        self._logger.info("certificate_revoked", identifier=identifier)
        return result

    # ─── Recovery ─────────────────────────────────────────────────

    async def locate_prior_mint(self, content_pointer: str) -> int | None:
        """
        Identifier the index holds for ``content_pointer``, if any.

        Used after an ``outcome_unknown`` failure to find out whether the
        mint landed before retrying.
        """
        try:
            record = await self._index.query_by_content_pointer(content_pointer)
        except IndexUnavailable as exc:
            self._logger.warning(
                "prior_mint_lookup_failed",
                content_pointer=content_pointer,
                error=str(exc),
            )
            return None
        return record.token_id if record is not None else None

    @property
    def pending_index_sync(self) -> list[PendingIndexSync]:
        return list(self._pending)

    async def retry_pending_index_sync(self) -> int:
        """Re-attempt queued index writes. Returns how many landed."""
        queued, self._pending = self._pending, []
        synced = 0
        for entry in queued:
            record = IndexRecord.from_payload(
                entry.payload,
                content_pointer=entry.content_pointer,
                token_id=entry.identifier,
                tx_hash=entry.tx_hash,
            )
            try:
                await self._index.upsert_certificate(record)
                synced += 1
            except IndexUnavailable as exc:
                self._pending.append(
                    entry.model_copy(update={"attempts": entry.attempts + 1, "error": str(exc)})
                )
        if queued:
            self._logger.info(
                "index_sync_retried", synced=synced, still_pending=len(self._pending),
            )
        return synced

    # ─── Internal ─────────────────────────────────────────────────

    async def _upload(self, payload: CertificatePayload, item_index: int | None = None) -> str:
        try:
            return await self._content.put(payload.serialize())
        except ContentUnavailable as exc:
            raise IssuanceFailed(
                IssuanceStage.PAYLOAD_UPLOAD,
                f"Payload upload failed: {exc}",
                item_index=item_index,
            ) from exc

    async def _upload_all(self, payloads: list[CertificatePayload]) -> list[str]:
        semaphore = asyncio.Semaphore(self._config.upload_concurrency)

        async def _bounded(position: int, payload: CertificatePayload) -> str:
            async with semaphore:
                return await self._upload(payload, item_index=position)

        tasks = [
            asyncio.create_task(_bounded(i, p), name=f"upload_{i}")
            for i, p in enumerate(payloads)
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    def _mint_failure(self, exc: LedgerError, pointers: list[str]) -> IssuanceFailed:
        outcome_unknown = getattr(exc, "outcome_unknown", False)
        tx_hash = getattr(exc, "tx_hash", None)
        self._logger.error(
            "ledger_mint_failed",
            content_pointers=pointers,
            outcome_unknown=outcome_unknown,
            tx_hash=tx_hash,
            error=str(exc),
        )
        return IssuanceFailed(
            IssuanceStage.LEDGER_MINT,
            f"Ledger mint failed: {exc}",
            content_pointer=pointers[0] if len(pointers) == 1 else None,
            content_pointers=pointers,
            tx_hash=tx_hash,
            outcome_unknown=outcome_unknown,
        )

    async def _sync_index(self, issued: IssuedCertificate, payload: CertificatePayload) -> None:
        record = IndexRecord.from_payload(
            payload,
            content_pointer=issued.content_pointer,
            token_id=issued.identifier,
            tx_hash=issued.tx_hash,
        )
        try:
            stored = await self._index.upsert_certificate(record)
            issued.index_record_id = stored.id
        except IndexUnavailable as exc:
            issued.index_synced = False
            self._pending.append(PendingIndexSync(
                identifier=issued.identifier,
                content_pointer=issued.content_pointer,
                tx_hash=issued.tx_hash,
                payload=payload,
                error=str(exc),
            ))
            self._logger.error(
                "index_sync_pending",
                identifier=issued.identifier,
                content_pointer=issued.content_pointer,
                error=str(exc),
            )
