"""
CertChain — Legacy Document Matcher

Verifies certificates issued before the ledger existed. A scanned document
is recognised to text, the roll number and holder name are extracted, and
the roll number is looked up in the index:

  not present                         → NotFound
  present, name given and different   → Mismatch
  present otherwise                   → Verified
  extraction impossible / index down  → Error

Every run that gets past recognition leaves exactly one verification-log
entry. The write is awaited and shielded: a caller cancelling after
extraction still gets its audit record written before the cancellation is
honoured. Cancelling during recognition records nothing.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from certchain.primitives.certificate import (
    ExtractedDetails,
    IndexRecord,
    VerificationKind,
    VerificationLogEntry,
)
from certchain.primitives.common import RequesterInfo
from certchain.primitives.errors import ExtractionFailed, IndexUnavailable, RecognitionFailed
from certchain.systems.legacy.extraction import FieldExtractor
from certchain.systems.legacy.types import (
    LegacyClassification,
    LegacyVerificationResult,
    MatchState,
    MatchTrail,
)

if TYPE_CHECKING:
    from certchain.clients.index_store import IndexStore
    from certchain.clients.recognition import ProgressCallback, TextRecognizer
    from certchain.config import LegacyConfig

logger = structlog.get_logger("certchain.systems.legacy")

MISMATCH_MESSAGE = "Record found, but the name does not match. Potential tampering detected."
VERIFIED_MESSAGE = "Certificate is authentic and matches official records."
LOOKUP_FAILED_MESSAGE = "Official records could not be queried. Please try again later."


class LegacyDocumentMatcher:
    """
    Dependencies:
        recognizer  -- document → text
        index       -- legacy-key lookup and verification log
        config      -- LegacyConfig (patterns, strict mode)
    """

    def __init__(
        self,
        recognizer: TextRecognizer,
        index: IndexStore,
        config: LegacyConfig,
    ) -> None:
        self._recognizer = recognizer
        self._index = index
        self._extractor = FieldExtractor(
            identifier_pattern=config.identifier_pattern,
            name_pattern=config.name_pattern,
            reject_conflicting_fields=config.reject_conflicting_fields,
        )
        self._logger = logger.bind(component="legacy_matcher")

    async def verify_document(
        self,
        document: bytes,
        content_type: str,
        requester: RequesterInfo | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> LegacyVerificationResult:
        trail = MatchTrail()
        trail.advance(MatchState.EXTRACTING)
        try:
            text = await self._recognizer.recognize(document, content_type, on_progress)
        except asyncio.CancelledError:
            self._logger.info("legacy_verification_cancelled", audit_record=False)
            raise
        except RecognitionFailed as exc:
            self._logger.warning("legacy_recognition_failed", error=str(exc))
            trail.advance(MatchState.EXTRACTION_FAILED)
            result = LegacyVerificationResult(
                classification=LegacyClassification.ERROR,
                message=f"Could not read the document: {exc}",
            )
            return await self._record(result, trail, requester or RequesterInfo())

        return await self._match(text, trail, requester or RequesterInfo())

    async def verify_text(
        self, text: str, requester: RequesterInfo | None = None,
    ) -> LegacyVerificationResult:
        """Match already-recognised text."""
        trail = MatchTrail()
        trail.advance(MatchState.EXTRACTING)
        return await self._match(text, trail, requester or RequesterInfo())

    # ─── Pipeline ─────────────────────────────────────────────────

    async def _match(
        self, text: str, trail: MatchTrail, requester: RequesterInfo,
    ) -> LegacyVerificationResult:
        try:
            details = self._extractor.extract(text)
        except ExtractionFailed as exc:
            trail.advance(MatchState.EXTRACTION_FAILED)
            result = LegacyVerificationResult(
                classification=LegacyClassification.ERROR,
                message=str(exc),
                extracted=ExtractedDetails(raw_text=text),
            )
            return await self._record(result, trail, requester)

        trail.advance(MatchState.EXTRACTED)
        cancelled = False
        record: IndexRecord | None = None
        try:
            record = await self._index.query_by_legacy_key(details.identifier or "")
        except IndexUnavailable as exc:
            self._logger.error(
                "legacy_lookup_failed", identifier=details.identifier, error=str(exc),
            )
            state, classification, message = (
                MatchState.LOOKUP_FAILED, LegacyClassification.ERROR, LOOKUP_FAILED_MESSAGE,
            )
        except asyncio.CancelledError:
            cancelled = True
            state, classification, message = (
                MatchState.LOOKUP_FAILED, LegacyClassification.ERROR, "Verification cancelled",
            )
        else:
            state, classification, message = self._classify(details, record)

        trail.advance(state)
        result = LegacyVerificationResult(
            classification=classification,
            message=message,
            extracted=details,
            matched_record=record,
        )
        result = await self._record(result, trail, requester)
        if cancelled:
            raise asyncio.CancelledError
        return result

    @staticmethod
    def _classify(
        details: ExtractedDetails, record: IndexRecord | None,
    ) -> tuple[MatchState, LegacyClassification, str]:
        if record is None:
            return (
                MatchState.NOT_FOUND,
                LegacyClassification.NOT_FOUND,
                f"No official record found for Roll Number: {details.identifier}.",
            )
        if details.name and details.name.lower() != record.issued_to.strip().lower():
            return MatchState.NAME_MISMATCH, LegacyClassification.MISMATCH, MISMATCH_MESSAGE
        return MatchState.VERIFIED, LegacyClassification.VERIFIED, VERIFIED_MESSAGE

    # ─── Audit ────────────────────────────────────────────────────

    async def _record(
        self,
        result: LegacyVerificationResult,
        trail: MatchTrail,
        requester: RequesterInfo,
    ) -> LegacyVerificationResult:
        entry = VerificationLogEntry(
            kind=VerificationKind.LEGACY,
            outcome=result.classification.outcome,
            extracted_identifier=result.extracted.identifier,
            matched_record_id=result.matched_record.id if result.matched_record else None,
            token_id=result.matched_record.token_id if result.matched_record else None,
            requester=requester,
            extracted_details=result.extracted,
            message=result.message,
        )

        write = asyncio.ensure_future(self._index.append_verification_log(entry))
        cancelled = False
        try:
            try:
                await asyncio.shield(write)
            except asyncio.CancelledError:
                if write.cancelled():
                    raise
                cancelled = True
                await write
        except IndexUnavailable as exc:
            result.log_error = str(exc)
            self._logger.error(
                "legacy_verification_log_failed",
                classification=result.classification.value,
                identifier=result.extracted.identifier,
                error=str(exc),
            )
        else:
            trail.advance(MatchState.LOGGED)
            result.logged = True
            result.log_entry_id = entry.id
            self._logger.info(
                "legacy_verification_logged",
                classification=result.classification.value,
                identifier=result.extracted.identifier,
                entry_id=entry.id,
            )

        result.trail = trail.states
        if cancelled:
            raise asyncio.CancelledError
        return result
