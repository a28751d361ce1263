"""
CertChain — Certificate Primitives

The three shapes a certificate takes, one per store, plus the audit entry:

  LedgerCertificate   — authoritative core (identifier, pointer, names, date)
  CertificatePayload  — immutable content-addressed record
  IndexRecord         — mutable, denormalised, searchable copy
  VerificationLogEntry — append-only audit of every verification attempt

Cross-store linkage is only ever the content pointer and the ledger
identifier. Both are opaque to every consumer.
"""

from __future__ import annotations

import enum
import json
import time
from datetime import date, datetime
from typing import Any

from pydantic import Field
from pydantic.alias_generators import to_camel

from certchain.primitives.common import (
    CertBaseModel,
    Identified,
    RequesterInfo,
    new_id,
    utc_now,
)


def _epoch_ms() -> int:
    return int(time.time() * 1000)


# ─── Ledger ───────────────────────────────────────────────────────


class MintRequest(CertBaseModel):
    """The core fields written to the ledger for one certificate."""

    content_pointer: str
    holder_name: str
    issuer_name: str
    issue_date: str


class LedgerCertificate(MintRequest):
    """A minted certificate as read back from the ledger."""

    identifier: int


class MintReceipt(CertBaseModel):
    identifier: int
    tx_hash: str


class BatchMintReceipt(CertBaseModel):
    identifiers: list[int]            # same order as the requests
    tx_hash: str


# ─── Payload ──────────────────────────────────────────────────────


class CertificatePayload(CertBaseModel):
    """
    Certificate content as pinned in the content store.

    Serialised with camelCase keys so payloads pinned by earlier clients
    (``issuedTo``, ``issueDate``, ``certificateType`` ...) parse unchanged.
    Unknown keys are preserved.
    """

    model_config = {"alias_generator": to_camel, "extra": "allow"}

    name: str
    issued_to: str
    issuer: str
    organization: str
    issue_date: str
    certificate_type: str
    expiry_date: str | None = None
    additional_details: str | None = None
    issuer_address: str = ""
    recipient_address: str | None = None
    timestamp: int = Field(default_factory=_epoch_ms)

    def serialize(self) -> bytes:
        """
        Canonical bytes: sorted keys, compact separators, UTF-8.

        Identical payloads always produce identical bytes, which is what
        makes content-store writes idempotent.
        """
        body = self.model_dump(mode="json", by_alias=True)
        return json.dumps(
            body, sort_keys=True, separators=(",", ":"), ensure_ascii=False,
        ).encode("utf-8")

    @classmethod
    def deserialize(cls, raw: bytes) -> CertificatePayload:
        return cls.model_validate_json(raw)

    def mint_request(self, content_pointer: str) -> MintRequest:
        """The ledger records the recipient as holder, as the contract expects."""
        return MintRequest(
            content_pointer=content_pointer,
            holder_name=self.issued_to,
            issuer_name=self.issuer,
            issue_date=self.issue_date,
        )


# ─── Index ────────────────────────────────────────────────────────


class IndexRecord(Identified):
    """
    Denormalised, queryable copy of a certificate. Not authoritative.

    ``token_id`` is None for legacy (pre-ledger) records and for chain-first
    records whose identifier has not been synced yet.
    """

    token_id: int | None = None
    content_pointer: str | None = None
    name: str = ""
    issued_to: str = ""
    issuer: str = ""
    organization: str = ""
    issue_date: str = ""
    expiry_date: str | None = None
    certificate_type: str = ""
    issuer_wallet_address: str = ""
    recipient_wallet_address: str | None = None
    additional_details: str | None = None
    blockchain_tx_hash: str | None = None
    roll_number: str | None = None    # legacy key, exact match
    is_revoked: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_payload(
        cls,
        payload: CertificatePayload,
        *,
        content_pointer: str,
        token_id: int | None,
        tx_hash: str | None = None,
    ) -> IndexRecord:
        return cls(
            token_id=token_id,
            content_pointer=content_pointer,
            name=payload.name,
            issued_to=payload.issued_to,
            issuer=payload.issuer,
            organization=payload.organization,
            issue_date=payload.issue_date,
            expiry_date=payload.expiry_date,
            certificate_type=payload.certificate_type,
            issuer_wallet_address=payload.issuer_address,
            recipient_wallet_address=payload.recipient_address,
            additional_details=payload.additional_details,
            blockchain_tx_hash=tx_hash,
        )

    def is_expired(self, today: date | None = None) -> bool:
        """True when ``expiry_date`` is an ISO date on or before today."""
        if not self.expiry_date:
            return False
        try:
            expiry = date.fromisoformat(self.expiry_date[:10])
        except ValueError:
            return False
        return expiry <= (today or utc_now().date())


class CertificateStats(CertBaseModel):
    """Per-issuer dashboard counters. Revoked wins over expired."""

    total: int = 0
    valid: int = 0
    revoked: int = 0
    expired: int = 0

    @classmethod
    def from_records(
        cls, records: list[IndexRecord], today: date | None = None,
    ) -> CertificateStats:
        stats = cls(total=len(records))
        for record in records:
            if record.is_revoked:
                stats.revoked += 1
            elif record.is_expired(today):
                stats.expired += 1
            else:
                stats.valid += 1
        return stats


# ─── Verification audit ───────────────────────────────────────────


class VerificationKind(enum.StrEnum):
    LEDGER = "ledger"      # resolution by ledger identifier
    LEGACY = "legacy"      # scanned-document matching


class VerificationOutcome(enum.StrEnum):
    RESOLVED = "resolved"
    NOT_FOUND = "not_found"
    VERIFIED = "verified"
    MISMATCH = "mismatch"
    ERROR = "error"


class ExtractedDetails(CertBaseModel):
    identifier: str | None = None
    name: str | None = None
    raw_text: str = ""


class VerificationLogEntry(CertBaseModel):
    """One verification attempt. Written once, never updated."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=new_id)
    verified_at: datetime = Field(default_factory=utc_now)
    kind: VerificationKind
    outcome: VerificationOutcome
    token_id: int | None = None
    extracted_identifier: str | None = None
    matched_record_id: str | None = None
    requester: RequesterInfo = Field(default_factory=RequesterInfo)
    extracted_details: ExtractedDetails | None = None
    message: str = ""

    def to_row(self) -> dict[str, Any]:
        """Flat dict for relational persistence."""
        return {
            "id": self.id,
            "verified_at": self.verified_at,
            "kind": self.kind.value,
            "outcome": self.outcome.value,
            "token_id": self.token_id,
            "extracted_identifier": self.extracted_identifier,
            "matched_record_id": self.matched_record_id,
            "requester": self.requester.model_dump_json(),
            "extracted_details": (
                self.extracted_details.model_dump_json()
                if self.extracted_details is not None
                else None
            ),
            "message": self.message,
        }
