"""
CertChain — Issuance Types
"""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from certchain.primitives.certificate import CertificatePayload
from certchain.primitives.common import CertBaseModel, utc_now


class IssuedCertificate(CertBaseModel):
    """One certificate minted on the ledger."""

    identifier: int
    content_pointer: str
    tx_hash: str
    gateway_url: str = ""
    # False when the index write failed; the pair is then queued for sync.
    index_synced: bool = True
    index_record_id: str | None = None


class BatchIssuanceResult(CertBaseModel):
    """Items are index-aligned with the submitted payloads."""

    items: list[IssuedCertificate] = Field(default_factory=list)
    tx_hash: str | None = None

    @property
    def identifiers(self) -> list[int]:
        return [item.identifier for item in self.items]

    @property
    def unsynced(self) -> list[IssuedCertificate]:
        return [item for item in self.items if not item.index_synced]


class PendingIndexSync(CertBaseModel):
    """A minted certificate whose index write has not landed yet."""

    identifier: int
    content_pointer: str
    tx_hash: str
    payload: CertificatePayload
    error: str = ""
    queued_at: datetime = Field(default_factory=utc_now)
    attempts: int = 1


class RevocationResult(CertBaseModel):
    identifier: int
    index_synced: bool = True


class CsvParseResult(CertBaseModel):
    payloads: list[CertificatePayload] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
