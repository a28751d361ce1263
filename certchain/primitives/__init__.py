"""
CertChain — Primitives

Data shapes shared by every client and system.
"""

from certchain.primitives.certificate import (
    BatchMintReceipt,
    CertificatePayload,
    CertificateStats,
    ExtractedDetails,
    IndexRecord,
    LedgerCertificate,
    MintReceipt,
    MintRequest,
    VerificationKind,
    VerificationLogEntry,
    VerificationOutcome,
)
from certchain.primitives.common import CertBaseModel, RequesterInfo, new_id, utc_now

__all__ = [
    "BatchMintReceipt",
    "CertBaseModel",
    "CertificatePayload",
    "CertificateStats",
    "ExtractedDetails",
    "IndexRecord",
    "LedgerCertificate",
    "MintReceipt",
    "MintRequest",
    "RequesterInfo",
    "VerificationKind",
    "VerificationLogEntry",
    "VerificationOutcome",
    "new_id",
    "utc_now",
]
