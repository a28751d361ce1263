"""CertChain — Issuance system."""

from certchain.systems.issuance.csv_import import parse_batch_csv
from certchain.systems.issuance.service import IssuanceCoordinator
from certchain.systems.issuance.types import (
    BatchIssuanceResult,
    CsvParseResult,
    IssuedCertificate,
    PendingIndexSync,
    RevocationResult,
)

__all__ = [
    "BatchIssuanceResult",
    "CsvParseResult",
    "IssuanceCoordinator",
    "IssuedCertificate",
    "PendingIndexSync",
    "RevocationResult",
    "parse_batch_csv",
]
