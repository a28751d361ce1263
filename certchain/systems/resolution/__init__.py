"""CertChain — Resolution system."""

from certchain.systems.resolution.merge import merge_views
from certchain.systems.resolution.service import ResolutionEngine
from certchain.systems.resolution.types import (
    FieldConflict,
    FieldSource,
    ResolvedCertificate,
    SourcedField,
    VerificationHistory,
)

__all__ = [
    "FieldConflict",
    "FieldSource",
    "ResolutionEngine",
    "ResolvedCertificate",
    "SourcedField",
    "VerificationHistory",
    "merge_views",
]
