"""CertChain — Legacy document matching."""

from certchain.systems.legacy.extraction import FieldExtractor
from certchain.systems.legacy.service import LegacyDocumentMatcher
from certchain.systems.legacy.types import (
    LegacyClassification,
    LegacyVerificationResult,
    MatchState,
    MatchTrail,
)

__all__ = [
    "FieldExtractor",
    "LegacyClassification",
    "LegacyDocumentMatcher",
    "LegacyVerificationResult",
    "MatchState",
    "MatchTrail",
]
