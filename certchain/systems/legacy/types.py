"""
CertChain — Legacy Matching Types

The matcher is an explicit state machine:

    Idle → Extracting → ExtractionFailed ─────────────────────┐
                      → Extracted → NotFound                  ├→ Logged
                                  → NameMismatch              │
                                  → Verified                  │
                                  → LookupFailed ─────────────┘

Every run records the states it visited so a result can be explained.
"""

from __future__ import annotations

import enum

from pydantic import Field

from certchain.primitives.certificate import ExtractedDetails, IndexRecord, VerificationOutcome
from certchain.primitives.common import CertBaseModel
from certchain.primitives.errors import IllegalStateTransition


class MatchState(enum.StrEnum):
    IDLE = "Idle"
    EXTRACTING = "Extracting"
    EXTRACTION_FAILED = "ExtractionFailed"
    EXTRACTED = "Extracted"
    NOT_FOUND = "NotFound"
    NAME_MISMATCH = "NameMismatch"
    VERIFIED = "Verified"
    LOOKUP_FAILED = "LookupFailed"
    LOGGED = "Logged"


_TERMINAL_CLASSIFIED = frozenset({
    MatchState.EXTRACTION_FAILED,
    MatchState.NOT_FOUND,
    MatchState.NAME_MISMATCH,
    MatchState.VERIFIED,
    MatchState.LOOKUP_FAILED,
})

TRANSITIONS: dict[MatchState, frozenset[MatchState]] = {
    MatchState.IDLE: frozenset({MatchState.EXTRACTING}),
    MatchState.EXTRACTING: frozenset({MatchState.EXTRACTION_FAILED, MatchState.EXTRACTED}),
    MatchState.EXTRACTED: frozenset({
        MatchState.NOT_FOUND,
        MatchState.NAME_MISMATCH,
        MatchState.VERIFIED,
        MatchState.LOOKUP_FAILED,
    }),
    **{state: frozenset({MatchState.LOGGED}) for state in _TERMINAL_CLASSIFIED},
    MatchState.LOGGED: frozenset(),
}


class MatchTrail:
    """Current state plus every state visited, in order."""

    def __init__(self) -> None:
        self._states: list[MatchState] = [MatchState.IDLE]

    @property
    def state(self) -> MatchState:
        return self._states[-1]

    def advance(self, target: MatchState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise IllegalStateTransition(self.state.value, target.value)
        self._states.append(target)

    @property
    def states(self) -> list[MatchState]:
        return list(self._states)


class LegacyClassification(enum.StrEnum):
    VERIFIED = "Verified"
    NOT_FOUND = "NotFound"
    MISMATCH = "Mismatch"
    ERROR = "Error"

    @property
    def outcome(self) -> VerificationOutcome:
        return _OUTCOMES[self]


_OUTCOMES = {
    LegacyClassification.VERIFIED: VerificationOutcome.VERIFIED,
    LegacyClassification.NOT_FOUND: VerificationOutcome.NOT_FOUND,
    LegacyClassification.MISMATCH: VerificationOutcome.MISMATCH,
    LegacyClassification.ERROR: VerificationOutcome.ERROR,
}


class LegacyVerificationResult(CertBaseModel):
    classification: LegacyClassification
    message: str
    extracted: ExtractedDetails = Field(default_factory=ExtractedDetails)
    matched_record: IndexRecord | None = None
    trail: list[MatchState] = Field(default_factory=list)
    logged: bool = False
    log_entry_id: str | None = None
    log_error: str | None = None
