"""
CertChain — Error Taxonomy

Every store adapter translates its transport's exceptions into one of these
at the boundary, so services reason about *which store* failed and *how*,
never about httpx, asyncpg or web3 specifics.

    CertChainError
    ├── NotFound
    │   └── CertificateNotFound
    ├── LedgerError
    │   ├── LedgerWriteFailed
    │   │   ├── LedgerConfirmationTimeout
    │   │   └── LedgerReceiptMismatch
    │   └── LedgerReadFailed
    ├── ContentUnavailable
    ├── InvalidContentPointer
    ├── IndexUnavailable
    ├── RecognitionFailed
    ├── ExtractionFailed
    ├── IssuanceFailed
    └── IllegalStateTransition
"""

from __future__ import annotations

import enum


class CertChainError(Exception):
    """Root of every error raised by CertChain."""


# ─── Ledger ───────────────────────────────────────────────────────


class NotFound(CertChainError):
    """The ledger has no certificate with this identifier. Terminal."""

    def __init__(self, identifier: int, message: str = "") -> None:
        self.identifier = identifier
        super().__init__(message or f"No ledger certificate with identifier {identifier}")


class CertificateNotFound(NotFound):
    """Resolution failed because the ledger does not know the identifier."""


class LedgerError(CertChainError):
    """Base for ledger transport / contract failures."""


class LedgerWriteFailed(LedgerError):
    """
    A mint, batch mint or revoke was not confirmed.

    ``outcome_unknown`` is True when the transaction was submitted but
    confirmation never arrived; the write may still land.
    """

    outcome_unknown: bool = False

    def __init__(self, message: str, tx_hash: str | None = None) -> None:
        self.tx_hash = tx_hash
        super().__init__(message)


class LedgerConfirmationTimeout(LedgerWriteFailed):
    """Submitted, but inclusion was not confirmed within the timeout."""

    outcome_unknown = True


class LedgerReceiptMismatch(LedgerWriteFailed):
    """
    Included on chain, but the receipt's mint events do not account for
    every request. Something landed; what exactly must be read back.
    """

    outcome_unknown = True


class LedgerReadFailed(LedgerError):
    """The ledger could not be read (RPC failure, decoding error, ...)."""


# ─── Content store ────────────────────────────────────────────────


class ContentUnavailable(CertChainError):
    """The content store could not serve (or accept) a payload."""

    def __init__(self, message: str, pointer: str | None = None) -> None:
        self.pointer = pointer
        super().__init__(message)


class InvalidContentPointer(CertChainError):
    """The pointer is not a well-formed content address for this store."""

    def __init__(self, pointer: str) -> None:
        self.pointer = pointer
        super().__init__(f"Malformed content pointer: {pointer!r}")


# ─── Index store ──────────────────────────────────────────────────


class IndexUnavailable(CertChainError):
    """The relational index failed. Never means 'certificate does not exist'."""


# ─── Legacy path ──────────────────────────────────────────────────


class RecognitionFailed(CertChainError):
    """The recognition engine could not read the document."""


class ExtractionFailed(CertChainError):
    """No legacy identifier could be extracted from the recognised text."""


# ─── Issuance ─────────────────────────────────────────────────────


class IssuanceStage(str, enum.Enum):
    VALIDATION = "validation"
    PAYLOAD_UPLOAD = "payload_upload"
    LEDGER_MINT = "ledger_mint"


class IssuanceFailed(CertChainError):
    """
    Issuance aborted at ``stage``. The originating error is chained as
    ``__cause__``.

    ``outcome_unknown`` propagates from a ledger write whose result could
    not be confirmed: the mint may have landed. ``content_pointer`` (or
    ``content_pointers`` for a batch) and ``tx_hash`` are what to look it up by.
    """

    def __init__(
        self,
        stage: IssuanceStage,
        message: str,
        *,
        item_index: int | None = None,
        content_pointer: str | None = None,
        content_pointers: list[str] | None = None,
        tx_hash: str | None = None,
        outcome_unknown: bool = False,
    ) -> None:
        self.stage = stage
        self.item_index = item_index
        self.content_pointer = content_pointer
        self.content_pointers = content_pointers or []
        self.tx_hash = tx_hash
        self.outcome_unknown = outcome_unknown
        super().__init__(f"[{stage.value}] {message}")


class IllegalStateTransition(CertChainError):
    """A state machine was asked to move along an edge it does not have."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal transition {current} -> {target}")
