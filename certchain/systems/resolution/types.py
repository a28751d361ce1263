"""
CertChain — Resolution Types
"""

from __future__ import annotations

import enum
from typing import Any

from pydantic import Field

from certchain.primitives.certificate import VerificationLogEntry
from certchain.primitives.common import CertBaseModel


class FieldSource(enum.StrEnum):
    LEDGER = "ledger"
    CONTENT = "content"
    INDEX = "index"
    MISSING = "missing"


# Higher wins
SOURCE_PRECEDENCE: tuple[FieldSource, ...] = (
    FieldSource.LEDGER,
    FieldSource.CONTENT,
    FieldSource.INDEX,
)


class SourcedField(CertBaseModel):
    """A merged value tagged with the store it came from."""

    value: Any = None
    source: FieldSource = FieldSource.MISSING

    @property
    def is_missing(self) -> bool:
        return self.source == FieldSource.MISSING


class FieldConflict(CertBaseModel):
    """A lower-precedence source disagreed with the value that was kept."""

    field: str
    kept_source: FieldSource
    kept_value: Any
    other_source: FieldSource
    other_value: Any


class ResolvedCertificate(CertBaseModel):
    identifier: int
    content_pointer: str
    revoked: bool
    fields: dict[str, SourcedField] = Field(default_factory=dict)
    conflicts: list[FieldConflict] = Field(default_factory=list)
    gateway_url: str = ""
    index_record_id: str | None = None
    payload_unavailable: bool = False
    index_unavailable: bool = False

    @property
    def is_degraded(self) -> bool:
        return self.payload_unavailable or self.index_unavailable

    def value(self, name: str) -> Any:
        sourced = self.fields.get(name)
        return sourced.value if sourced is not None else None

    def source(self, name: str) -> FieldSource:
        sourced = self.fields.get(name)
        return sourced.source if sourced is not None else FieldSource.MISSING


class VerificationHistory(CertBaseModel):
    identifier: int
    entries: list[VerificationLogEntry] = Field(default_factory=list)
