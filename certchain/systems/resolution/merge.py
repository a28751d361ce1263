"""
CertChain — Source Merge

Pure precedence merge of the three views of one certificate:
ledger > content > index. Each output field records which store supplied
it; values from lower-precedence stores that disagree are kept as
conflicts rather than dropped silently.

None and empty strings count as "this source has no value".
"""

from __future__ import annotations

from typing import Any

from certchain.primitives.certificate import (
    CertificatePayload,
    IndexRecord,
    LedgerCertificate,
)
from certchain.systems.resolution.types import (
    SOURCE_PRECEDENCE,
    FieldConflict,
    FieldSource,
    SourcedField,
)

# Output field → attribute on (ledger, payload, index record). None: that
# store does not carry the field.
FIELD_MAP: dict[str, tuple[str | None, str | None, str | None]] = {
    "content_pointer": ("content_pointer", None, "content_pointer"),
    "issued_to": ("holder_name", "issued_to", "issued_to"),
    "issuer": ("issuer_name", "issuer", "issuer"),
    "issue_date": ("issue_date", "issue_date", "issue_date"),
    "name": (None, "name", "name"),
    "organization": (None, "organization", "organization"),
    "certificate_type": (None, "certificate_type", "certificate_type"),
    "expiry_date": (None, "expiry_date", "expiry_date"),
    "additional_details": (None, "additional_details", "additional_details"),
    "issuer_address": (None, "issuer_address", "issuer_wallet_address"),
    "recipient_address": (None, "recipient_address", "recipient_wallet_address"),
    "tx_hash": (None, None, "blockchain_tx_hash"),
    "timestamp": (None, "timestamp", None),
}


def _present(value: Any) -> bool:
    return value is not None and value != ""


def merge_views(
    ledger: LedgerCertificate,
    revoked: bool,
    payload: CertificatePayload | None,
    record: IndexRecord | None,
) -> tuple[dict[str, SourcedField], list[FieldConflict]]:
    views = {
        FieldSource.LEDGER: ledger,
        FieldSource.CONTENT: payload,
        FieldSource.INDEX: record,
    }
    fields: dict[str, SourcedField] = {
        "identifier": SourcedField(value=ledger.identifier, source=FieldSource.LEDGER),
        "revoked": SourcedField(value=revoked, source=FieldSource.LEDGER),
    }
    conflicts: list[FieldConflict] = []

    # Revocation is ledger-only; a stale index flag is reported, never used.
    if record is not None and record.is_revoked != revoked:
        conflicts.append(FieldConflict(
            field="revoked",
            kept_source=FieldSource.LEDGER,
            kept_value=revoked,
            other_source=FieldSource.INDEX,
            other_value=record.is_revoked,
        ))

    for name, attrs in FIELD_MAP.items():
        candidates: list[tuple[FieldSource, Any]] = []
        for source, attr in zip(SOURCE_PRECEDENCE, attrs, strict=True):
            view = views[source]
            if attr is None or view is None:
                continue
            value = getattr(view, attr)
            if _present(value):
                candidates.append((source, value))

        if not candidates:
            fields[name] = SourcedField()
            continue

        kept_source, kept_value = candidates[0]
        fields[name] = SourcedField(value=kept_value, source=kept_source)
        for other_source, other_value in candidates[1:]:
            if other_value != kept_value:
                conflicts.append(FieldConflict(
                    field=name,
                    kept_source=kept_source,
                    kept_value=kept_value,
                    other_source=other_source,
                    other_value=other_value,
                ))

    return fields, conflicts
