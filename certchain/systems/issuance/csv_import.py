"""
CertChain — CSV Batch Import

Parses an uploaded CSV into certificate payloads. Rows missing a required
column are reported and skipped; the rest are issued.
"""

from __future__ import annotations

import csv
import io

import structlog
from pydantic import ValidationError

from certchain.primitives.certificate import CertificatePayload
from certchain.primitives.errors import IssuanceFailed, IssuanceStage
from certchain.systems.issuance.types import CsvParseResult

logger = structlog.get_logger("certchain.systems.issuance.csv_import")

REQUIRED_COLUMNS = (
    "name",
    "issuedTo",
    "issueDate",
    "issuer",
    "organization",
    "certificateType",
)
OPTIONAL_COLUMNS = ("expiryDate", "additionalDetails", "recipientAddress")


def parse_batch_csv(text: str, issuer_address: str = "") -> CsvParseResult:
    """
    Parse CSV text (header row required) into payloads.

    Rows are numbered from 1, excluding the header. Blank cells count as
    missing.
    """
    result = CsvParseResult()
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    try:
        rows = list(reader)
    except csv.Error as exc:
        raise IssuanceFailed(
            IssuanceStage.VALIDATION,
            "Failed to parse CSV file. Please ensure it is correctly formatted.",
        ) from exc

    if reader.fieldnames is None:
        result.errors.append("CSV file has no header row")
        return result

    for number, row in enumerate(rows, start=1):
        cells = {
            key.strip(): (value or "").strip()
            for key, value in row.items()
            if isinstance(key, str)
        }
        missing = [col for col in REQUIRED_COLUMNS if not cells.get(col)]
        if missing:
            result.errors.append(
                f"Row {number}: Missing required fields: {', '.join(missing)}"
            )
            continue

        fields = {col: cells[col] for col in REQUIRED_COLUMNS}
        fields.update({col: cells[col] for col in OPTIONAL_COLUMNS if cells.get(col)})
        try:
            result.payloads.append(
                CertificatePayload.model_validate({**fields, "issuerAddress": issuer_address})
            )
        except ValidationError as exc:
            result.errors.append(f"Row {number}: {exc.errors()[0]['msg']}")

    logger.info(
        "csv_batch_parsed",
        valid=len(result.payloads),
        rejected=len(result.errors),
    )
    return result
