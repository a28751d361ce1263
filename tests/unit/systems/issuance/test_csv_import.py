"""Unit tests for CSV batch import."""

from __future__ import annotations

import pytest

from certchain.clients.content_store import InMemoryContentStore
from certchain.clients.index_store import InMemoryIndexStore
from certchain.clients.ledger import InMemoryLedgerClient
from certchain.config import IssuanceConfig
from certchain.systems.issuance.csv_import import parse_batch_csv
from certchain.systems.issuance.service import IssuanceCoordinator

HEADER = "name,issuedTo,issueDate,issuer,organization,certificateType,expiryDate"


class TestParseBatchCsv:
    def test_valid_rows_become_payloads(self) -> None:
        text = "\n".join([
            HEADER,
            "Completion,Ada Lovelace,2024-05-01,AES,AES Org,course,2030-01-01",
            "Completion,Grace Hopper,2024-05-02,AES,AES Org,course,",
        ])
        result = parse_batch_csv(text, issuer_address="0xissuer")

        assert result.errors == []
        assert [p.issued_to for p in result.payloads] == ["Ada Lovelace", "Grace Hopper"]
        assert result.payloads[0].expiry_date == "2030-01-01"
        assert result.payloads[1].expiry_date is None
        assert all(p.issuer_address == "0xissuer" for p in result.payloads)

    def test_rows_missing_fields_are_reported_and_skipped(self) -> None:
        text = "\n".join([
            HEADER,
            "Completion,Ada Lovelace,2024-05-01,AES,AES Org,course,",
            "Completion,,2024-05-01,AES,,course,",
        ])
        result = parse_batch_csv(text)

        assert len(result.payloads) == 1
        assert result.errors == ["Row 2: Missing required fields: issuedTo, organization"]

    def test_missing_column_fails_every_row(self) -> None:
        text = "name,issuedTo\nCompletion,Ada"
        result = parse_batch_csv(text)
        assert result.payloads == []
        assert result.errors == [
            "Row 1: Missing required fields: issueDate, issuer, organization, certificateType"
        ]

    def test_byte_order_mark_is_ignored(self) -> None:
        text = "\ufeff" + HEADER + "\nCompletion,Ada,2024-05-01,AES,AES Org,course,"
        assert len(parse_batch_csv(text).payloads) == 1

    def test_empty_input(self) -> None:
        result = parse_batch_csv("")
        assert result.payloads == []
        assert result.errors == ["CSV file has no header row"]


class TestIssueCsv:
    @pytest.mark.asyncio
    async def test_valid_rows_are_issued_as_one_batch(self) -> None:
        coordinator = IssuanceCoordinator(
            ledger=InMemoryLedgerClient(),
            content_store=InMemoryContentStore(),
            index=InMemoryIndexStore(),
            config=IssuanceConfig(),
        )
        text = "\n".join([
            HEADER,
            "Completion,Ada Lovelace,2024-05-01,AES,AES Org,course,",
            "Completion,,2024-05-01,AES,AES Org,course,",
            "Completion,Grace Hopper,2024-05-01,AES,AES Org,course,",
        ])

        result, parsed = await coordinator.issue_csv(text, issuer_address="0xissuer")

        assert result.identifiers == [0, 1]
        assert parsed.errors == ["Row 2: Missing required fields: issuedTo"]
