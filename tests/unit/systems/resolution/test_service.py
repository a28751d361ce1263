"""
Unit tests for ResolutionEngine.

Resolution must fail closed on ledger absence, degrade gracefully when the
auxiliary stores fail, and never wait on audit logging.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from certchain.clients.content_store import InMemoryContentStore
from certchain.clients.index_store import InMemoryIndexStore
from certchain.clients.ledger import InMemoryLedgerClient
from certchain.config import IssuanceConfig, ResolutionConfig
from certchain.core.tasks import DetachedTaskRunner
from certchain.primitives.certificate import (
    CertificatePayload,
    IndexRecord,
    VerificationOutcome,
)
from certchain.primitives.common import RequesterInfo
from certchain.primitives.errors import (
    CertificateNotFound,
    ContentUnavailable,
    IndexUnavailable,
    LedgerReadFailed,
)
from certchain.systems.issuance.service import IssuanceCoordinator
from certchain.systems.resolution.service import ResolutionEngine
from certchain.systems.resolution.types import FieldSource


# ─── Fixtures ─────────────────────────────────────────────────────────────────


def make_payload(i: int = 0) -> CertificatePayload:
    return CertificatePayload(
        name="Certificate of Completion",
        issued_to=f"Student {i}",
        issuer="AES",
        organization="AES Org",
        issue_date="2024-05-01",
        certificate_type="course",
        issuer_address="0xissuer",
    )


class Harness:
    def __init__(self, **resolution_kwargs) -> None:
        self.ledger = InMemoryLedgerClient()
        self.content = InMemoryContentStore()
        self.index = InMemoryIndexStore()
        self.reported: list[tuple[str, BaseException]] = []
        self.tasks = DetachedTaskRunner(
            error_channel=lambda name, exc: self.reported.append((name, exc)),
        )
        self.issuance = IssuanceCoordinator(
            self.ledger, self.content, self.index, IssuanceConfig(),
        )
        self.engine = ResolutionEngine(
            self.ledger,
            self.content,
            self.index,
            ResolutionConfig(**resolution_kwargs),
            self.tasks,
        )


# ─── Happy path ───────────────────────────────────────────────────────────────


class TestResolve:
    @pytest.mark.asyncio
    async def test_full_resolution(self) -> None:
        h = Harness()
        issued = await h.issuance.issue_one(make_payload())

        resolved = await h.engine.resolve(issued.identifier, RequesterInfo(principal="0xv"))

        assert resolved.is_degraded is False
        assert resolved.revoked is False
        assert resolved.value("issued_to") == "Student 0"
        assert resolved.source("issued_to") == FieldSource.LEDGER
        assert resolved.source("organization") == FieldSource.CONTENT
        assert resolved.value("tx_hash") == issued.tx_hash
        assert resolved.index_record_id == issued.index_record_id
        assert resolved.gateway_url == issued.gateway_url
        assert resolved.conflicts == []

        await h.tasks.drain()
        log = await h.index.query_recent_log(1)
        assert log[0].outcome == VerificationOutcome.RESOLVED
        assert log[0].token_id == issued.identifier
        assert log[0].requester.principal == "0xv"

    @pytest.mark.asyncio
    async def test_unknown_identifier_fails_closed_and_is_audited(self) -> None:
        h = Harness()
        await h.index.upsert_certificate(IndexRecord(token_id=999999, issued_to="Forged"))

        with pytest.raises(CertificateNotFound):
            await h.engine.resolve(999999)

        await h.tasks.drain()
        history = await h.index.verification_history(999999)
        assert [e.outcome for e in history] == [VerificationOutcome.NOT_FOUND]

    @pytest.mark.asyncio
    async def test_revocation_comes_from_the_ledger(self) -> None:
        h = Harness()
        issued = await h.issuance.issue_one(make_payload())
        await h.ledger.revoke(issued.identifier)

        resolved = await h.engine.resolve(issued.identifier)

        assert resolved.revoked is True
        assert [c.field for c in resolved.conflicts] == ["revoked"]

    @pytest.mark.asyncio
    async def test_chain_first_row_found_by_pointer(self) -> None:
        h = Harness()
        payload = make_payload()
        pointer = await h.content.put(payload.serialize())
        receipt = await h.ledger.mint(pointer, "Student 0", "AES", "2024-05-01")
        await h.index.upsert_certificate(
            IndexRecord.from_payload(payload, content_pointer=pointer, token_id=None),
        )

        resolved = await h.engine.resolve(receipt.identifier)

        assert resolved.index_record_id is not None
        assert resolved.index_unavailable is False


# ─── Degradation ──────────────────────────────────────────────────────────────


class TestDegradation:
    @pytest.mark.asyncio
    async def test_index_outage_degrades(self) -> None:
        h = Harness()
        issued = await h.issuance.issue_one(make_payload())
        with patch.object(
            h.index, "query_by_identifier", AsyncMock(side_effect=IndexUnavailable("down")),
        ):
            resolved = await h.engine.resolve(issued.identifier)

        assert resolved.index_unavailable is True
        assert resolved.payload_unavailable is False
        assert resolved.is_degraded is True
        assert resolved.value("organization") == "AES Org"
        assert resolved.source("tx_hash") == FieldSource.MISSING

    @pytest.mark.asyncio
    async def test_content_outage_falls_back_to_index(self) -> None:
        h = Harness()
        issued = await h.issuance.issue_one(make_payload())
        with patch.object(h.content, "get", AsyncMock(side_effect=ContentUnavailable("gw"))):
            resolved = await h.engine.resolve(issued.identifier)

        assert resolved.payload_unavailable is True
        assert resolved.value("organization") == "AES Org"
        assert resolved.source("organization") == FieldSource.INDEX

    @pytest.mark.asyncio
    async def test_undecodable_payload_is_flagged(self) -> None:
        h = Harness()
        pointer = await h.content.put(b"\x00 not json")
        receipt = await h.ledger.mint(pointer, "Ada", "AES", "2024-05-01")

        resolved = await h.engine.resolve(receipt.identifier)

        assert resolved.payload_unavailable is True
        assert resolved.value("issued_to") == "Ada"

    @pytest.mark.asyncio
    async def test_slow_index_times_out(self) -> None:
        h = Harness(index_timeout_s=0.05)
        issued = await h.issuance.issue_one(make_payload())

        async def hang(_identifier):
            await asyncio.sleep(5)

        with patch.object(h.index, "query_by_identifier", hang):
            resolved = await h.engine.resolve(issued.identifier)

        assert resolved.index_unavailable is True

    @pytest.mark.asyncio
    async def test_revocation_read_failure_propagates(self) -> None:
        h = Harness()
        issued = await h.issuance.issue_one(make_payload())
        with patch.object(
            h.ledger, "is_revoked", AsyncMock(side_effect=LedgerReadFailed("rpc down")),
        ):
            with pytest.raises(LedgerReadFailed):
                await h.engine.resolve(issued.identifier)


# ─── Audit ────────────────────────────────────────────────────────────────────


class TestAudit:
    @pytest.mark.asyncio
    async def test_resolution_does_not_wait_for_audit(self) -> None:
        h = Harness()
        issued = await h.issuance.issue_one(make_payload())
        gate = asyncio.Event()
        real_append = h.index.append_verification_log

        async def slow_append(entry):
            await gate.wait()
            await real_append(entry)

        with patch.object(h.index, "append_verification_log", slow_append):
            resolved = await h.engine.resolve(issued.identifier)
            assert resolved.identifier == issued.identifier
            assert h.tasks.pending == 1

            gate.set()
            await h.tasks.drain()

        assert h.index.log_count == 1

    @pytest.mark.asyncio
    async def test_audit_failure_reaches_operator_not_caller(self) -> None:
        h = Harness()
        issued = await h.issuance.issue_one(make_payload())
        with patch.object(
            h.index, "append_verification_log", AsyncMock(side_effect=IndexUnavailable("down")),
        ):
            resolved = await h.engine.resolve(issued.identifier)
            await h.tasks.drain()

        assert resolved.is_degraded is False
        assert h.tasks.failures == 1
        assert isinstance(h.reported[0][1], IndexUnavailable)

    @pytest.mark.asyncio
    async def test_verification_history(self) -> None:
        h = Harness()
        issued = await h.issuance.issue_one(make_payload())
        await h.engine.resolve(issued.identifier)
        await h.engine.resolve(issued.identifier)
        await h.tasks.drain()

        history = await h.engine.verification_history(issued.identifier)

        assert history.identifier == issued.identifier
        assert len(history.entries) == 2
