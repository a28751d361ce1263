"""
CertChain — Certificates REST Router

Endpoints:
  POST /api/v1/certificates                      — Issue one certificate
  POST /api/v1/certificates/batch                — Issue a batch (JSON list)
  POST /api/v1/certificates/batch/csv            — Issue a batch from a CSV upload
  GET  /api/v1/certificates                      — Search the index
  GET  /api/v1/certificates/recent               — Recently issued, not revoked
  GET  /api/v1/certificates/{id}                 — Resolve across all stores
  POST /api/v1/certificates/{id}/revoke          — Revoke on the ledger
  GET  /api/v1/certificates/{id}/verifications   — Verification history
  GET  /api/v1/issuers/{address}/stats           — Per-issuer dashboard counters
  GET  /api/v1/verification-logs                 — Recent verification attempts
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, File, HTTPException, Query, Request, UploadFile

from certchain.api.deps import principal, read_upload, requester_from
from certchain.primitives.certificate import CertificatePayload

logger = structlog.get_logger("certchain.api.certificates")

router = APIRouter()


def _with_issuer(payload: CertificatePayload, request: Request) -> CertificatePayload:
    address = principal(request)
    if address and not payload.issuer_address:
        return payload.model_copy(update={"issuer_address": address})
    return payload


# ─── Issuance ─────────────────────────────────────────────────────


@router.post("/api/v1/certificates", status_code=201)
async def issue_certificate(payload: CertificatePayload, request: Request) -> dict[str, Any]:
    issued = await request.app.state.issuance.issue_one(_with_issuer(payload, request))
    return {"status": "ok", "data": issued.model_dump(mode="json")}


@router.post("/api/v1/certificates/batch", status_code=201)
async def issue_batch(payloads: list[CertificatePayload], request: Request) -> dict[str, Any]:
    result = await request.app.state.issuance.issue_batch(
        [_with_issuer(p, request) for p in payloads]
    )
    return {
        "status": "ok",
        "data": {
            "tx_hash": result.tx_hash,
            "identifiers": result.identifiers,
            "items": [item.model_dump(mode="json") for item in result.items],
        },
    }


@router.post("/api/v1/certificates/batch/csv", status_code=201)
async def issue_batch_csv(request: Request, file: UploadFile = File(...)) -> dict[str, Any]:
    raw = await read_upload(request, file)
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="CSV must be UTF-8") from exc

    result, parsed = await request.app.state.issuance.issue_csv(
        text, issuer_address=principal(request) or "",
    )
    return {
        "status": "ok",
        "data": {
            "tx_hash": result.tx_hash,
            "identifiers": result.identifiers,
            "items": [item.model_dump(mode="json") for item in result.items],
            "rejected_rows": parsed.errors,
        },
    }


# ─── Index queries ────────────────────────────────────────────────


@router.get("/api/v1/certificates")
async def search_certificates(
    request: Request,
    search: str = "",
    issuer: str | None = None,
) -> dict[str, Any]:
    records = await request.app.state.index.search(search, issuer_wallet_address=issuer)
    return {"status": "ok", "data": [r.model_dump(mode="json") for r in records]}


@router.get("/api/v1/certificates/recent")
async def recent_certificates(
    request: Request, limit: int = Query(default=10, ge=1, le=100),
) -> dict[str, Any]:
    records = await request.app.state.index.recent_certificates(limit)
    return {"status": "ok", "data": [r.model_dump(mode="json") for r in records]}


@router.get("/api/v1/issuers/{address}/stats")
async def issuer_stats(address: str, request: Request) -> dict[str, Any]:
    stats = await request.app.state.index.stats(address)
    return {"status": "ok", "data": stats.model_dump(mode="json")}


@router.get("/api/v1/verification-logs")
async def verification_logs(
    request: Request, limit: int = Query(default=10, ge=1, le=500),
) -> dict[str, Any]:
    entries = await request.app.state.index.query_recent_log(limit)
    return {"status": "ok", "data": [e.model_dump(mode="json") for e in entries]}


# ─── Single certificate ───────────────────────────────────────────


@router.get("/api/v1/certificates/{identifier}")
async def resolve_certificate(identifier: int, request: Request) -> dict[str, Any]:
    resolved = await request.app.state.resolution.resolve(
        identifier, requester=requester_from(request),
    )
    data = resolved.model_dump(mode="json")
    data["is_degraded"] = resolved.is_degraded
    return {"status": "ok", "data": data}


@router.post("/api/v1/certificates/{identifier}/revoke")
async def revoke_certificate(identifier: int, request: Request) -> dict[str, Any]:
    result = await request.app.state.issuance.revoke(identifier)
    logger.info(
        "revocation_requested",
        identifier=identifier,
        principal=principal(request),
    )
    return {"status": "ok", "data": result.model_dump(mode="json")}


@router.get("/api/v1/certificates/{identifier}/verifications")
async def certificate_verifications(identifier: int, request: Request) -> dict[str, Any]:
    history = await request.app.state.resolution.verification_history(identifier)
    return {"status": "ok", "data": history.model_dump(mode="json")}
