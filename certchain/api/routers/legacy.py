"""
CertChain — Legacy Verification REST Router

Endpoints:
  POST /api/v1/verify/legacy        — Upload a scanned certificate (image or PDF)
  POST /api/v1/verify/legacy/text   — Match already-recognised text
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, File, Request, UploadFile
from pydantic import BaseModel

from certchain.api.deps import read_upload, requester_from

logger = structlog.get_logger("certchain.api.legacy")

router = APIRouter()


class LegacyTextRequest(BaseModel):
    text: str


@router.post("/api/v1/verify/legacy")
async def verify_legacy_document(
    request: Request, file: UploadFile = File(...),
) -> dict[str, Any]:
    document = await read_upload(request, file)
    result = await request.app.state.legacy.verify_document(
        document,
        file.content_type or "application/octet-stream",
        requester=requester_from(request),
    )
    return {"status": "ok", "data": result.model_dump(mode="json")}


@router.post("/api/v1/verify/legacy/text")
async def verify_legacy_text(body: LegacyTextRequest, request: Request) -> dict[str, Any]:
    result = await request.app.state.legacy.verify_text(
        body.text, requester=requester_from(request),
    )
    return {"status": "ok", "data": result.model_dump(mode="json")}
