"""
CertChain — Request helpers shared by the routers.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, UploadFile

from certchain.primitives.common import RequesterInfo


def principal(request: Request) -> str | None:
    """Acting wallet address, if the caller supplied one."""
    header = request.app.state.config.server.principal_header
    value = request.headers.get(header, "").strip()
    return value or None


def requester_from(request: Request) -> RequesterInfo:
    return RequesterInfo(
        principal=principal(request),
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


async def read_upload(request: Request, file: UploadFile) -> bytes:
    limit = request.app.state.config.server.max_upload_bytes
    data = await file.read(limit + 1)
    if len(data) > limit:
        raise HTTPException(status_code=413, detail=f"Upload exceeds {limit} bytes")
    if not data:
        raise HTTPException(status_code=400, detail="Empty upload")
    return data
