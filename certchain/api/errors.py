"""
CertChain — HTTP Error Mapping

Translates the error taxonomy into status codes once, so routers can let
service exceptions propagate.
"""

from __future__ import annotations

from typing import Any, cast

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from certchain.primitives.errors import (
    CertChainError,
    ContentUnavailable,
    IndexUnavailable,
    InvalidContentPointer,
    IssuanceFailed,
    IssuanceStage,
    LedgerError,
    NotFound,
)

logger = structlog.get_logger("certchain.api.errors")


def _body(exc: Exception, **extra: Any) -> dict[str, Any]:
    return {"status": "error", "error": str(exc), "error_type": type(exc).__name__, **extra}


def status_for(exc: CertChainError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, IssuanceFailed):
        return 422 if exc.stage == IssuanceStage.VALIDATION else 502
    if isinstance(exc, InvalidContentPointer):
        return 400
    if isinstance(exc, (LedgerError, ContentUnavailable)):
        return 502
    if isinstance(exc, IndexUnavailable):
        return 503
    return 500


async def _handle_certchain_error(request: Request, exc: Exception) -> JSONResponse:
    status = status_for(cast(CertChainError, exc))
    extra: dict[str, Any] = {}
    if isinstance(exc, IssuanceFailed):
        extra = {
            "stage": exc.stage.value,
            "item_index": exc.item_index,
            "content_pointer": exc.content_pointer,
            "content_pointers": exc.content_pointers,
            "tx_hash": exc.tx_hash,
            "outcome_unknown": exc.outcome_unknown,
        }
    log = logger.warning if status < 500 else logger.error
    log(
        "request_failed",
        path=request.url.path,
        status_code=status,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return JSONResponse(status_code=status, content=_body(exc, **extra))


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CertChainError, _handle_certchain_error)
