"""
CertChain — Common Primitives

Shared enums, base classes, and utilities used across all systems.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, Field
from ulid import ULID


def new_id() -> str:
    """Generate a new ULID string. Time-sortable, globally unique."""
    return str(ULID())


def utc_now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


# ─── Enums ────────────────────────────────────────────────────────


class HealthStatus(str, enum.Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# ─── Base Models ──────────────────────────────────────────────────


class CertBaseModel(BaseModel):
    """Base model for all CertChain primitives. Uses ULID IDs and UTC timestamps."""

    model_config = {"populate_by_name": True, "from_attributes": True}


class Identified(CertBaseModel):
    """Mixin for models with ULID IDs."""

    id: str = Field(default_factory=new_id)


class RequesterInfo(CertBaseModel):
    """Who asked. Recorded verbatim on every verification log entry."""

    principal: str | None = None      # acting wallet address, if any
    ip: str | None = None
    user_agent: str | None = None
