"""CertChain — Telemetry (structured logging)."""

from certchain.telemetry.logging import setup_logging

__all__ = ["setup_logging"]
