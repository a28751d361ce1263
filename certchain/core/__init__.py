"""CertChain — Core runtime utilities."""

from certchain.core.tasks import DetachedTaskRunner

__all__ = ["DetachedTaskRunner"]
