"""CertChain — HTTP API."""
