"""CertChain — Systems."""
