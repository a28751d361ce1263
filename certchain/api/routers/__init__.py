"""CertChain — REST routers."""
