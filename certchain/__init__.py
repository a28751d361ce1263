"""
CertChain — certificate issuance and verification across a ledger, a
content-addressed store and a relational index.
"""

__version__ = "0.1.0"
