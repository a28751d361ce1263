"""
CertChain — Store Clients

One adapter per external store, each behind an abstract interface with an
in-memory backend and a production backend.
"""

from certchain.clients.content_store import (
    ContentStoreClient,
    InMemoryContentStore,
    PinataContentStore,
    create_content_store,
)
from certchain.clients.index_store import (
    IndexStore,
    InMemoryIndexStore,
    PostgresIndexStore,
    create_index_store,
)
from certchain.clients.ledger import (
    InMemoryLedgerClient,
    LedgerClient,
    Web3LedgerClient,
    create_ledger_client,
)
from certchain.clients.recognition import (
    PlainTextRecognizer,
    TesseractRecognizer,
    TextRecognizer,
    create_recognizer,
)

__all__ = [
    "ContentStoreClient",
    "InMemoryContentStore",
    "PinataContentStore",
    "create_content_store",
    "IndexStore",
    "InMemoryIndexStore",
    "PostgresIndexStore",
    "create_index_store",
    "InMemoryLedgerClient",
    "LedgerClient",
    "Web3LedgerClient",
    "create_ledger_client",
    "PlainTextRecognizer",
    "TesseractRecognizer",
    "TextRecognizer",
    "create_recognizer",
]
