"""
CertChain — Content Store Client

Content-addressed payload storage. A pointer is derived from the bytes
themselves, so writing the same bytes twice yields the same pointer and no
second object. There is deliberately no update or delete: a payload cannot
change without changing its pointer, which would no longer match the
ledger record.

Backends:
  - ``InMemoryContentStore``: SHA-256 hex pointers, process memory.
  - ``PinataContentStore``: IPFS pinning via the Pinata API, reads through
    the public gateway.
"""

from __future__ import annotations

import hashlib
import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from certchain.primitives.errors import ContentUnavailable, InvalidContentPointer

if TYPE_CHECKING:
    from certchain.config import ContentStoreConfig

logger = structlog.get_logger("certchain.clients.content_store")


class ContentStoreClient(ABC):
    """Abstract content-addressed store."""

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def put(self, data: bytes) -> str:
        """Store bytes, return their pointer. Idempotent."""
        ...

    @abstractmethod
    async def get(self, pointer: str) -> bytes:
        """
        Fetch bytes by pointer.

        Raises InvalidContentPointer for malformed pointers and
        ContentUnavailable when the store cannot serve a well-formed one.
        """
        ...

    @abstractmethod
    def gateway_url(self, pointer: str) -> str:
        """Public URL a browser can fetch the payload from."""
        ...

    async def health_check(self) -> dict[str, Any]:
        return {"status": "connected"}


# ─── In-memory backend ────────────────────────────────────────────

_SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")


class InMemoryContentStore(ContentStoreClient):
    def __init__(self, gateway_base: str = "memory://content") -> None:
        self._objects: dict[str, bytes] = {}
        self._gateway_base = gateway_base.rstrip("/")

    async def put(self, data: bytes) -> str:
        pointer = hashlib.sha256(data).hexdigest()
        if pointer not in self._objects:
            self._objects[pointer] = bytes(data)
        return pointer

    async def get(self, pointer: str) -> bytes:
        if not _SHA256_HEX.match(pointer):
            raise InvalidContentPointer(pointer)
        try:
            return self._objects[pointer]
        except KeyError:
            raise ContentUnavailable("Content not held by this store", pointer=pointer) from None

    def gateway_url(self, pointer: str) -> str:
        return f"{self._gateway_base}/{pointer}"

    @property
    def object_count(self) -> int:
        return len(self._objects)


# ─── Pinata / IPFS backend ────────────────────────────────────────

# CIDv0 (base58btc multihash) or CIDv1 (base32, lower case).
_CID_PATTERN = re.compile(r"^(Qm[1-9A-HJ-NP-Za-km-z]{44}|b[a-z2-7]{50,})$")


def is_valid_cid(pointer: str) -> bool:
    return bool(_CID_PATTERN.match(pointer))


class PinataContentStore(ContentStoreClient):
    """
    IPFS via Pinata.

    IPFS is content-addressed, so re-pinning identical bytes returns the
    same CID; Pinata reports it as a duplicate rather than storing twice.
    """

    def __init__(self, config: ContentStoreConfig) -> None:
        self._config = config
        self._client: httpx.AsyncClient | None = None

    async def connect(self) -> None:
        if not (self._config.api_key and self._config.api_secret):
            logger.warning(
                "pinata_credentials_not_set",
                hint="Uploads need CERTCHAIN_PINATA_API_KEY and CERTCHAIN_PINATA_API_SECRET.",
            )
        self._client = httpx.AsyncClient(timeout=self._config.timeout_s)
        logger.info("content_store_connected", api_url=self._config.api_url)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("content_store_disconnected")

    async def put(self, data: bytes) -> str:
        client = self._require_client()
        try:
            response = await client.post(
                f"{self._config.api_url.rstrip('/')}/pinning/pinFileToIPFS",
                headers={
                    "pinata_api_key": self._config.api_key,
                    "pinata_secret_api_key": self._config.api_secret,
                },
                files={"file": (self._config.upload_filename, data, "application/json")},
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            raise ContentUnavailable(
                f"Pinata rejected upload: HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ContentUnavailable(f"Pinata upload failed: {exc}") from exc

        pointer = body.get("IpfsHash")
        if not isinstance(pointer, str) or not pointer:
            raise ContentUnavailable("Pinata response carried no IpfsHash")
        logger.debug(
            "content_pinned",
            pointer=pointer,
            size=len(data),
            duplicate=bool(body.get("isDuplicate")),
        )
        return pointer

    async def get(self, pointer: str) -> bytes:
        if not is_valid_cid(pointer):
            raise InvalidContentPointer(pointer)
        client = self._require_client()
        try:
            response = await client.get(self.gateway_url(pointer))
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ContentUnavailable(
                f"Gateway returned HTTP {exc.response.status_code}", pointer=pointer,
            ) from exc
        except httpx.HTTPError as exc:
            raise ContentUnavailable(f"Gateway request failed: {exc}", pointer=pointer) from exc
        return response.content

    def gateway_url(self, pointer: str) -> str:
        return f"{self._config.gateway_url.rstrip('/')}/{pointer}"

    async def health_check(self) -> dict[str, Any]:
        client = self._require_client()
        try:
            response = await client.get(
                f"{self._config.api_url.rstrip('/')}/data/testAuthentication",
                headers={
                    "pinata_api_key": self._config.api_key,
                    "pinata_secret_api_key": self._config.api_secret,
                },
            )
            response.raise_for_status()
            return {"status": "connected"}
        except httpx.HTTPError as e:
            logger.error("content_store_health_check_failed", error=str(e))
            return {"status": "disconnected", "error": str(e)}

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("PinataContentStore not connected. Call connect() first.")
        return self._client


# ─── Factory ──────────────────────────────────────────────────────


def create_content_store(config: ContentStoreConfig) -> ContentStoreClient:
    if config.backend == "pinata":
        return PinataContentStore(config)
    return InMemoryContentStore()
