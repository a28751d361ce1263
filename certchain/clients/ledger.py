"""
CertChain — Ledger Client

The ledger is the single source of truth for certificate existence, the
immutable core fields, and revocation. Two backends:

  - ``InMemoryLedgerClient``: in-process ledger with the contract's exact
    semantics (atomic batches, monotonic revocation). Development and tests.
  - ``Web3LedgerClient``: the CertNFT contract on an EVM chain via
    ``web3.AsyncWeb3``. Writes are signed locally and block until the
    receipt confirms inclusion.

A confirmation timeout is *not* a failure: the transaction may still land.
It surfaces as ``LedgerConfirmationTimeout`` (``outcome_unknown=True``).
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import structlog
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
from web3.logs import DISCARD

from certchain.primitives.certificate import (
    BatchMintReceipt,
    LedgerCertificate,
    MintReceipt,
    MintRequest,
)
from certchain.primitives.common import new_id
from certchain.primitives.errors import (
    LedgerConfirmationTimeout,
    LedgerReadFailed,
    LedgerReceiptMismatch,
    LedgerWriteFailed,
    NotFound,
)

if TYPE_CHECKING:
    from eth_account.signers.local import LocalAccount

    from certchain.config import LedgerConfig

logger = structlog.get_logger("certchain.clients.ledger")


# ─── Interface ────────────────────────────────────────────────────


class LedgerClient(ABC):
    """
    Authoritative certificate ledger.

    Lifecycle: construct → connect() → use → close().
    """

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def mint(
        self,
        content_pointer: str,
        holder_name: str,
        issuer_name: str,
        issue_date: str,
    ) -> MintReceipt:
        """Mint one certificate. Blocks until the ledger confirms inclusion."""
        ...

    @abstractmethod
    async def batch_mint(self, requests: list[MintRequest]) -> BatchMintReceipt:
        """Mint all or none. Identifiers come back in request order."""
        ...

    @abstractmethod
    async def revoke(self, identifier: int) -> None:
        """Revoke. Revoking an already-revoked certificate is a no-op success."""
        ...

    @abstractmethod
    async def get(self, identifier: int) -> LedgerCertificate:
        """Read core fields. Raises NotFound for unknown identifiers."""
        ...

    @abstractmethod
    async def is_revoked(self, identifier: int) -> bool:
        ...

    async def health_check(self) -> dict[str, Any]:
        return {"status": "connected"}


# ─── In-memory backend ────────────────────────────────────────────


class InMemoryLedgerClient(LedgerClient):
    """
    Ledger held in process memory.

    Identifiers are assigned from 0 upward, like the contract's ``nextId``.
    There is no await between validation and assignment, so a batch is
    atomic with respect to every other coroutine.
    """

    def __init__(self) -> None:
        self._certificates: dict[int, LedgerCertificate] = {}
        self._revoked: set[int] = set()
        self._next_id = 0

    async def mint(
        self,
        content_pointer: str,
        holder_name: str,
        issuer_name: str,
        issue_date: str,
    ) -> MintReceipt:
        receipt = await self.batch_mint([
            MintRequest(
                content_pointer=content_pointer,
                holder_name=holder_name,
                issuer_name=issuer_name,
                issue_date=issue_date,
            )
        ])
        return MintReceipt(identifier=receipt.identifiers[0], tx_hash=receipt.tx_hash)

    async def batch_mint(self, requests: list[MintRequest]) -> BatchMintReceipt:
        if not requests:
            raise LedgerWriteFailed("batch_mint called with an empty batch")
        for position, request in enumerate(requests):
            if not request.content_pointer:
                raise LedgerWriteFailed(f"Request {position} has an empty content pointer")

        first = self._next_id
        identifiers = list(range(first, first + len(requests)))
        for identifier, request in zip(identifiers, requests, strict=True):
            self._certificates[identifier] = LedgerCertificate(
                identifier=identifier, **request.model_dump(),
            )
        self._next_id = first + len(requests)

        tx_hash = "0x" + new_id().lower()
        logger.debug("ledger_minted", identifiers=identifiers, tx_hash=tx_hash)
        return BatchMintReceipt(identifiers=identifiers, tx_hash=tx_hash)

    async def revoke(self, identifier: int) -> None:
        if identifier not in self._certificates:
            raise NotFound(identifier)
        self._revoked.add(identifier)

    async def get(self, identifier: int) -> LedgerCertificate:
        try:
            return self._certificates[identifier]
        except KeyError:
            raise NotFound(identifier) from None

    async def is_revoked(self, identifier: int) -> bool:
        if identifier not in self._certificates:
            raise NotFound(identifier)
        return identifier in self._revoked

    @property
    def minted_count(self) -> int:
        return len(self._certificates)


# ─── Web3 backend ─────────────────────────────────────────────────

# Only the functions and events this client touches.
CERT_NFT_ABI: list[dict[str, Any]] = [
    {
        "type": "function", "name": "mint", "stateMutability": "nonpayable",
        "inputs": [
            {"name": "ipfsHash", "type": "string"},
            {"name": "name", "type": "string"},
            {"name": "issuer", "type": "string"},
            {"name": "issueDate", "type": "string"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function", "name": "batchMint", "stateMutability": "nonpayable",
        "inputs": [
            {"name": "ipfsHashes", "type": "string[]"},
            {"name": "names", "type": "string[]"},
            {"name": "issuers", "type": "string[]"},
            {"name": "issueDates", "type": "string[]"},
        ],
        "outputs": [],
    },
    {
        "type": "function", "name": "revokeCertificate", "stateMutability": "nonpayable",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [],
    },
    {
        "type": "function", "name": "getCert", "stateMutability": "view",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [
            {"name": "ipfsHash", "type": "string"},
            {"name": "name", "type": "string"},
            {"name": "issuer", "type": "string"},
            {"name": "issueDate", "type": "string"},
        ],
    },
    {
        "type": "function", "name": "isCertificateRevoked", "stateMutability": "view",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "event", "name": "Transfer", "anonymous": False,
        "inputs": [
            {"name": "from", "type": "address", "indexed": True},
            {"name": "to", "type": "address", "indexed": True},
            {"name": "tokenId", "type": "uint256", "indexed": True},
        ],
    },
]

_ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class Web3LedgerClient(LedgerClient):
    """
    CertNFT contract client over JSON-RPC.

    Nonce allocation and submission are serialised per client so concurrent
    issuances from one signer never reuse a nonce; waiting for receipts is
    not serialised.
    """

    def __init__(self, config: LedgerConfig) -> None:
        self._config = config
        self._w3: AsyncWeb3 | None = None
        self._contract: Any = None
        self._account: LocalAccount | None = None
        self._chain_id: int | None = config.chain_id
        self._send_lock = asyncio.Lock()

    # ── Lifecycle ─────────────────────────────────────────────

    async def connect(self) -> None:
        if not self._config.contract_address:
            raise ValueError("ledger.contract_address must be set for the web3 backend")

        self._w3 = AsyncWeb3(AsyncHTTPProvider(self._config.rpc_url))
        self._contract = self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(self._config.contract_address),
            abi=CERT_NFT_ABI,
        )
        if self._config.private_key:
            self._account = Account.from_key(self._config.private_key)
        else:
            logger.warning(
                "ledger_private_key_not_set",
                hint="Reads work, but mint/revoke require CERTCHAIN_LEDGER_PRIVATE_KEY.",
            )

        try:
            if self._chain_id is None:
                self._chain_id = await self._w3.eth.chain_id
        except Exception:
            await self.close()
            raise

        logger.info(
            "ledger_connected",
            rpc_url=self._config.rpc_url,
            contract=self._config.contract_address,
            chain_id=self._chain_id,
            signer=self._account.address if self._account else None,
        )

    async def close(self) -> None:
        if self._w3 is not None:
            try:
                await self._w3.provider.disconnect()
            except Exception as e:
                logger.warning("ledger_close_error", error=str(e))
            self._w3 = None
            self._contract = None
            logger.info("ledger_disconnected")

    async def health_check(self) -> dict[str, Any]:
        try:
            block = await self._require_w3().eth.block_number
            return {"status": "connected", "block_number": block, "chain_id": self._chain_id}
        except Exception as e:
            logger.error("ledger_health_check_failed", error=str(e))
            return {"status": "disconnected", "error": str(e)}

    # ── Writes ────────────────────────────────────────────────

    async def mint(
        self,
        content_pointer: str,
        holder_name: str,
        issuer_name: str,
        issue_date: str,
    ) -> MintReceipt:
        fn = self._require_contract().functions.mint(
            content_pointer, holder_name, issuer_name, issue_date,
        )
        receipt, tx_hash = await self._transact(fn, operation="mint")
        identifiers = self._minted_token_ids(receipt)
        if len(identifiers) != 1:
            raise LedgerReceiptMismatch(
                f"mint confirmed but emitted {len(identifiers)} mint events", tx_hash=tx_hash,
            )
        return MintReceipt(identifier=identifiers[0], tx_hash=tx_hash)

    async def batch_mint(self, requests: list[MintRequest]) -> BatchMintReceipt:
        if not requests:
            raise LedgerWriteFailed("batch_mint called with an empty batch")
        fn = self._require_contract().functions.batchMint(
            [r.content_pointer for r in requests],
            [r.holder_name for r in requests],
            [r.issuer_name for r in requests],
            [r.issue_date for r in requests],
        )
        receipt, tx_hash = await self._transact(fn, operation="batch_mint")
        # The contract mints sequentially, so ascending token ids follow
        # the request order.
        identifiers = sorted(self._minted_token_ids(receipt))
        if len(identifiers) != len(requests):
            raise LedgerReceiptMismatch(
                f"batchMint confirmed {len(identifiers)} of {len(requests)} mints",
                tx_hash=tx_hash,
            )
        return BatchMintReceipt(identifiers=identifiers, tx_hash=tx_hash)

    async def revoke(self, identifier: int) -> None:
        if await self.is_revoked(identifier):
            return
        fn = self._require_contract().functions.revokeCertificate(identifier)
        try:
            await self._transact(fn, operation="revoke")
        except LedgerWriteFailed:
            # A concurrent revoke may have won the race; the goal state holds.
            if await self.is_revoked(identifier):
                return
            raise

    # ── Reads ─────────────────────────────────────────────────

    async def get(self, identifier: int) -> LedgerCertificate:
        fn = self._require_contract().functions.getCert(identifier)
        ipfs_hash, name, issuer, issue_date = await self._call(fn, identifier)
        if not ipfs_hash:
            raise NotFound(identifier)
        return LedgerCertificate(
            identifier=identifier,
            content_pointer=ipfs_hash,
            holder_name=name,
            issuer_name=issuer,
            issue_date=issue_date,
        )

    async def is_revoked(self, identifier: int) -> bool:
        fn = self._require_contract().functions.isCertificateRevoked(identifier)
        return bool(await self._call(fn, identifier))

    # ── Internal helpers ──────────────────────────────────────

    async def _call(self, fn: Any, identifier: int) -> Any:
        try:
            return await fn.call()
        except ContractLogicError as exc:
            # The contract reverts reads of nonexistent tokens.
            raise NotFound(identifier, str(exc)) from exc
        except (Web3Exception, OSError, ValueError) as exc:
            raise LedgerReadFailed(f"Ledger read failed: {exc}") from exc

    async def _transact(self, fn: Any, operation: str) -> tuple[Any, str]:
        w3 = self._require_w3()
        account = self._require_account()

        async with self._send_lock:
            try:
                nonce = await w3.eth.get_transaction_count(account.address, "pending")
                tx = await fn.build_transaction({
                    "from": account.address,
                    "nonce": nonce,
                    "chainId": self._chain_id,
                })
                signed = account.sign_transaction(tx)
                raw_hash = await w3.eth.send_raw_transaction(signed.raw_transaction)
            except ContractLogicError as exc:
                raise LedgerWriteFailed(f"{operation} reverted during estimation: {exc}") from exc
            except (Web3Exception, OSError, ValueError) as exc:
                raise LedgerWriteFailed(f"{operation} submission failed: {exc}") from exc

        tx_hash = raw_hash.to_0x_hex()
        logger.info("ledger_tx_submitted", operation=operation, tx_hash=tx_hash)

        try:
            receipt = await w3.eth.wait_for_transaction_receipt(
                raw_hash,
                timeout=self._config.confirmation_timeout_s,
                poll_latency=self._config.poll_latency_s,
            )
        except TimeExhausted as exc:
            logger.warning(
                "ledger_confirmation_timeout",
                operation=operation,
                tx_hash=tx_hash,
                timeout_s=self._config.confirmation_timeout_s,
            )
            raise LedgerConfirmationTimeout(
                f"{operation} not confirmed within {self._config.confirmation_timeout_s}s",
                tx_hash=tx_hash,
            ) from exc
        except (Web3Exception, OSError) as exc:
            raise LedgerConfirmationTimeout(
                f"{operation} confirmation polling failed: {exc}", tx_hash=tx_hash,
            ) from exc

        if receipt["status"] != 1:
            raise LedgerWriteFailed(f"{operation} reverted on chain", tx_hash=tx_hash)

        logger.info(
            "ledger_tx_confirmed",
            operation=operation,
            tx_hash=tx_hash,
            block=receipt["blockNumber"],
        )
        return receipt, tx_hash

    def _minted_token_ids(self, receipt: Any) -> list[int]:
        events = self._require_contract().events.Transfer().process_receipt(
            receipt, errors=DISCARD,
        )
        return [
            int(event["args"]["tokenId"])
            for event in events
            if event["args"]["from"] == _ZERO_ADDRESS
        ]

    def _require_w3(self) -> AsyncWeb3:
        if self._w3 is None:
            raise RuntimeError("Web3LedgerClient not connected. Call connect() first.")
        return self._w3

    def _require_contract(self) -> Any:
        if self._contract is None:
            raise RuntimeError("Web3LedgerClient not connected. Call connect() first.")
        return self._contract

    def _require_account(self) -> LocalAccount:
        if self._account is None:
            raise LedgerWriteFailed("No signing key configured (ledger.private_key)")
        return self._account


# ─── Factory ──────────────────────────────────────────────────────


def create_ledger_client(config: LedgerConfig) -> LedgerClient:
    if config.backend == "web3":
        return Web3LedgerClient(config)
    return InMemoryLedgerClient()
