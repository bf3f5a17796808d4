"""
Blockchain client abstraction for receipt lookups and ownership checks.

Supports an in-memory chain for tests/local runs and a web3.py JSON-RPC
implementation for production.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional, Protocol

from web3 import Web3
from web3.exceptions import TransactionNotFound

logger = logging.getLogger(__name__)

ERC721_OWNER_OF_ABI = [
    {
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "name": "ownerOf",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    }
]


@dataclass(frozen=True)
class TxReceipt:
    """Outcome of a mined transaction and how deep it is buried."""

    tx_hash: str
    status: int
    block_number: int
    confirmations: int

    @property
    def succeeded(self) -> bool:
        return self.status == 1


def confirmations_for(receipt_block: int, latest_block: int) -> int:
    """A transaction in the latest block has one confirmation."""
    return max(latest_block - receipt_block + 1, 0)


class ChainClient(Protocol):
    """Minimal chain interface used by the order monitor and NFT verification."""

    def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        """Return the receipt, or None while the transaction is not mined."""
        ...

    def transaction_exists(self, tx_hash: str) -> bool:
        """True when the node knows the transaction (mined or pending)."""
        ...

    def owner_of(self, contract_address: str, token_id: str) -> Optional[str]:
        ...


class Web3ChainClient:
    """JSON-RPC chain client backed by web3.py."""

    def __init__(self, provider_url: str, timeout: float = 30.0):
        if not provider_url:
            raise ValueError("WEB3_PROVIDER_URL is required for Web3ChainClient")
        self.w3 = Web3(
            Web3.HTTPProvider(provider_url, request_kwargs={"timeout": timeout})
        )

    def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        if receipt is None:
            return None
        latest = self.w3.eth.block_number
        block_number = receipt["blockNumber"]
        return TxReceipt(
            tx_hash=tx_hash,
            status=int(receipt["status"]),
            block_number=block_number,
            confirmations=confirmations_for(block_number, latest),
        )

    def transaction_exists(self, tx_hash: str) -> bool:
        try:
            tx = self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return False
        return tx is not None

    def owner_of(self, contract_address: str, token_id: str) -> Optional[str]:
        contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=ERC721_OWNER_OF_ABI,
        )
        return contract.functions.ownerOf(int(token_id)).call()


@dataclass
class InMemoryChainClient:
    """Deterministic chain for testing/dev.

    Transactions are ``submit``-ted into a pending pool, then ``mine``-d into
    the current block; ``advance`` adds empty blocks on top.
    """

    block_number: int = 0
    pending: set[str] = field(default_factory=set)
    mined: dict[str, tuple[int, int]] = field(default_factory=dict)
    owners: dict[tuple[str, str], str] = field(default_factory=dict)

    def __post_init__(self):
        self._lock = threading.Lock()

    def submit(self, tx_hash: str) -> None:
        with self._lock:
            self.pending.add(tx_hash.lower())

    def mine(self, tx_hash: str, *, success: bool = True) -> None:
        key = tx_hash.lower()
        with self._lock:
            self.pending.discard(key)
            self.block_number += 1
            self.mined[key] = (1 if success else 0, self.block_number)

    def advance(self, blocks: int = 1) -> None:
        with self._lock:
            self.block_number += blocks

    def set_owner(self, contract_address: str, token_id: str, owner: str) -> None:
        self.owners[(contract_address.lower(), str(token_id))] = owner

    def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        with self._lock:
            entry = self.mined.get(tx_hash.lower())
            if entry is None:
                return None
            status, block = entry
            return TxReceipt(
                tx_hash=tx_hash,
                status=status,
                block_number=block,
                confirmations=confirmations_for(block, self.block_number),
            )

    def transaction_exists(self, tx_hash: str) -> bool:
        key = tx_hash.lower()
        with self._lock:
            return key in self.pending or key in self.mined

    def owner_of(self, contract_address: str, token_id: str) -> Optional[str]:
        return self.owners.get((contract_address.lower(), str(token_id)))
