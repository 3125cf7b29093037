"""
In-Memory Ledger

Deterministic ledger for offline development and tests.

Blocks, transactions and logs follow the same shapes as the JSON-RPC
ledger; event payloads are real ABI encodings produced from the event
schema registry, so the decoder sees exactly what a node would return.

Usage:
    ledger = InMemoryLedger()
    ledger.emit(ledger.item_created(creator="0x...", barcode="B1", volume=100))
    height = ledger.mine_block()
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from eth_abi import encode
from eth_utils import encode_hex, keccak

from ..config import DEFAULT_CONTRACT_ADDRESS
from ..errors import TransientLedgerError
from ..indexer.event_registry import EventKind, EventSchemaRegistry
from .base import BlockCallback, BlockSubscription, LedgerSource, deliver_all
from .types import LedgerBlock, LedgerTransaction, RawLog


@dataclass(frozen=True)
class LogSpec:
    """A log waiting to be included in a block."""
    topics: Tuple[str, ...]
    data: bytes
    emitting_address: str


@dataclass
class _PendingTransaction:
    from_address: str
    to_address: Optional[str]
    logs: List[LogSpec]


class InMemoryLedger(LedgerSource):
    """
    Ledger held entirely in memory.

    Failure injection:
        ledger.fail("get_block", key=12, times=1)   # next fetch of block 12 fails
        ledger.fail("get_chain_height", times=2)
    """

    def __init__(
        self,
        contract_address: str = DEFAULT_CONTRACT_ADDRESS,
        registry: Optional[EventSchemaRegistry] = None,
        genesis_timestamp: int = 1_700_000_000,
        block_time: int = 12,
        sender: str = "0x" + "ee" * 20
    ):
        self.contract_address = contract_address.lower()
        self._registry = registry or EventSchemaRegistry()
        self._genesis_timestamp = genesis_timestamp
        self._block_time = block_time
        self._sender = sender.lower()
        self._logger = logging.getLogger("InMemoryLedger")

        self._blocks: Dict[int, LedgerBlock] = {}
        self._logs: Dict[str, List[RawLog]] = {}
        self._pending: List[_PendingTransaction] = []
        self._subscriptions: List[BlockSubscription] = []
        self._failures: Dict[Tuple[str, object], int] = {}

        self._blocks[0] = LedgerBlock(
            height=0,
            hash=self._block_hash(0),
            timestamp=genesis_timestamp,
            transactions=[]
        )
        self._head = 0

    # =========================================================================
    # Event Encoding
    # =========================================================================

    def encode_event(self, kind: EventKind, values: Sequence) -> LogSpec:
        """ABI-encode event values in schema field order."""
        schema = self._registry.schema_for(kind)
        return LogSpec(
            topics=(schema.topic,),
            data=encode(schema.abi_types, list(values)),
            emitting_address=self.contract_address
        )

    def participant_registered(
        self,
        address: str,
        name: str,
        role_code: int = 0,
        public_key: str = ""
    ) -> LogSpec:
        return self.encode_event(
            EventKind.PARTICIPANT_REGISTERED,
            [address, name, role_code, public_key]
        )

    def item_created(
        self,
        creator: str,
        barcode: str,
        volume: int,
        name: str = "Item",
        manufacturer_name: str = "Manufacturer",
        manufactured_label: str = "2024-01-01"
    ) -> LogSpec:
        return self.encode_event(
            EventKind.ITEM_CREATED,
            [creator, name, manufacturer_name, barcode, manufactured_label, volume]
        )

    def item_transferred(
        self,
        barcode: str,
        seller: str,
        buyer: str,
        volume: int,
        transfer_time: int = 0
    ) -> LogSpec:
        return self.encode_event(
            EventKind.ITEM_TRANSFERRED,
            [barcode, buyer, seller, transfer_time, volume]
        )

    def unknown_log(self, signature: str = "Approval(address,address,uint256)") -> LogSpec:
        """A log whose signature is not registered."""
        return LogSpec(
            topics=(encode_hex(keccak(text=signature)).lower(),),
            data=encode(["uint256"], [1]),
            emitting_address=self.contract_address
        )

    # =========================================================================
    # Block Production
    # =========================================================================

    def emit(self, *logs: LogSpec, to_address: Optional[str] = None) -> int:
        """
        Queue one transaction carrying the given logs.

        Returns the transaction's position in the pending block.
        """
        target = to_address if to_address is not None else self.contract_address
        self._pending.append(_PendingTransaction(
            from_address=self._sender,
            to_address=target.lower() if target else None,
            logs=list(logs)
        ))
        return len(self._pending) - 1

    def mine_block(self, notify: bool = True) -> int:
        """Seal pending transactions into the next block. Returns its height."""
        height = self._head + 1
        transactions = []
        log_index = 0

        for position, pending in enumerate(self._pending):
            tx_ref = self._tx_ref(height, position)
            transactions.append(LedgerTransaction(
                tx_ref=tx_ref,
                from_address=pending.from_address,
                to_address=pending.to_address
            ))

            raw_logs = []
            for spec in pending.logs:
                raw_logs.append(RawLog(
                    emitting_address=spec.emitting_address,
                    topics=spec.topics,
                    data=spec.data,
                    tx_ref=tx_ref,
                    block_ref=height,
                    log_index=log_index
                ))
                log_index += 1
            self._logs[tx_ref] = raw_logs

        self._blocks[height] = LedgerBlock(
            height=height,
            hash=self._block_hash(height),
            timestamp=self._genesis_timestamp + height * self._block_time,
            transactions=transactions
        )
        self._pending = []
        self._head = height

        if notify:
            deliver_all(self._subscriptions, height)
        return height

    def mine_empty_blocks(self, count: int, notify: bool = False) -> int:
        """Mine count empty blocks. Returns the new head."""
        for _ in range(count):
            self.mine_block(notify=notify)
        return self._head

    def advance_to(self, height: int) -> int:
        """Mine empty blocks until the head is height - 1, so the next mined block is height."""
        while self._head < height - 1:
            self.mine_block(notify=False)
        return self._head

    def tx_refs(self, height: int) -> List[str]:
        return [tx.tx_ref for tx in self._blocks[height].transactions]

    # =========================================================================
    # Failure Injection
    # =========================================================================

    def fail(self, method: str, key: object = None, times: int = 1):
        """Make the next `times` calls of method (optionally for key) raise."""
        self._failures[(method, key)] = times

    def _maybe_fail(self, method: str, key: object = None):
        for slot in ((method, key), (method, None)):
            remaining = self._failures.get(slot, 0)
            if remaining > 0:
                self._failures[slot] = remaining - 1
                raise TransientLedgerError(f"Injected failure: {method}({key})")

    # =========================================================================
    # LedgerSource
    # =========================================================================

    async def get_chain_height(self) -> int:
        self._maybe_fail("get_chain_height")
        return self._head

    async def get_block(self, height: int) -> LedgerBlock:
        self._maybe_fail("get_block", height)
        block = self._blocks.get(height)
        if block is None:
            raise TransientLedgerError(f"Block {height} not available yet")
        return block

    async def get_transaction_logs(self, tx_ref: str) -> List[RawLog]:
        self._maybe_fail("get_transaction_logs", tx_ref)
        if tx_ref not in self._logs:
            raise TransientLedgerError(f"No receipt for transaction {tx_ref}")
        return list(self._logs[tx_ref])

    def subscribe_new_blocks(self, callback: BlockCallback) -> BlockSubscription:
        subscription = BlockSubscription(callback, on_cancel=self._release)
        self._subscriptions.append(subscription)
        return subscription

    def _release(self, subscription: BlockSubscription):
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _block_hash(height: int) -> str:
        return encode_hex(keccak(text=f"block:{height}"))

    @staticmethod
    def _tx_ref(height: int, position: int) -> str:
        return encode_hex(keccak(text=f"tx:{height}:{position}"))
