"""
Ledger Data Types

Raw structures as delivered by a ledger node, before any decoding.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple


@dataclass(frozen=True)
class LedgerTransaction:
    """A transaction included in a block."""
    tx_ref: str
    from_address: Optional[str]
    to_address: Optional[str]  # None for contract creation

    def is_addressed_to(self, addresses) -> bool:
        if not self.to_address:
            return False
        return self.to_address.lower() in addresses


@dataclass(frozen=True)
class LedgerBlock:
    """A block with its transactions."""
    height: int
    hash: str
    timestamp: int
    transactions: List[LedgerTransaction] = field(default_factory=list)

    @property
    def tx_count(self) -> int:
        return len(self.transactions)


@dataclass(frozen=True)
class RawLog:
    """
    A log emitted by a transaction.

    topics[0] is the event signature hash; data is the ABI-encoded
    payload of the non-indexed parameters.
    """
    emitting_address: str
    topics: Tuple[str, ...]
    data: bytes
    tx_ref: str
    block_ref: int
    log_index: int

    @property
    def topic0(self) -> Optional[str]:
        return self.topics[0].lower() if self.topics else None
