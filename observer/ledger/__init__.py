"""
Ledger Collaborators

Components:
- LedgerSource: Read-only interface the scanner depends on
- BlockSubscription: Cancellable new-block notification handle
- JsonRpcLedger: EVM JSON-RPC node over HTTP (aiohttp)
- InMemoryLedger (ledger.memory): Deterministic ledger for tests and demos
"""

from .types import LedgerBlock, LedgerTransaction, RawLog
from .base import BlockSubscription, LedgerSource
from .jsonrpc import JsonRpcLedger

__all__ = [
    "LedgerBlock",
    "LedgerTransaction",
    "RawLog",
    "BlockSubscription",
    "LedgerSource",
    "JsonRpcLedger",
]
