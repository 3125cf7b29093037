"""
Ledger Source Interface

The observer only needs four things from a ledger: the current height,
a block by height, the logs of a transaction, and new-block notifications.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from .types import LedgerBlock, RawLog


BlockCallback = Callable[[int], None]

_logger = logging.getLogger("LedgerSource")


class BlockSubscription:
    """
    Cancellable handle for new-block notifications.

    Once cancel() returns, deliver() drops every further notification,
    so no callback fires after cancellation.
    """

    def __init__(self, callback: BlockCallback, on_cancel: Optional[Callable] = None):
        self._callback = callback
        self._on_cancel = on_cancel
        self._active = True
        self._delivered = 0

    @property
    def active(self) -> bool:
        return self._active

    @property
    def delivered(self) -> int:
        return self._delivered

    def deliver(self, height: int) -> bool:
        """Invoke the callback for a new height. Returns False if cancelled."""
        if not self._active:
            return False
        self._callback(height)
        self._delivered += 1
        return True

    def cancel(self):
        """Stop delivery and release the underlying source."""
        if not self._active:
            return
        self._active = False
        if self._on_cancel:
            self._on_cancel(self)


class LedgerSource(ABC):
    """Read-only ledger collaborator."""

    async def start(self):
        """Acquire resources (sessions, background tasks)."""

    async def stop(self):
        """Release resources."""

    @abstractmethod
    async def get_chain_height(self) -> int:
        """Current head height."""

    @abstractmethod
    async def get_block(self, height: int) -> LedgerBlock:
        """Block with its transactions. Raises TransientLedgerError on failure."""

    @abstractmethod
    async def get_transaction_logs(self, tx_ref: str) -> List[RawLog]:
        """Logs emitted by a transaction, in log index order."""

    @abstractmethod
    def subscribe_new_blocks(self, callback: BlockCallback) -> BlockSubscription:
        """Register a callback invoked with each new head height."""


def deliver_all(subscriptions: List[BlockSubscription], height: int):
    """Fan a height out to every active subscription."""
    for subscription in list(subscriptions):
        try:
            subscription.deliver(height)
        except Exception as e:
            _logger.error(f"Block callback failed for height {height}: {e}")
