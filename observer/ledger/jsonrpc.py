"""
JSON-RPC Ledger

Reads blocks, receipts and the chain head from an EVM-compatible node
over HTTP JSON-RPC.

New-block notifications are produced by polling eth_blockNumber, so the
same code works against nodes without websocket support.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp
from eth_utils import decode_hex

from ..errors import LedgerError, TransientLedgerError
from .base import BlockCallback, BlockSubscription, LedgerSource, deliver_all
from .types import LedgerBlock, LedgerTransaction, RawLog


class JsonRpcLedger(LedgerSource):
    """
    Ledger source backed by a JSON-RPC node.

    Usage:
        ledger = JsonRpcLedger("http://localhost:8545")
        await ledger.start()

        head = await ledger.get_chain_height()
        block = await ledger.get_block(head)

        subscription = ledger.subscribe_new_blocks(on_height)
        ...
        subscription.cancel()
        await ledger.stop()
    """

    def __init__(
        self,
        rpc_url: str,
        request_timeout: float = 30.0,
        poll_interval: float = 1.0
    ):
        self._rpc_url = rpc_url
        self._request_timeout = request_timeout
        self._poll_interval = poll_interval
        self._logger = logging.getLogger("JsonRpcLedger")

        self._session: Optional[aiohttp.ClientSession] = None
        self._request_id = 0

        # Live notifications
        self._subscriptions: List[BlockSubscription] = []
        self._poll_task: Optional[asyncio.Task] = None
        self._last_seen_head: Optional[int] = None

    async def start(self):
        """Open the HTTP session."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._request_timeout)
            )

    async def stop(self):
        """Cancel subscriptions, stop polling and close the session."""
        for subscription in list(self._subscriptions):
            subscription.cancel()

        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        if self._session:
            await self._session.close()
            self._session = None

    # =========================================================================
    # RPC Transport
    # =========================================================================

    async def _call(self, method: str, params: List[Any]) -> Any:
        """
        Perform one JSON-RPC call.

        Raises:
            TransientLedgerError: Network failure, timeout or non-200 status
            LedgerError: The node answered with a JSON-RPC error
        """
        if self._session is None:
            await self.start()

        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params
        }

        try:
            async with self._session.post(
                self._rpc_url,
                json=payload,
                headers={"Content-Type": "application/json"}
            ) as response:
                if response.status != 200:
                    raise TransientLedgerError(f"{method} failed: HTTP {response.status}")
                body = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientLedgerError(f"{method} failed: {e}") from e

        if body.get("error"):
            raise LedgerError(f"{method} returned error: {body['error']}")

        return body.get("result")

    # =========================================================================
    # Ledger Reads
    # =========================================================================

    async def get_chain_height(self) -> int:
        result = await self._call("eth_blockNumber", [])
        return int(result, 16)

    async def get_block(self, height: int) -> LedgerBlock:
        result = await self._call("eth_getBlockByNumber", [hex(height), True])
        if result is None:
            raise TransientLedgerError(f"Block {height} not available yet")
        return parse_block(result)

    async def get_transaction_logs(self, tx_ref: str) -> List[RawLog]:
        receipt = await self._call("eth_getTransactionReceipt", [tx_ref])
        if receipt is None:
            raise TransientLedgerError(f"No receipt for transaction {tx_ref}")

        logs = [parse_log(entry) for entry in receipt.get("logs", [])]
        logs.sort(key=lambda log: log.log_index)
        return logs

    # =========================================================================
    # New Block Notifications
    # =========================================================================

    def subscribe_new_blocks(self, callback: BlockCallback) -> BlockSubscription:
        subscription = BlockSubscription(callback, on_cancel=self._release)
        self._subscriptions.append(subscription)

        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_heads())

        self._logger.info(f"New-block subscription opened ({len(self._subscriptions)} active)")
        return subscription

    def _release(self, subscription: BlockSubscription):
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        self._logger.info(f"New-block subscription closed ({len(self._subscriptions)} active)")

        if not self._subscriptions and self._poll_task:
            self._poll_task.cancel()
            self._poll_task = None

    async def _poll_heads(self):
        """Poll the head and notify subscribers of every new height in order."""
        while self._subscriptions:
            try:
                head = await self.get_chain_height()

                if self._last_seen_head is None:
                    self._last_seen_head = head
                    deliver_all(self._subscriptions, head)
                elif head > self._last_seen_head:
                    for height in range(self._last_seen_head + 1, head + 1):
                        deliver_all(self._subscriptions, height)
                    self._last_seen_head = head

            except LedgerError as e:
                self._logger.warning(f"Head poll failed: {e}")

            await asyncio.sleep(self._poll_interval)


# =============================================================================
# Response Parsing
# =============================================================================

def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    raise LedgerError(f"Expected an integer quantity, got {value!r}")


def parse_block(data: Dict[str, Any]) -> LedgerBlock:
    """Convert an eth_getBlockByNumber result (full transactions) to a LedgerBlock."""
    transactions = []
    for tx in data.get("transactions", []):
        if isinstance(tx, str):
            raise LedgerError("Block was fetched without full transaction objects")
        transactions.append(LedgerTransaction(
            tx_ref=tx["hash"],
            from_address=(tx.get("from") or "").lower() or None,
            to_address=(tx.get("to") or "").lower() or None
        ))

    return LedgerBlock(
        height=_to_int(data["number"]),
        hash=data["hash"],
        timestamp=_to_int(data.get("timestamp", 0)),
        transactions=transactions
    )


def parse_log(data: Dict[str, Any]) -> RawLog:
    """Convert a receipt log entry to a RawLog."""
    raw_data = data.get("data") or "0x"
    return RawLog(
        emitting_address=(data.get("address") or "").lower(),
        topics=tuple(t.lower() for t in data.get("topics", [])),
        data=decode_hex(raw_data) if isinstance(raw_data, str) else bytes(raw_data),
        tx_ref=data.get("transactionHash", ""),
        block_ref=_to_int(data.get("blockNumber", 0)),
        log_index=_to_int(data.get("logIndex", 0))
    )
