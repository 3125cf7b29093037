"""
Observer Coordinator

Wires the ledger, store, scanner and query engine together.

Lifecycle:
1. start() - open the ledger, subscribe to new blocks, run backfill
2. Live tail projects new blocks once backfill reaches the head
3. stop() - cancel the subscription, interrupt backfill, close resources
"""

import asyncio
import logging
import time
from typing import Dict, Optional

from ..config import ObserverConfig
from ..ledger.base import LedgerSource
from ..ledger.jsonrpc import JsonRpcLedger
from .chain_scanner import BackfillResult, ChainScanner, ScannerConfig
from .log_decoder import LogDecoder
from .projection_store import ProjectionStore
from .projector import EventProjector
from .query_engine import QueryEngine


class ObserverService:
    """
    Orchestrates the complete indexing pipeline.

    Usage:
        service = ObserverService(config)
        await service.start()
        service.query.get_stats()
        await service.stop()
    """

    def __init__(
        self,
        config: Optional[ObserverConfig] = None,
        ledger: Optional[LedgerSource] = None,
        store: Optional[ProjectionStore] = None
    ):
        self.config = config or ObserverConfig()
        self._logger = logging.getLogger("ObserverService")

        self.ledger = ledger or JsonRpcLedger(
            self.config.rpc_url,
            request_timeout=self.config.request_timeout,
            poll_interval=self.config.poll_interval
        )
        self.store = store or ProjectionStore(self.config.db_path)
        self.decoder = LogDecoder()
        self.projector = EventProjector(self.store)
        self.scanner = ChainScanner(
            self.ledger,
            self.store,
            decoder=self.decoder,
            projector=self.projector,
            config=ScannerConfig(
                contract_addresses=self.config.contract_addresses,
                start_block=self.config.start_block,
                progress_interval=self.config.progress_interval
            )
        )
        self.query = QueryEngine(self.store)

        self._running = False
        self._backfill_task: Optional[asyncio.Task] = None
        self._start_time = 0.0

    async def start(self, live: bool = True):
        """Start the ledger, the live subscription and the initial backfill."""
        self._running = True
        self._start_time = time.time()
        self._logger.info(
            f"Starting observer for {len(self.config.contract_addresses)} contract(s), "
            f"cursor={self.store.get_cursor()}"
        )

        await self.ledger.start()

        # Subscribe first so blocks mined during backfill are queued
        if live:
            await self.scanner.start_live_tail()

        self._backfill_task = asyncio.get_running_loop().create_task(self._run_backfill())

    async def _run_backfill(self) -> BackfillResult:
        result = await self.scanner.backfill()
        if result.completed:
            self._logger.info(
                f"Initial backfill finished: {result.blocks_processed} blocks, "
                f"cursor={self.store.get_cursor()}"
            )
        else:
            self._logger.warning(
                f"Initial backfill incomplete (halted_at={result.halted_at}, "
                f"error={result.error}); live tail will retry"
            )
        return result

    async def run_backfill_once(self) -> BackfillResult:
        """One backfill pass without live tail (CLI use)."""
        await self.ledger.start()
        try:
            return await self.scanner.backfill()
        finally:
            await self.ledger.stop()

    async def wait_backfill(self) -> Optional[BackfillResult]:
        if self._backfill_task is None:
            return None
        return await self._backfill_task

    async def stop(self):
        """Stop gracefully; an in-flight backfill finishes its current block."""
        self._running = False
        self.scanner.request_stop()

        try:
            await self.scanner.stop_live_tail()
            if self._backfill_task:
                task, self._backfill_task = self._backfill_task, None
                try:
                    await task
                except Exception as e:
                    self._logger.error(f"Backfill task failed: {e}")
        finally:
            try:
                await self.ledger.stop()
            finally:
                self.store.close()
            self._logger.info("Observer stopped")

    def health(self) -> Dict:
        """Health probe payload."""
        status = self.scanner.status()
        return {
            "status": "ok" if status["last_error"] is None or status["caught_up"] else "degraded",
            "cursor": status["cursor"],
            "chain_head": status["chain_head"],
            "caught_up": status["caught_up"],
            "live": status["live"],
            "timestamp": int(time.time() * 1000),
        }

    def get_stats(self) -> Dict:
        runtime = time.time() - self._start_time if self._start_time > 0 else 0
        return {
            "running": self._running,
            "runtime_seconds": runtime,
            "scanner": self.scanner.status(),
            "projector": self.projector.get_stats(),
            "store": self.query.get_stats(),
        }
