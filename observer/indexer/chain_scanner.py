"""
Chain Scanner

Walks the ledger block by block and feeds contract logs through the
decoder and projector.

Modes:
- Backfill: project every height from cursor + 1 to the current head
- Live tail: follow new-block notifications after backfill catches up

Both modes share one asyncio.Lock, so they never interleave. A block is
fetched completely first (the only awaits), then all of its logs are
projected synchronously inside one store transaction that also records
the block and advances the cursor. Any failure leaves the cursor where it
was and the block is retried on the next pass.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..errors import ConservationViolation, LedgerError, ProjectionError
from ..ledger.base import BlockSubscription, LedgerSource
from ..ledger.types import LedgerBlock, RawLog
from .events import BlockContext, Unrecognized
from .log_decoder import LogDecoder
from .projection_store import ProjectionStore
from .projector import EventProjector


@dataclass
class ScannerConfig:
    """Configuration for the chain scanner."""
    # Contracts whose transactions are indexed (lowercase)
    contract_addresses: List[str] = field(default_factory=list)

    # First height scanned when the store is empty
    start_block: int = 0

    # Log progress every N blocks during backfill (0 = off)
    progress_interval: int = 100


@dataclass
class BackfillResult:
    """Outcome of one backfill pass."""
    start: int
    end: int
    blocks_processed: int = 0
    halted_at: Optional[int] = None  # Height whose processing failed
    stopped: bool = False            # Interrupted by request_stop()
    error: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.halted_at is None and not self.stopped and self.error is None


class ChainScanner:
    """
    Block scanner driving the decode/project pipeline.

    Usage:
        scanner = ChainScanner(ledger, store, config=ScannerConfig(
            contract_addresses=["0x..."]
        ))

        result = await scanner.backfill()
        await scanner.start_live_tail()
        ...
        await scanner.stop_live_tail()
    """

    def __init__(
        self,
        ledger: LedgerSource,
        store: ProjectionStore,
        decoder: Optional[LogDecoder] = None,
        projector: Optional[EventProjector] = None,
        config: Optional[ScannerConfig] = None
    ):
        self.config = config or ScannerConfig()
        self._ledger = ledger
        self._store = store
        self._decoder = decoder or LogDecoder()
        self._projector = projector or EventProjector(store)
        self._watched = {a.lower() for a in self.config.contract_addresses}
        self._logger = logging.getLogger("ChainScanner")

        # Serializes backfill and live processing
        self._lock = asyncio.Lock()
        self._stop_requested = False

        # Live tail
        self._subscription: Optional[BlockSubscription] = None
        self._queue: Optional[asyncio.Queue] = None
        self._live_task: Optional[asyncio.Task] = None
        self._initial_backfill_done = asyncio.Event()

        # State
        self._chain_head = 0
        self._last_error: Optional[str] = None
        self._stats = {
            "blocks_processed": 0,
            "events_applied": 0,
            "events_replayed": 0,
            "events_duplicate": 0,
            "events_rejected": 0,
            "logs_skipped": 0,
            "fetch_errors": 0,
            "conservation_faults": 0,
            "projection_faults": 0,
            "last_block_time": 0.0
        }

    # =========================================================================
    # Cursor
    # =========================================================================

    @property
    def cursor(self) -> Optional[int]:
        return self._store.get_cursor()

    def next_height(self) -> int:
        """First height not yet projected."""
        cursor = self._store.get_cursor()
        if cursor is None:
            return self.config.start_block
        return max(cursor + 1, self.config.start_block)

    @property
    def chain_head(self) -> int:
        return self._chain_head

    @property
    def caught_up(self) -> bool:
        cursor = self._store.get_cursor()
        return cursor is not None and cursor >= self._chain_head

    # =========================================================================
    # Backfill
    # =========================================================================

    async def backfill(self, target: Optional[int] = None) -> BackfillResult:
        """
        Project every block from the cursor up to target (default: head).

        Stops at the first block that fails; that block is retried on the
        next call.
        """
        async with self._lock:
            try:
                return await self._backfill_locked(target)
            finally:
                self._initial_backfill_done.set()

    def request_stop(self):
        """
        Interrupt the running or next backfill pass before its next block.

        The request is consumed when that pass ends.
        """
        self._stop_requested = True

    async def _backfill_locked(self, target: Optional[int]) -> BackfillResult:
        try:
            return await self._run_pass(target)
        finally:
            self._stop_requested = False

    async def _run_pass(self, target: Optional[int]) -> BackfillResult:
        start = self.next_height()

        try:
            head = await self._ledger.get_chain_height()
        except LedgerError as e:
            self._stats["fetch_errors"] += 1
            self._last_error = f"Head fetch failed: {e}"
            self._logger.warning(self._last_error)
            return BackfillResult(start=start, end=start - 1, error=str(e))

        self._chain_head = max(self._chain_head, head)
        end = head if target is None else min(target, head)
        result = BackfillResult(start=start, end=end)

        if start > end:
            return result

        self._logger.info(f"Scanning blocks from {start} to {end} ({end - start + 1} blocks)")

        for height in range(start, end + 1):
            if self._stop_requested:
                result.stopped = True
                self._logger.info(f"Backfill stopped before block {height}")
                break

            if not await self._scan_block(height):
                result.halted_at = height
                break

            result.blocks_processed += 1

            interval = self.config.progress_interval
            if interval and height % interval == 0:
                progress = (height - start + 1) / (end - start + 1) * 100
                self._logger.info(f"Progress: {progress:.1f}% ({height}/{end})")

        if result.completed:
            self._logger.info(f"Backfill complete at block {end}")
        return result

    # =========================================================================
    # Per-Block Processing
    # =========================================================================

    async def scan_block(self, height: int) -> bool:
        """Process a single height under the scanner lock (manual re-trigger)."""
        async with self._lock:
            if height != self.next_height():
                self._logger.warning(
                    f"Refusing to scan block {height} out of order (next is {self.next_height()})"
                )
                return False
            return await self._scan_block(height)

    async def _scan_block(self, height: int) -> bool:
        """
        Fetch, decode and project one block.

        Returns True if the block was committed and the cursor advanced.
        Store errors propagate to the caller.
        """
        try:
            block, logs = await self._fetch_block(height)
        except LedgerError as e:
            self._stats["fetch_errors"] += 1
            self._last_error = f"Block {height}: {e}"
            self._logger.warning(f"Fetch failed for block {height}, will retry: {e}")
            return False

        try:
            self._project_block(block, logs)
        except ProjectionError as e:
            if isinstance(e, ConservationViolation):
                self._stats["conservation_faults"] += 1
            self._stats["projection_faults"] += 1
            self._last_error = f"Block {height}: {e}"
            self._logger.error(f"Projection fault ({e.fault_kind}) in block {height}, halting: {e}")
            self._store.record_fault(
                block_height=height,
                log_index=e.log_index if e.log_index is not None else -1,
                fault_kind=e.fault_kind,
                detail=str(e)
            )
            return False

        self._stats["blocks_processed"] += 1
        self._stats["last_block_time"] = time.time()
        return True

    async def _fetch_block(self, height: int):
        """All network I/O for one block: the block plus logs of watched transactions."""
        block = await self._ledger.get_block(height)

        logs: List[RawLog] = []
        for tx in block.transactions:
            if not tx.is_addressed_to(self._watched):
                continue
            logs.extend(await self._ledger.get_transaction_logs(tx.tx_ref))

        logs.sort(key=lambda log: log.log_index)
        return block, logs

    def _project_block(self, block: LedgerBlock, logs: List[RawLog]) -> Dict[str, int]:
        """Project all logs and commit the block with the cursor advance."""
        counts = {"applied": 0, "replayed": 0, "duplicate": 0, "rejected": 0, "skipped": 0}

        with self._store.transaction():
            for log in logs:
                event = self._decoder.decode(log)
                if isinstance(event, Unrecognized):
                    counts["skipped"] += 1
                    self._logger.debug(
                        f"Skipping log {log.log_index} in block {block.height}: {event.reason}"
                    )
                    continue

                ctx = BlockContext(
                    height=block.height,
                    block_hash=block.hash,
                    timestamp=block.timestamp,
                    tx_ref=log.tx_ref,
                    log_index=log.log_index
                )
                result = self._projector.apply(event, ctx)
                counts[result.outcome.value] += 1

            self._store.upsert_block(block.height, block.hash, block.timestamp)
            self._store.advance_cursor(block.height)

        self._stats["events_applied"] += counts["applied"]
        self._stats["events_replayed"] += counts["replayed"]
        self._stats["events_duplicate"] += counts["duplicate"]
        self._stats["events_rejected"] += counts["rejected"]
        self._stats["logs_skipped"] += counts["skipped"]

        if logs:
            self._logger.info(
                f"Processed block {block.height}: {counts['applied']} applied, "
                f"{counts['skipped']} skipped"
            )
        return counts

    # =========================================================================
    # Live Tail
    # =========================================================================

    async def start_live_tail(self):
        """
        Subscribe to new blocks.

        Notifications are queued and only consumed once the first backfill
        has finished, so heights are always projected in order.
        """
        if self._live_task is not None and not self._live_task.done():
            return

        self._queue = asyncio.Queue()
        self._subscription = self._ledger.subscribe_new_blocks(self._on_new_block)
        self._live_task = asyncio.get_running_loop().create_task(self._live_loop())
        self._logger.info("Live tail started")

    async def stop_live_tail(self):
        """Cancel the subscription and the consumer task."""
        if self._subscription:
            self._subscription.cancel()
            self._subscription = None

        if self._live_task:
            self._live_task.cancel()
            try:
                await self._live_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                self._logger.error(f"Live tail exited with error: {e}")
            self._live_task = None
            self._logger.info("Live tail stopped")

    def _on_new_block(self, height: int):
        self._chain_head = max(self._chain_head, height)
        if self._queue is not None:
            self._queue.put_nowait(height)

    async def _live_loop(self):
        await self._initial_backfill_done.wait()

        while True:
            height = await self._queue.get()
            try:
                async with self._lock:
                    if height < self.next_height():
                        continue
                    # Fills any gap below height as well
                    result = await self._backfill_locked(target=height)
                    if not result.completed:
                        self._logger.warning(
                            f"Live block {height} not committed; retrying on next notification"
                        )
            except Exception as e:
                # Keep consuming; the block is retried on the next notification
                self._last_error = f"Live tail failed at block {height}: {e}"
                self._logger.exception(self._last_error)
            finally:
                self._queue.task_done()

    async def wait_idle(self):
        """Wait until every queued live notification has been handled."""
        if self._queue is not None:
            await self._queue.join()

    @property
    def live(self) -> bool:
        return self._live_task is not None and not self._live_task.done()

    # =========================================================================
    # Status
    # =========================================================================

    def status(self) -> Dict:
        cursor = self._store.get_cursor()
        return {
            "cursor": cursor,
            "chain_head": self._chain_head,
            "caught_up": cursor is not None and cursor >= self._chain_head,
            "live": self.live,
            "queued_blocks": self._queue.qsize() if self._queue is not None else 0,
            "last_error": self._last_error,
            **self._stats
        }
