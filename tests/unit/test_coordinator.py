"""
Unit tests for the observer service lifecycle.
"""

import sqlite3

import pytest

from observer.config import ObserverConfig
from observer.indexer.coordinator import ObserverService
from observer.ledger.memory import InMemoryLedger


CONTRACT = "0x9fe46736679d2d9a65f0992f2272de9f3c7fa6e0"
M1 = "0x" + "11" * 20


class BrokenHeadLedger(InMemoryLedger):
    """Fails the head fetch with an unexpected error and records shutdown."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.stopped = False

    async def get_chain_height(self):
        raise RuntimeError("connection reset")

    async def stop(self):
        self.stopped = True
        await super().stop()


@pytest.fixture
def ledger():
    ledger = InMemoryLedger(contract_address=CONTRACT)
    ledger.emit(ledger.item_created(creator=M1, barcode="B1", volume=10))
    ledger.mine_block()
    return ledger


def make_service(ledger, db_path):
    return ObserverService(
        ObserverConfig(contract_addresses=[CONTRACT], db_path=db_path),
        ledger=ledger
    )


class TestObserverService:
    """Test start/stop and health."""

    @pytest.mark.asyncio
    async def test_start_backfills_and_follows(self, ledger, db_path):
        service = make_service(ledger, db_path)
        await service.start()
        result = await service.wait_backfill()

        assert result.completed
        assert service.health()["caught_up"]

        ledger.emit(ledger.item_created(creator=M1, barcode="B2", volume=5))
        ledger.mine_block()
        await service.scanner.wait_idle()

        assert service.query.get_item("B2") is not None
        stats = service.get_stats()
        assert stats["running"]
        assert stats["store"]["total_items"] == 2

        await service.stop()
        assert ledger.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_health_degraded_after_failure(self, ledger, db_path):
        ledger.mine_empty_blocks(2)
        ledger.fail("get_block", key=2)
        service = make_service(ledger, db_path)

        await service.start(live=False)
        result = await service.wait_backfill()

        assert result.halted_at == 2
        health = service.health()
        assert health["status"] == "degraded"
        assert health["cursor"] == 1
        assert not health["caught_up"]

        await service.stop()

    @pytest.mark.asyncio
    async def test_run_backfill_once(self, ledger, db_path):
        service = make_service(ledger, db_path)
        result = await service.run_backfill_once()

        assert result.completed
        assert service.store.get_cursor() == 1
        service.store.close()

    @pytest.mark.asyncio
    async def test_stop_right_after_start_interrupts_backfill(self, ledger, db_path):
        ledger.mine_empty_blocks(50)
        service = make_service(ledger, db_path)

        await service.start(live=False)
        service.scanner.request_stop()
        result = await service.wait_backfill()

        assert result.stopped
        assert result.blocks_processed == 0
        assert service.store.get_cursor() is None

        await service.stop()

    @pytest.mark.asyncio
    async def test_stop_releases_resources_after_backfill_crash(self, db_path):
        ledger = BrokenHeadLedger(contract_address=CONTRACT)
        service = make_service(ledger, db_path)

        await service.start()
        await service.stop()

        assert ledger.stopped
        assert ledger.subscriber_count == 0
        assert not service.scanner.live
        with pytest.raises(sqlite3.ProgrammingError):
            service.store.conn.execute("SELECT 1")
