"""
End-to-end pipeline tests: in-memory ledger -> scanner -> store -> queries.

Walks through the canonical supply-chain story:
1. B1 created by M1 with volume 100 at height 10
2. 40 units transferred M1 -> S1 at height 11
3. Height 11 re-scanned after a crash before the cursor advanced
4. Over-transfer of 200 units from S1 is rejected and halts the cursor
5. Inventory of S1 as of height 10 is empty
6. An unknown log mid-block is skipped and the block still commits
"""

import pytest

from observer.indexer.chain_scanner import ChainScanner, ScannerConfig
from observer.indexer.events import BlockContext, Unrecognized
from observer.indexer.log_decoder import LogDecoder
from observer.indexer.projector import EventProjector
from observer.indexer.query_engine import QueryEngine
from observer.ledger.memory import InMemoryLedger


CONTRACT = "0x9fe46736679d2d9a65f0992f2272de9f3c7fa6e0"
M1 = "0x" + "11" * 20
S1 = "0x" + "22" * 20
V1 = "0x" + "33" * 20


class TestObserverPipeline:
    """Full pipeline scenarios."""

    @pytest.fixture
    def ledger(self):
        ledger = InMemoryLedger(contract_address=CONTRACT)
        ledger.emit(
            ledger.participant_registered(M1, "Maker", 0),
            ledger.participant_registered(S1, "Supplier", 1),
            ledger.participant_registered(V1, "Vendor", 2)
        )
        ledger.mine_block()

        ledger.advance_to(10)
        ledger.emit(ledger.item_created(creator=M1, barcode="B1", volume=100))
        assert ledger.mine_block() == 10

        ledger.emit(ledger.item_transferred("B1", seller=M1, buyer=S1, volume=40))
        assert ledger.mine_block() == 11
        return ledger

    @pytest.fixture
    def scanner(self, ledger, store):
        return ChainScanner(
            ledger, store, config=ScannerConfig(contract_addresses=[CONTRACT])
        )

    @pytest.fixture
    def query(self, store):
        return QueryEngine(store)

    @pytest.mark.asyncio
    async def test_creation_and_transfer(self, scanner, store, query):
        """Scenarios 1 and 2."""
        await scanner.backfill(target=10)
        assert query.get_volume(M1, "B1") == 100
        assert len(query.get_item_history("B1")) == 1

        await scanner.backfill()
        assert query.get_volume(M1, "B1") == 60
        assert query.get_volume(S1, "B1") == 40
        assert len(query.get_item_history("B1")) == 2
        assert store.sum_item_volume("B1") == 100
        assert store.get_cursor() == 11

    @pytest.mark.asyncio
    async def test_rescan_after_crash_is_idempotent(self, ledger, scanner, store, query):
        """Scenario 3: effects of block 11 are durable but the cursor is still 10."""
        await scanner.backfill(target=10)

        # Apply block 11 outside the scanner, without advancing the cursor
        decoder = LogDecoder()
        projector = EventProjector(store)
        block = await ledger.get_block(11)
        for tx in block.transactions:
            for log in await ledger.get_transaction_logs(tx.tx_ref):
                projector.apply(decoder.decode(log), BlockContext(
                    height=11,
                    block_hash=block.hash,
                    timestamp=block.timestamp,
                    tx_ref=log.tx_ref,
                    log_index=log.log_index
                ))
        assert store.get_cursor() == 10

        result = await scanner.backfill()

        assert result.completed
        assert store.get_cursor() == 11
        assert query.get_volume(M1, "B1") == 60
        assert query.get_volume(S1, "B1") == 40
        assert len(query.get_item_history("B1")) == 2
        assert scanner.status()["events_replayed"] == 1

    @pytest.mark.asyncio
    async def test_over_transfer_halts_cursor(self, ledger, scanner, store):
        """Scenario 4."""
        await scanner.backfill()
        before = store.snapshot()

        ledger.emit(ledger.item_transferred("B1", seller=S1, buyer=V1, volume=200))
        ledger.mine_block()
        ledger.mine_block()

        result = await scanner.backfill()

        assert result.halted_at == 12
        assert store.get_cursor() == 11
        assert store.snapshot() == before
        assert store.get_faults()[0]["block_height"] == 12

    @pytest.mark.asyncio
    async def test_inventory_as_of_earlier_height(self, scanner, query):
        """Scenario 5."""
        await scanner.backfill()

        assert query.get_inventory(S1, as_of_height=10) == []
        assert query.get_volume(S1, "B1", as_of_height=10) == 0
        assert query.get_volume(S1, "B1", as_of_height=11) == 40

    @pytest.mark.asyncio
    async def test_unknown_log_skipped_mid_block(self, ledger, scanner, store, query):
        """Scenario 6."""
        ledger.emit(
            ledger.item_transferred("B1", seller=S1, buyer=V1, volume=10),
            ledger.unknown_log(),
            ledger.item_transferred("B1", seller=M1, buyer=V1, volume=5)
        )
        height = ledger.mine_block()

        unknown = [
            log for log in await ledger.get_transaction_logs(ledger.tx_refs(height)[0])
            if isinstance(LogDecoder().decode(log), Unrecognized)
        ]
        assert [log.log_index for log in unknown] == [1]

        result = await scanner.backfill()

        assert result.completed
        assert store.get_cursor() == height
        assert query.get_volume(V1, "B1") == 15
        history = query.get_item_history("B1")
        assert [(h["block_height"], h["log_index"]) for h in history][-2:] == [(height, 0), (height, 2)]

    @pytest.mark.asyncio
    async def test_audit_trail_after_full_scan(self, ledger, scanner, query):
        await scanner.backfill()

        trail = query.get_audit_trail("B1")
        assert trail["total_transactions"] == 2
        assert {h["address"] for h in trail["current_holders"]} == {M1, S1}
        assert trail["volume_in_circulation"] == 100

        proof = query.get_transaction_proof(11, ledger.tx_refs(11)[0])
        assert proof["block_hash"] == (await ledger.get_block(11)).hash

        stats = query.get_stats()
        assert stats["total_participants"] == 3
        assert stats["active_participants"] == 2
        assert stats["total_inventory_volume"] == 100

    @pytest.mark.asyncio
    async def test_live_tail_after_backfill(self, ledger, scanner, store, query):
        await scanner.start_live_tail()
        await scanner.backfill()

        ledger.emit(ledger.item_transferred("B1", seller=S1, buyer=V1, volume=15))
        ledger.mine_block()
        await scanner.wait_idle()

        assert store.get_cursor() == 12
        assert query.get_volume(V1, "B1") == 15
        assert query.check_conservation() == []

        await scanner.stop_live_tail()
