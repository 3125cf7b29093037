"""
Unit tests for the event projector.

Tests:
- Creation mints volume to the creator
- Transfers debit and credit atomically
- Replay of the same (height, log index) is a no-op
- Duplicate and conflicting re-creation
- Volumes beyond the storable range and zero-volume transfers
- Inventory rebuild from the transaction ledger
"""

import pytest

from observer.errors import ConservationViolation, ProjectionError, VolumeOutOfRange
from observer.indexer.events import (
    BlockContext,
    ItemCreated,
    ItemTransferred,
    ParticipantRegistered,
    ProjectionOutcome,
    Unrecognized,
)
from observer.indexer.projector import EventProjector


M1 = "0x" + "11" * 20
S1 = "0x" + "22" * 20
V1 = "0x" + "33" * 20


def ctx(height, log_index=0, tx_ref=None):
    return BlockContext(
        height=height,
        block_hash=f"0xhash{height}",
        timestamp=1_700_000_000 + height * 12,
        tx_ref=tx_ref or f"0xtx{height}",
        log_index=log_index
    )


def created(barcode="B1", volume=100, creator=M1, name="Coffee"):
    return ItemCreated(
        barcode=barcode,
        name=name,
        manufacturer_name="Acme",
        manufactured_label="2024-01-01",
        creator=creator,
        volume=volume
    )


def transferred(barcode="B1", source=M1, dest=S1, volume=40):
    return ItemTransferred(
        barcode=barcode,
        from_address=source,
        to_address=dest,
        volume=volume,
        transfer_time=0
    )


class TestEventProjector:
    """Test per-event projection rules."""

    @pytest.fixture
    def projector(self, store):
        return EventProjector(store)

    def test_participant_registered(self, projector, store):
        result = projector.apply(ParticipantRegistered(M1, "Maker", 0, "pk"), ctx(3))

        assert result.outcome == ProjectionOutcome.APPLIED
        participant = store.get_participant(M1)
        assert participant.name == "Maker"
        assert participant.role == "Manufacturer"
        assert participant.first_seen_height == 3

    def test_item_created_mints_to_creator(self, projector, store):
        result = projector.apply(created(), ctx(10))

        assert result.outcome == ProjectionOutcome.APPLIED
        assert result.changed_state
        assert store.get_inventory_entry(M1, "B1").volume == 100

        history = store.get_item_history("B1")
        assert len(history) == 1
        assert history[0].from_address is None
        assert history[0].to_address == M1
        assert history[0].event_kind == "ItemCreated"

    def test_transfer_moves_volume(self, projector, store):
        projector.apply(created(), ctx(10))
        result = projector.apply(transferred(volume=40), ctx(11))

        assert result.outcome == ProjectionOutcome.APPLIED
        assert store.get_inventory_entry(M1, "B1").volume == 60
        assert store.get_inventory_entry(S1, "B1").volume == 40
        assert store.sum_item_volume("B1") == 100
        assert len(store.get_item_history("B1")) == 2

    def test_replayed_creation_is_noop(self, projector, store):
        projector.apply(created(), ctx(10))
        before = store.snapshot()

        result = projector.apply(created(), ctx(10))

        assert result.outcome == ProjectionOutcome.REPLAYED
        assert not result.changed_state
        assert store.snapshot() == before

    def test_replayed_transfer_is_noop(self, projector, store):
        projector.apply(created(), ctx(10))
        projector.apply(transferred(), ctx(11))
        before = store.snapshot()

        result = projector.apply(transferred(), ctx(11))

        assert result.outcome == ProjectionOutcome.REPLAYED
        assert store.snapshot() == before

    def test_identical_recreation_is_duplicate(self, projector, store):
        projector.apply(created(), ctx(10))
        result = projector.apply(created(), ctx(15))

        assert result.outcome == ProjectionOutcome.DUPLICATE
        assert store.get_inventory_entry(M1, "B1").volume == 100
        assert len(store.get_item_history("B1")) == 1

    def test_conflicting_recreation_is_rejected(self, projector, store):
        projector.apply(created(), ctx(10))
        result = projector.apply(created(volume=500, name="Other"), ctx(15))

        assert result.outcome == ProjectionOutcome.REJECTED
        assert "B1" in result.detail
        item = store.get_item("B1")
        assert item.minted_volume == 100
        assert item.name == "Coffee"
        assert store.get_inventory_entry(M1, "B1").volume == 100

    def test_overdraw_raises_and_store_unchanged(self, projector, store):
        projector.apply(created(), ctx(10))
        projector.apply(transferred(volume=40), ctx(11))
        before = store.snapshot()

        with pytest.raises(ConservationViolation) as exc_info:
            projector.apply(transferred(source=S1, dest=V1, volume=200), ctx(12, log_index=3))

        assert exc_info.value.available == 40
        assert exc_info.value.block_height == 12
        assert exc_info.value.log_index == 3
        assert store.snapshot() == before

    def test_transfer_of_unknown_item_raises(self, projector, store):
        with pytest.raises(ConservationViolation) as exc_info:
            projector.apply(transferred(barcode="NOPE"), ctx(5))
        assert exc_info.value.available == 0

    def test_oversized_creation_raises_and_store_unchanged(self, projector, store):
        before = store.snapshot()

        with pytest.raises(VolumeOutOfRange) as exc_info:
            projector.apply(created(volume=2 ** 64), ctx(10, log_index=2))

        assert exc_info.value.block_height == 10
        assert exc_info.value.log_index == 2
        assert exc_info.value.fault_kind == "volume_out_of_range"
        assert store.snapshot() == before

    def test_largest_storable_volume_accepted(self, projector, store):
        projector.apply(created(volume=2 ** 63 - 1), ctx(10))
        assert store.get_inventory_entry(M1, "B1").volume == 2 ** 63 - 1

        with pytest.raises(VolumeOutOfRange):
            projector.apply(transferred(volume=2 ** 63), ctx(11))
        assert store.get_inventory_entry(M1, "B1").volume == 2 ** 63 - 1

    def test_zero_volume_transfer_from_empty_holder(self, projector, store):
        projector.apply(created(), ctx(10))
        result = projector.apply(transferred(source=S1, dest=V1, volume=0), ctx(11))

        assert result.outcome == ProjectionOutcome.APPLIED
        assert store.get_inventory_entry(V1, "B1").volume == 0
        assert store.sum_item_volume("B1") == 100

    def test_unsupported_event_raises(self, projector):
        with pytest.raises(ProjectionError):
            projector.apply(Unrecognized(topic0="0x00", reason="test"), ctx(1))

    def test_stats_count_outcomes(self, projector):
        projector.apply(created(), ctx(10))
        projector.apply(created(), ctx(10))
        projector.apply(created(), ctx(11))

        stats = projector.get_stats()
        assert stats["applied"] == 1
        assert stats["replayed"] == 1
        assert stats["duplicate"] == 1
        assert stats["rejected"] == 0


class TestRebuildInventory:
    """Test re-deriving inventory from the ledger."""

    @pytest.fixture
    def projector(self, store):
        return EventProjector(store)

    def test_rebuild_matches_live_inventory(self, projector, store):
        projector.apply(created(), ctx(10))
        projector.apply(transferred(volume=40), ctx(11))
        projector.apply(transferred(source=S1, dest=V1, volume=15), ctx(12))
        projector.apply(created(barcode="B2", volume=7), ctx(12, log_index=1))
        live = store.get_all_inventory(include_empty=True)

        store.replace_inventory([])
        entries = projector.rebuild_inventory()

        assert entries == 4
        rebuilt = store.get_all_inventory(include_empty=True)
        assert [(e.holder, e.barcode, e.volume) for e in rebuilt] == \
            [(e.holder, e.barcode, e.volume) for e in live]
