"""
Event Projector

Applies decoded domain events to the projection store, one at a time,
in ledger order.

Rules:
- ParticipantRegistered: upsert, keeping the earliest first-seen height
- ItemCreated: first creation mints volume to the creator; identical
  re-creation is a no-op; conflicting re-creation is rejected
- ItemTransferred: debit source (must hold enough), credit destination

Every event is identified by (block height, log index). An event whose
position already exists in the transaction ledger is skipped, so replaying
a block after a crash leaves the store unchanged.
"""

import logging
from typing import Dict, Tuple

from ..errors import ConservationViolation, ProjectionError, VolumeOutOfRange
from .event_registry import EventKind
from .events import (
    BlockContext,
    DomainEvent,
    ItemCreated,
    ItemTransferred,
    ParticipantRegistered,
    ProjectionOutcome,
    ProjectionResult,
)
from .projection_store import MAX_VOLUME, InventoryEntry, ProjectionStore, TransactionRecord


class EventProjector:
    """
    Writes the effects of domain events into a ProjectionStore.

    Usage:
        projector = EventProjector(store)

        with store.transaction():
            for event, ctx in block_events:
                projector.apply(event, ctx)
    """

    def __init__(self, store: ProjectionStore):
        self._store = store
        self._logger = logging.getLogger("EventProjector")

        self._stats = {outcome.value: 0 for outcome in ProjectionOutcome}

    def apply(self, event: DomainEvent, ctx: BlockContext) -> ProjectionResult:
        """
        Apply one event.

        Raises:
            ConservationViolation: Transfer exceeds the source holder's volume
            VolumeOutOfRange: Volume too large for the store
            ProjectionError: Unsupported event type
        """
        with self._store.transaction():
            if isinstance(event, ParticipantRegistered):
                result = self._apply_participant(event, ctx)
            elif isinstance(event, ItemCreated):
                result = self._apply_item_created(event, ctx)
            elif isinstance(event, ItemTransferred):
                result = self._apply_item_transferred(event, ctx)
            else:
                raise ProjectionError(f"Cannot project {type(event).__name__}")

        self._stats[result.outcome.value] += 1
        return result

    # =========================================================================
    # Handlers
    # =========================================================================

    def _apply_participant(self, event: ParticipantRegistered, ctx: BlockContext) -> ProjectionResult:
        self._store.upsert_participant(
            address=event.address,
            name=event.name,
            role_code=event.role_code,
            role=event.role,
            metadata=event.metadata,
            height=ctx.height
        )
        self._logger.info(f"Participant registered: {event.name} ({event.address}) as {event.role}")
        return ProjectionResult(ProjectionOutcome.APPLIED, event.kind)

    def _apply_item_created(self, event: ItemCreated, ctx: BlockContext) -> ProjectionResult:
        if self._store.has_transaction(ctx.height, ctx.log_index):
            return ProjectionResult(ProjectionOutcome.REPLAYED, event.kind)

        _check_volume(event, ctx)

        existing = self._store.get_item(event.barcode)
        if existing is not None:
            if _same_item(existing, event):
                self._logger.debug(f"Duplicate creation of {event.barcode} at block {ctx.height} ignored")
                return ProjectionResult(ProjectionOutcome.DUPLICATE, event.kind)

            detail = (
                f"Conflicting re-creation of {event.barcode} at block {ctx.height} "
                f"(log {ctx.log_index}) rejected; first created at block {existing.created_height}"
            )
            self._logger.warning(detail)
            return ProjectionResult(ProjectionOutcome.REJECTED, event.kind, detail)

        self._store.insert_item(
            barcode=event.barcode,
            name=event.name,
            manufacturer_name=event.manufacturer_name,
            manufactured_label=event.manufactured_label,
            creator=event.creator,
            minted_volume=event.volume,
            height=ctx.height,
            tx_ref=ctx.tx_ref
        )
        self._store.credit_inventory(event.creator, event.barcode, event.volume, ctx.height, ctx.tx_ref)
        self._store.append_transaction(TransactionRecord(
            event_kind=EventKind.ITEM_CREATED.value,
            barcode=event.barcode,
            from_address=None,
            to_address=event.creator,
            volume=event.volume,
            block_height=ctx.height,
            log_index=ctx.log_index,
            tx_ref=ctx.tx_ref,
            timestamp=ctx.timestamp
        ))

        self._logger.info(f"Item created: {event.name} ({event.barcode}), volume {event.volume}")
        return ProjectionResult(ProjectionOutcome.APPLIED, event.kind)

    def _apply_item_transferred(self, event: ItemTransferred, ctx: BlockContext) -> ProjectionResult:
        if self._store.has_transaction(ctx.height, ctx.log_index):
            return ProjectionResult(ProjectionOutcome.REPLAYED, event.kind)

        _check_volume(event, ctx)

        if self._store.get_item(event.barcode) is None:
            raise ConservationViolation(
                barcode=event.barcode,
                holder=event.from_address,
                requested=event.volume,
                available=0,
                block_height=ctx.height,
                log_index=ctx.log_index
            )

        try:
            self._store.debit_inventory(
                event.from_address, event.barcode, event.volume, ctx.height, ctx.tx_ref
            )
        except ConservationViolation as e:
            e.log_index = ctx.log_index
            raise

        self._store.credit_inventory(
            event.to_address, event.barcode, event.volume, ctx.height, ctx.tx_ref
        )
        self._store.append_transaction(TransactionRecord(
            event_kind=EventKind.ITEM_TRANSFERRED.value,
            barcode=event.barcode,
            from_address=event.from_address,
            to_address=event.to_address,
            volume=event.volume,
            block_height=ctx.height,
            log_index=ctx.log_index,
            tx_ref=ctx.tx_ref,
            timestamp=ctx.timestamp
        ))

        self._logger.info(
            f"Item transferred: {event.barcode} from {event.from_address} "
            f"to {event.to_address}, volume {event.volume}"
        )
        return ProjectionResult(ProjectionOutcome.APPLIED, event.kind)

    # =========================================================================
    # Rebuild
    # =========================================================================

    def rebuild_inventory(self) -> int:
        """
        Re-derive the inventory table by folding the transaction ledger.

        Returns the number of inventory entries written.
        """
        with self._store.transaction():
            balances: Dict[Tuple[str, str], InventoryEntry] = {}

            for record in self._store.iter_transactions():
                if record.from_address is not None:
                    key = (record.from_address, record.barcode)
                    entry = balances.get(key)
                    if entry is None or entry.volume < record.volume:
                        raise ConservationViolation(
                            barcode=record.barcode,
                            holder=record.from_address,
                            requested=record.volume,
                            available=entry.volume if entry else 0,
                            block_height=record.block_height,
                            log_index=record.log_index
                        )
                    entry.volume -= record.volume
                    entry.last_updated_height = record.block_height
                    entry.last_updated_tx_ref = record.tx_ref

                key = (record.to_address, record.barcode)
                entry = balances.setdefault(key, InventoryEntry(
                    holder=record.to_address,
                    barcode=record.barcode,
                    volume=0,
                    last_updated_height=record.block_height,
                    last_updated_tx_ref=record.tx_ref
                ))
                entry.volume += record.volume
                entry.last_updated_height = record.block_height
                entry.last_updated_tx_ref = record.tx_ref

            self._store.replace_inventory(list(balances.values()))

        self._logger.info(f"Inventory rebuilt from ledger: {len(balances)} entries")
        return len(balances)

    def get_stats(self) -> Dict:
        return dict(self._stats)


def _same_item(existing, event: ItemCreated) -> bool:
    return (
        existing.name == event.name
        and existing.manufacturer_name == event.manufacturer_name
        and existing.manufactured_label == event.manufactured_label
        and existing.creator == event.creator.lower()
        and existing.minted_volume == event.volume
    )


def _check_volume(event, ctx: BlockContext):
    if event.volume > MAX_VOLUME:
        raise VolumeOutOfRange(
            barcode=event.barcode,
            volume=event.volume,
            limit=MAX_VOLUME,
            block_height=ctx.height,
            log_index=ctx.log_index
        )
