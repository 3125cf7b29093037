"""
Supply Chain Indexer

Replays contract events from the ledger into a queryable projection.

Components:
- EventSchemaRegistry: Known event signatures and their ABI shapes
- LogDecoder: Raw logs to typed domain events
- ProjectionStore: SQLite storage for blocks, participants, items, inventory
- EventProjector: Applies events with conservation and idempotency checks
- ChainScanner: Backfill and live tail over the ledger
- QueryEngine: Read-only inventory, history, proof, audit and stats
- ObserverService: Orchestrates all components
"""

from .event_registry import EventKind, EventSchema, EventSchemaRegistry
from .events import (
    BlockContext,
    ItemCreated,
    ItemTransferred,
    ParticipantRegistered,
    ProjectionOutcome,
    ProjectionResult,
    Unrecognized,
)
from .log_decoder import LogDecoder
from .projection_store import ProjectionStore
from .projector import EventProjector
from .chain_scanner import BackfillResult, ChainScanner, ScannerConfig
from .query_engine import QueryEngine
from .coordinator import ObserverService

__all__ = [
    "EventKind",
    "EventSchema",
    "EventSchemaRegistry",
    "BlockContext",
    "ItemCreated",
    "ItemTransferred",
    "ParticipantRegistered",
    "ProjectionOutcome",
    "ProjectionResult",
    "Unrecognized",
    "LogDecoder",
    "ProjectionStore",
    "EventProjector",
    "BackfillResult",
    "ChainScanner",
    "ScannerConfig",
    "QueryEngine",
    "ObserverService",
]
