"""
Domain Events

Typed events produced by the log decoder and consumed by the projector.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .event_registry import EventKind


# Role codes emitted by the Users contract
ROLE_NAMES = ("Manufacturer", "Supplier", "Vendor", "Customer")


def role_name(role_code: int) -> str:
    """Human-readable role tag for a role code."""
    if 0 <= role_code < len(ROLE_NAMES):
        return ROLE_NAMES[role_code]
    return "Unknown"


@dataclass(frozen=True)
class ParticipantRegistered:
    address: str
    name: str
    role_code: int
    metadata: str  # public key published at registration

    kind = EventKind.PARTICIPANT_REGISTERED

    @property
    def role(self) -> str:
        return role_name(self.role_code)


@dataclass(frozen=True)
class ItemCreated:
    barcode: str
    name: str
    manufacturer_name: str
    manufactured_label: str
    creator: str
    volume: int

    kind = EventKind.ITEM_CREATED


@dataclass(frozen=True)
class ItemTransferred:
    barcode: str
    from_address: str
    to_address: str
    volume: int
    transfer_time: int

    kind = EventKind.ITEM_TRANSFERRED


@dataclass(frozen=True)
class Unrecognized:
    """A log that matched no registered schema."""
    topic0: Optional[str]
    reason: str


DomainEvent = Union[ParticipantRegistered, ItemCreated, ItemTransferred]


@dataclass(frozen=True)
class BlockContext:
    """Position of an event on the ledger."""
    height: int
    block_hash: str
    timestamp: int
    tx_ref: str
    log_index: int


class ProjectionOutcome(Enum):
    """What the projector did with an event."""
    APPLIED = "applied"        # State changed
    REPLAYED = "replayed"      # Same (height, log index) already projected
    DUPLICATE = "duplicate"    # Identical re-creation of a known item
    REJECTED = "rejected"      # Conflicting re-creation, ignored


@dataclass(frozen=True)
class ProjectionResult:
    outcome: ProjectionOutcome
    kind: EventKind
    detail: str = ""

    @property
    def changed_state(self) -> bool:
        return self.outcome == ProjectionOutcome.APPLIED
