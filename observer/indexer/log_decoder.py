"""
Log Decoder

Turns raw ledger logs into typed domain events.

Each registered schema is tried once, in registry priority order. A
schema matches when the log's topic0 is the schema's topic and the data
payload decodes cleanly against the schema's ABI types. Logs that match
nothing come back as Unrecognized; they are not errors.

Decoding is pure: no I/O and no state, so it can be tested on its own.
"""

from typing import Any, Dict, Optional

from eth_abi import decode
from eth_abi.exceptions import DecodingError

from ..ledger.types import RawLog
from .event_registry import EventKind, EventSchema, EventSchemaRegistry
from .events import (
    DomainEvent,
    ItemCreated,
    ItemTransferred,
    ParticipantRegistered,
    Unrecognized,
)


class LogDecoder:
    """
    Registry-driven log decoder.

    Usage:
        decoder = LogDecoder()
        event = decoder.decode(raw_log)
        if isinstance(event, Unrecognized):
            skip()
    """

    def __init__(self, registry: Optional[EventSchemaRegistry] = None):
        self._registry = registry or EventSchemaRegistry()

    @property
    def registry(self) -> EventSchemaRegistry:
        return self._registry

    def decode(self, log: RawLog):
        """Decode a log into a DomainEvent, or return Unrecognized."""
        topic0 = log.topic0
        if topic0 is None:
            return Unrecognized(topic0=None, reason="log has no topics")

        for schema in self._registry.in_priority_order():
            if schema.topic != topic0:
                continue

            values = _decode_payload(schema, log.data)
            if values is None:
                continue

            return _build_event(schema.kind, values)

        return Unrecognized(topic0=topic0, reason="no registered schema matched")


def _decode_payload(schema: EventSchema, data: bytes) -> Optional[Dict[str, Any]]:
    """ABI-decode the data payload; None when it does not fit the schema."""
    try:
        decoded = decode(schema.abi_types, data)
    except (DecodingError, UnicodeDecodeError, ValueError, TypeError, OverflowError):
        return None
    return dict(zip(schema.field_names, decoded))


def _build_event(kind: EventKind, values: Dict[str, Any]) -> DomainEvent:
    if kind == EventKind.ITEM_CREATED:
        return ItemCreated(
            barcode=values["barcode"],
            name=values["name"],
            manufacturer_name=values["manufacturerName"],
            manufactured_label=values["manufacturedTime"],
            creator=values["manufacturer"].lower(),
            volume=int(values["volume"])
        )

    if kind == EventKind.ITEM_TRANSFERRED:
        return ItemTransferred(
            barcode=values["barcode"],
            from_address=values["seller"].lower(),
            to_address=values["buyer"].lower(),
            volume=int(values["volume"]),
            transfer_time=int(values["transferTime"])
        )

    if kind == EventKind.PARTICIPANT_REGISTERED:
        return ParticipantRegistered(
            address=values["userAddress"].lower(),
            name=values["name"],
            role_code=int(values["role"]),
            metadata=values["publicKey"]
        )

    raise ValueError(f"No domain event for kind {kind}")
