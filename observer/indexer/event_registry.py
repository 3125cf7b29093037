"""
Event Schema Registry

Static table of the contract events the observer understands.

Each schema carries the event's ABI signature, its ordered typed fields
and the domain event kind it decodes to. Supporting a new event means
adding a schema here; the decoder and projector dispatch on `kind`.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from eth_utils import encode_hex, keccak


REGISTRY_VERSION = 2


class EventKind(Enum):
    """Domain event kinds produced by the decoder."""
    PARTICIPANT_REGISTERED = "ParticipantRegistered"
    ITEM_CREATED = "ItemCreated"
    ITEM_TRANSFERRED = "ItemTransferred"


@dataclass(frozen=True)
class FieldSpec:
    """One ABI parameter of an event."""
    name: str
    abi_type: str


@dataclass(frozen=True)
class EventSchema:
    """Decoding shape of one contract event."""
    kind: EventKind
    event_name: str
    fields: Tuple[FieldSpec, ...]
    priority: int
    version: int = 1

    @property
    def signature(self) -> str:
        """Canonical ABI signature, e.g. NewUser(address,string,uint8,string)."""
        types = ",".join(f.abi_type for f in self.fields)
        return f"{self.event_name}({types})"

    @property
    def topic(self) -> str:
        """Lowercase 0x-prefixed keccak hash of the signature (topic0)."""
        return encode_hex(keccak(text=self.signature)).lower()

    @property
    def abi_types(self) -> List[str]:
        return [f.abi_type for f in self.fields]

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]


def _fields(*pairs: Tuple[str, str]) -> Tuple[FieldSpec, ...]:
    return tuple(FieldSpec(name, abi_type) for name, abi_type in pairs)


# SupplyChain contract events are tried before Users contract events.
DEFAULT_SCHEMAS: Tuple[EventSchema, ...] = (
    EventSchema(
        kind=EventKind.ITEM_CREATED,
        event_name="NewProduct",
        fields=_fields(
            ("manufacturer", "address"),
            ("name", "string"),
            ("manufacturerName", "string"),
            ("barcode", "string"),
            ("manufacturedTime", "string"),
            ("volume", "uint256"),
        ),
        priority=10,
        version=2,
    ),
    EventSchema(
        kind=EventKind.ITEM_TRANSFERRED,
        event_name="ProductSold",
        fields=_fields(
            ("barcode", "string"),
            ("buyer", "address"),
            ("seller", "address"),
            ("transferTime", "uint256"),
            ("volume", "uint256"),
        ),
        priority=20,
        version=2,
    ),
    EventSchema(
        kind=EventKind.PARTICIPANT_REGISTERED,
        event_name="NewUser",
        fields=_fields(
            ("userAddress", "address"),
            ("name", "string"),
            ("role", "uint8"),
            ("publicKey", "string"),
        ),
        priority=30,
    ),
)


class EventSchemaRegistry:
    """
    Lookup table from topic0 to event schema.

    Usage:
        registry = EventSchemaRegistry()
        schema = registry.lookup(log.topic0)
        for schema in registry.in_priority_order():
            ...
    """

    def __init__(self, schemas: Optional[Tuple[EventSchema, ...]] = None):
        self._schemas: List[EventSchema] = []
        self._by_topic: Dict[str, EventSchema] = {}

        for schema in schemas if schemas is not None else DEFAULT_SCHEMAS:
            self.register(schema)

    def register(self, schema: EventSchema):
        """Add a schema. Signatures must be unique."""
        if schema.topic in self._by_topic:
            raise ValueError(f"Duplicate event signature: {schema.signature}")
        self._by_topic[schema.topic] = schema
        self._schemas.append(schema)
        self._schemas.sort(key=lambda s: s.priority)

    def lookup(self, topic0: Optional[str]) -> Optional[EventSchema]:
        """Schema registered for a topic0 hash, or None."""
        if not topic0:
            return None
        return self._by_topic.get(topic0.lower())

    def in_priority_order(self) -> Iterator[EventSchema]:
        return iter(list(self._schemas))

    def schema_for(self, kind: EventKind) -> EventSchema:
        for schema in self._schemas:
            if schema.kind == kind:
                return schema
        raise KeyError(kind)

    @property
    def version(self) -> int:
        return REGISTRY_VERSION

    def __len__(self) -> int:
        return len(self._schemas)
