"""
Unit tests for the event schema registry.

Tests:
- Signatures and topic hashes
- Priority ordering
- Lookup by topic0
- Duplicate registration
"""

import pytest
from eth_utils import encode_hex, keccak

from observer.indexer.event_registry import (
    DEFAULT_SCHEMAS,
    REGISTRY_VERSION,
    EventKind,
    EventSchema,
    EventSchemaRegistry,
    FieldSpec,
)


class TestEventSchema:
    """Test schema-derived properties."""

    def test_signature_lists_abi_types_in_order(self):
        registry = EventSchemaRegistry()
        schema = registry.schema_for(EventKind.ITEM_TRANSFERRED)
        assert schema.signature == "ProductSold(string,address,address,uint256,uint256)"

    def test_topic_is_lowercase_keccak_of_signature(self):
        registry = EventSchemaRegistry()
        schema = registry.schema_for(EventKind.PARTICIPANT_REGISTERED)
        expected = encode_hex(keccak(text="NewUser(address,string,uint8,string)")).lower()
        assert schema.topic == expected
        assert schema.topic.startswith("0x")
        assert len(schema.topic) == 66

    def test_field_names_and_types_align(self):
        schema = EventSchemaRegistry().schema_for(EventKind.ITEM_CREATED)
        assert schema.field_names == [
            "manufacturer", "name", "manufacturerName",
            "barcode", "manufacturedTime", "volume",
        ]
        assert schema.abi_types == [
            "address", "string", "string", "string", "string", "uint256",
        ]


class TestEventSchemaRegistry:
    """Test registry lookups."""

    def test_default_registry_has_three_events(self):
        registry = EventSchemaRegistry()
        assert len(registry) == 3
        assert registry.version == REGISTRY_VERSION

    def test_lookup_by_topic(self):
        registry = EventSchemaRegistry()
        for schema in DEFAULT_SCHEMAS:
            assert registry.lookup(schema.topic) is schema

    def test_lookup_is_case_insensitive(self):
        registry = EventSchemaRegistry()
        schema = registry.schema_for(EventKind.ITEM_CREATED)
        assert registry.lookup(schema.topic.upper().replace("0X", "0x")) is schema

    def test_lookup_unknown_returns_none(self):
        registry = EventSchemaRegistry()
        assert registry.lookup("0x" + "00" * 32) is None
        assert registry.lookup(None) is None
        assert registry.lookup("") is None

    def test_priority_order(self):
        """Supply chain events are tried before user events."""
        kinds = [s.kind for s in EventSchemaRegistry().in_priority_order()]
        assert kinds == [
            EventKind.ITEM_CREATED,
            EventKind.ITEM_TRANSFERRED,
            EventKind.PARTICIPANT_REGISTERED,
        ]

    def test_register_keeps_priority_order(self):
        registry = EventSchemaRegistry(schemas=())
        late = EventSchema(
            kind=EventKind.PARTICIPANT_REGISTERED,
            event_name="Late",
            fields=(FieldSpec("a", "uint256"),),
            priority=50
        )
        early = EventSchema(
            kind=EventKind.ITEM_CREATED,
            event_name="Early",
            fields=(FieldSpec("a", "uint256"),),
            priority=5
        )
        registry.register(late)
        registry.register(early)

        assert [s.event_name for s in registry.in_priority_order()] == ["Early", "Late"]

    def test_duplicate_signature_rejected(self):
        registry = EventSchemaRegistry()
        with pytest.raises(ValueError):
            registry.register(DEFAULT_SCHEMAS[0])

    def test_schema_for_unknown_kind_raises(self):
        registry = EventSchemaRegistry(schemas=())
        with pytest.raises(KeyError):
            registry.schema_for(EventKind.ITEM_CREATED)
