"""Tests for the schema registry and the row snapshot codec."""

import pytest
from datetime import date, datetime
from decimal import Decimal
from sqlalchemy import Column, Date, DateTime, Integer, MetaData, Numeric, String, Table

from revertible.services.errors import NotFound
from revertible.services.row_store import decode_row, encode_row
from revertible.services.schema_registry import SchemaRegistry, build_default_registry


@pytest.fixture
def registry():
    return build_default_registry()


class TestDefaultRegistry:
    """Workflow builder registrations."""

    def test_registered_tables(self, registry):
        assert registry.table_names() == ["applications", "fields", "objects", "themes", "views"]

    def test_categories(self, registry):
        assert registry.category_of("objects") == "workflow"
        assert registry.category_of("views") == "ui"
        assert registry.category_of("fields") == "data"
        assert registry.category_of("themes") == "theme"
        assert registry.category_of("applications") == "app"
        assert registry.category_of("unknown") == "other"

    def test_schema_shape(self, registry):
        schema = registry.get("fields")

        assert schema.primary_key_column == "id"
        assert "object_id" in schema.columns
        assert [(fk.column, fk.referenced_table, fk.referenced_column) for fk in schema.foreign_keys] == [
            ("object_id", "objects", "id")
        ]
        assert schema.entity_label == "Field"
        assert schema.display_name({"name": "age"}) == "age"
        assert schema.display_name(None) is None

    def test_referencing(self, registry):
        children = sorted(schema.table_name for schema, _ in registry.referencing("objects"))
        assert children == ["fields", "views"]
        assert sorted(schema.table_name for schema, _ in registry.referencing("applications")) == [
            "objects", "themes"
        ]

    def test_unknown_table(self, registry):
        with pytest.raises(NotFound):
            registry.get("spaceships")
        assert "spaceships" not in registry


class TestRegistration:
    """Registering custom tables."""

    def test_composite_key_rejected(self):
        metadata = MetaData()
        table = Table(
            "pairs", metadata,
            Column("a", Integer, primary_key=True),
            Column("b", Integer, primary_key=True),
        )
        registry = SchemaRegistry(metadata)

        with pytest.raises(ValueError):
            registry.register_table(table, category="data")

    def test_table_must_exist_in_metadata(self):
        other = MetaData()
        table = Table("loose", other, Column("id", Integer, primary_key=True))
        registry = SchemaRegistry(MetaData())

        with pytest.raises(ValueError):
            registry.register_table(table, category="data")

    def test_hooks_are_kept(self):
        metadata = MetaData()
        table = Table("notes", metadata, Column("id", Integer, primary_key=True), Column("text", String))
        registry = SchemaRegistry(metadata)

        schema = registry.register_table(table, category="data", before_create=lambda data: data)

        assert schema.before_create is not None
        assert schema.before_update is None
        assert schema.entity_label == "notes"


class TestSnapshotCodec:
    """JSON snapshots of rows."""

    @pytest.fixture
    def table(self):
        return Table(
            "ledger", MetaData(),
            Column("id", Integer, primary_key=True),
            Column("booked_at", DateTime),
            Column("day", Date),
            Column("amount", Numeric(10, 2)),
            Column("memo", String),
        )

    def test_encode_makes_values_json_safe(self):
        encoded = encode_row({
            "id": 1,
            "booked_at": datetime(2024, 5, 1, 12, 30, 15, 123456),
            "day": date(2024, 5, 1),
            "amount": Decimal("10.50"),
            "memo": None,
        })

        assert encoded == {
            "id": 1,
            "booked_at": "2024-05-01T12:30:15.123456",
            "day": "2024-05-01",
            "amount": "10.50",
            "memo": None,
        }
        assert encode_row(None) is None

    def test_decode_restores_column_types(self, table):
        decoded = decode_row(table, {
            "id": 1,
            "booked_at": "2024-05-01T12:30:15.123456",
            "day": "2024-05-01",
            "amount": "10.50",
            "memo": "2024-05-01",
        })

        assert decoded["booked_at"] == datetime(2024, 5, 1, 12, 30, 15, 123456)
        assert decoded["day"] == date(2024, 5, 1)
        assert decoded["amount"] == Decimal("10.50")
        # Plain strings stay strings
        assert decoded["memo"] == "2024-05-01"

    def test_decode_drops_unknown_columns(self, table):
        assert decode_row(table, {"id": 1, "dropped_column": "x"}) == {"id": 1}
