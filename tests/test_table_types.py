"""
Tests for the table type registry.
"""

import pytest
from sqlalchemy import String, UniqueConstraint

from import_pipeline.models.tables import STAGING_TABLES, TARGET_MODELS, TransferOrder, staging_table, target_table
from import_pipeline.table_types import (
    TABLE_SPECS, CanonicalField, TableType, field_max_length, get_table_spec, supported_table_types,
)

F = CanonicalField


class TestRegistry:
    """Every table type is fully described."""

    def test_every_table_type_registered(self):
        assert set(TABLE_SPECS) == set(TableType)
        assert set(TARGET_MODELS) == set(TableType)
        assert set(STAGING_TABLES) == set(TableType)

    @pytest.mark.parametrize("table_type", list(TableType))
    def test_natural_key_is_staged_and_unique_in_target(self, table_type):
        spec = get_table_spec(table_type)
        target = target_table(table_type)
        staging = staging_table(table_type)

        unique_sets = [
            {c.name for c in constraint.columns}
            for constraint in target.constraints
            if isinstance(constraint, UniqueConstraint)
        ]
        assert {f.value for f in spec.natural_key} in unique_sets
        for canonical in spec.natural_key + spec.update_fields:
            assert canonical.value in staging.c
            assert canonical.value in target.c

    @pytest.mark.parametrize("table_type", list(TableType))
    def test_staging_tables_carry_job_columns(self, table_type):
        columns = staging_table(table_type).c
        for name in ("job_id", "row_number", "parse_error", "is_valid"):
            assert name in columns

    @pytest.mark.parametrize("table_type", list(TableType))
    def test_text_limits_match_target_columns(self, table_type):
        """Parsed text is never wider than the column it is written to."""
        target = target_table(table_type)

        for canonical in get_table_spec(table_type).staging_fields:
            column = target.c.get(canonical.value)
            if column is not None and isinstance(column.type, String):
                assert field_max_length(canonical) == column.type.length, canonical

    def test_transfer_number_limit_matches_parent_column(self):
        assert field_max_length(F.TO_NUMBER) == TransferOrder.__table__.c.to_number.type.length

    def test_lookup_by_string(self):
        assert get_table_spec("transfer-items").table_type == TableType.TRANSFER_ITEMS

    def test_unknown_table_type(self):
        with pytest.raises(KeyError):
            get_table_spec("invoices")

    def test_supported_table_types(self):
        assert "reference-sheet" in supported_table_types()
        assert "stock-opname-items" in supported_table_types()


class TestAliases:
    """Header aliases resolve to canonical fields."""

    @pytest.mark.parametrize("header,expected", [
        ("Kode Item", F.KODE_ITEM),
        ("S/N", F.SN),
        ("Serial Number", F.SN),
        ("nomor_seri", F.SN),
        ("QTY", F.QTY),
    ])
    def test_transfer_aliases(self, header, expected):
        assert get_table_spec(TableType.TRANSFER_ITEMS).resolve_alias(header) == expected

    def test_unknown_header(self):
        assert get_table_spec(TableType.STORES).resolve_alias("Remarks") is None

    def test_expected_columns_use_labels(self):
        expected = get_table_spec(TableType.PRICELIST).expected_columns()
        assert expected[:2] == ["item code", "store code"]
