"""
Registry of supported import table types.

Each table type declares its column aliases, the identifying fields a row
needs to be structurally valid, the columns it stages, its natural key for
upsert, the columns overwritten on conflict, and its validation rules.
Validation rules are SQLAlchemy boolean expressions evaluated against the
table type's staging table, so they run as set queries.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import Table, or_, not_
from sqlalchemy.sql.elements import ColumnElement

from import_pipeline.utils.headers import normalize_header


class TableType(str, Enum):
    REFERENCE_SHEET = "reference-sheet"
    STORES = "stores"
    STAFF = "staff"
    PRICELIST = "pricelist"
    TRANSFER_ITEMS = "transfer-items"
    STOCK_OPNAME_ITEMS = "stock-opname-items"


class CanonicalField(str, Enum):
    # Catalog
    KODE_ITEM = "kode_item"
    NAMA_ITEM = "nama_item"
    KELOMPOK = "kelompok"
    FAMILY = "family"
    ORIGINAL_CODE = "original_code"
    COLOR = "color"
    KODE_MATERIAL = "kode_material"
    DESKRIPSI_MATERIAL = "deskripsi_material"
    KODE_MOTIF = "kode_motif"
    DESKRIPSI_MOTIF = "deskripsi_motif"
    # Staff
    NIK = "nik"
    EMAIL = "email"
    NAMA = "nama"
    NO_TELEPON = "no_telepon"
    POSITION_ID = "position_id"
    STORE_ACCESS = "store_access"
    # Stores
    KODE_GUDANG = "kode_gudang"
    NAMA_GUDANG = "nama_gudang"
    JENIS_GUDANG = "jenis_gudang"
    STORE_USERNAME = "store_username"
    STORE_PASSWORD = "store_password"
    # Pricelist
    HARGA_BELI = "harga_beli"
    HARGA_JUAL = "harga_jual"
    # Line items
    SN = "sn"
    QTY = "qty"
    TO_ID = "to_id"
    TO_NUMBER = "to_number"
    SO_ID = "so_id"
    QTY_SYSTEM = "qty_system"
    QTY_ACTUAL = "qty_actual"


class FieldKind(str, Enum):
    TEXT = "text"
    INTEGER = "integer"
    DECIMAL = "decimal"


FIELD_KINDS: Dict[CanonicalField, FieldKind] = {
    CanonicalField.POSITION_ID: FieldKind.INTEGER,
    CanonicalField.QTY: FieldKind.INTEGER,
    CanonicalField.QTY_SYSTEM: FieldKind.INTEGER,
    CanonicalField.QTY_ACTUAL: FieldKind.INTEGER,
    CanonicalField.TO_ID: FieldKind.INTEGER,
    CanonicalField.SO_ID: FieldKind.INTEGER,
    CanonicalField.HARGA_BELI: FieldKind.DECIMAL,
    CanonicalField.HARGA_JUAL: FieldKind.DECIMAL,
}

# Width of the target VARCHAR column for text fields; others fit the default
DEFAULT_MAX_LENGTH = 255
FIELD_MAX_LENGTHS: Dict[CanonicalField, int] = {
    CanonicalField.KODE_ITEM: 100,
    CanonicalField.KELOMPOK: 100,
    CanonicalField.FAMILY: 100,
    CanonicalField.ORIGINAL_CODE: 100,
    CanonicalField.COLOR: 100,
    CanonicalField.KODE_MATERIAL: 100,
    CanonicalField.KODE_MOTIF: 100,
    CanonicalField.NIK: 50,
    CanonicalField.NO_TELEPON: 50,
    CanonicalField.KODE_GUDANG: 50,
    CanonicalField.JENIS_GUDANG: 100,
    CanonicalField.STORE_USERNAME: 100,
    CanonicalField.SN: 100,
    CanonicalField.TO_NUMBER: 100,
}

# Human-readable names used in error messages
FIELD_LABELS: Dict[CanonicalField, str] = {
    CanonicalField.KODE_ITEM: "item code",
    CanonicalField.NAMA_ITEM: "item name",
    CanonicalField.NIK: "NIK",
    CanonicalField.EMAIL: "email",
    CanonicalField.KODE_GUDANG: "store code",
    CanonicalField.NAMA_GUDANG: "store name",
    CanonicalField.HARGA_JUAL: "selling price",
    CanonicalField.SN: "serial number",
    CanonicalField.QTY: "quantity",
}


def field_kind(canonical: CanonicalField) -> FieldKind:
    return FIELD_KINDS.get(canonical, FieldKind.TEXT)


def field_label(canonical: CanonicalField) -> str:
    return FIELD_LABELS.get(canonical, canonical.value.replace("_", " "))


def field_max_length(canonical: CanonicalField) -> int:
    return FIELD_MAX_LENGTHS.get(canonical, DEFAULT_MAX_LENGTH)


# =============================================================================
# VALIDATION RULES
# =============================================================================

@dataclass(frozen=True)
class ValidationRule:
    """A staged row is invalid when ``condition(staging_table)`` is true."""
    message: str
    condition: Callable[[Table], ColumnElement]


def _blank(canonical: CanonicalField) -> Callable[[Table], ColumnElement]:
    def condition(table: Table) -> ColumnElement:
        column = table.c[canonical.value]
        return or_(column.is_(None), column == "")
    return condition


def _missing(canonical: CanonicalField) -> Callable[[Table], ColumnElement]:
    def condition(table: Table) -> ColumnElement:
        return table.c[canonical.value].is_(None)
    return condition


def _not_positive(canonical: CanonicalField) -> Callable[[Table], ColumnElement]:
    def condition(table: Table) -> ColumnElement:
        column = table.c[canonical.value]
        return or_(column.is_(None), column <= 0)
    return condition


def _invalid_email(table: Table) -> ColumnElement:
    column = table.c[CanonicalField.EMAIL.value]
    return or_(column.is_(None), column == "", not_(column.like("%@%")))


# =============================================================================
# TABLE SPECS
# =============================================================================

@dataclass(frozen=True)
class TableSpec:
    table_type: TableType
    aliases: Dict[str, CanonicalField]
    staging_fields: Tuple[CanonicalField, ...]
    identifying_fields: Tuple[CanonicalField, ...]
    natural_key: Tuple[CanonicalField, ...]
    update_fields: Tuple[CanonicalField, ...]
    rules: Tuple[ValidationRule, ...]
    # Applied when the column is absent or unparseable
    defaults: Dict[CanonicalField, str] = field(default_factory=dict)
    # Natural-key fields that are optional in the file; NULL is keyed as ''
    optional_key_fields: Tuple[CanonicalField, ...] = ()
    # Parent identifier supplied through the job's additional data
    parent_field: Optional[CanonicalField] = None

    def __post_init__(self):
        normalized = {normalize_header(alias): canonical for alias, canonical in self.aliases.items()}
        object.__setattr__(self, "aliases", normalized)

    def resolve_alias(self, header: object) -> Optional[CanonicalField]:
        return self.aliases.get(normalize_header(header))

    @property
    def insert_fields(self) -> Tuple[CanonicalField, ...]:
        return self.natural_key + tuple(f for f in self.update_fields if f not in self.natural_key)

    def expected_columns(self) -> List[str]:
        seen: List[str] = []
        for canonical in self.staging_fields:
            if canonical in self.aliases.values() and field_label(canonical) not in seen:
                seen.append(field_label(canonical))
        return seen


_F = CanonicalField

_ITEM_ALIASES = {
    "kode item": _F.KODE_ITEM,
    "item code": _F.KODE_ITEM,
    "itemcode": _F.KODE_ITEM,
    "nama item": _F.NAMA_ITEM,
    "item name": _F.NAMA_ITEM,
}

_SERIAL_ALIASES = {
    "s/n": _F.SN,
    "sn": _F.SN,
    "serial": _F.SN,
    "serial number": _F.SN,
    "nomor seri": _F.SN,
    "no seri": _F.SN,
}

_STORE_CODE_ALIASES = {
    "kode gudang": _F.KODE_GUDANG,
    "store code": _F.KODE_GUDANG,
}

TABLE_SPECS: Dict[TableType, TableSpec] = {
    TableType.REFERENCE_SHEET: TableSpec(
        table_type=TableType.REFERENCE_SHEET,
        aliases={
            **_ITEM_ALIASES,
            "kode": _F.KODE_ITEM,
            "nama": _F.NAMA_ITEM,
            "kelompok": _F.KELOMPOK,
            "group": _F.KELOMPOK,
            "family": _F.FAMILY,
            "original code": _F.ORIGINAL_CODE,
            "kode asli": _F.ORIGINAL_CODE,
            "color": _F.COLOR,
            "warna": _F.COLOR,
            "kode material": _F.KODE_MATERIAL,
            "material code": _F.KODE_MATERIAL,
            "deskripsi material": _F.DESKRIPSI_MATERIAL,
            "material description": _F.DESKRIPSI_MATERIAL,
            "kode motif": _F.KODE_MOTIF,
            "motif code": _F.KODE_MOTIF,
            "deskripsi motif": _F.DESKRIPSI_MOTIF,
            "motif description": _F.DESKRIPSI_MOTIF,
        },
        staging_fields=(
            _F.KODE_ITEM, _F.NAMA_ITEM, _F.KELOMPOK, _F.FAMILY, _F.ORIGINAL_CODE, _F.COLOR,
            _F.KODE_MATERIAL, _F.DESKRIPSI_MATERIAL, _F.KODE_MOTIF, _F.DESKRIPSI_MOTIF,
        ),
        identifying_fields=(_F.KODE_ITEM,),
        natural_key=(_F.KODE_ITEM,),
        update_fields=(
            _F.NAMA_ITEM, _F.KELOMPOK, _F.FAMILY, _F.ORIGINAL_CODE, _F.COLOR,
            _F.KODE_MATERIAL, _F.DESKRIPSI_MATERIAL, _F.KODE_MOTIF, _F.DESKRIPSI_MOTIF,
        ),
        rules=(
            ValidationRule("Item code is required", _blank(_F.KODE_ITEM)),
            ValidationRule("Item name is required", _blank(_F.NAMA_ITEM)),
        ),
    ),
    TableType.STORES: TableSpec(
        table_type=TableType.STORES,
        aliases={
            **_STORE_CODE_ALIASES,
            "nama gudang": _F.NAMA_GUDANG,
            "store name": _F.NAMA_GUDANG,
            "jenis gudang": _F.JENIS_GUDANG,
            "store type": _F.JENIS_GUDANG,
            "username": _F.STORE_USERNAME,
            "store username": _F.STORE_USERNAME,
            "password": _F.STORE_PASSWORD,
            "store password": _F.STORE_PASSWORD,
        },
        staging_fields=(
            _F.KODE_GUDANG, _F.NAMA_GUDANG, _F.JENIS_GUDANG, _F.STORE_USERNAME, _F.STORE_PASSWORD,
        ),
        identifying_fields=(_F.KODE_GUDANG,),
        natural_key=(_F.KODE_GUDANG,),
        update_fields=(_F.NAMA_GUDANG, _F.JENIS_GUDANG, _F.STORE_USERNAME, _F.STORE_PASSWORD),
        rules=(
            ValidationRule("Store code is required", _blank(_F.KODE_GUDANG)),
            ValidationRule("Store name is required", _blank(_F.NAMA_GUDANG)),
        ),
    ),
    TableType.STAFF: TableSpec(
        table_type=TableType.STAFF,
        aliases={
            "nik": _F.NIK,
            "employee id": _F.NIK,
            "email": _F.EMAIL,
            "e-mail": _F.EMAIL,
            "nama": _F.NAMA,
            "name": _F.NAMA,
            "no telepon": _F.NO_TELEPON,
            "telepon": _F.NO_TELEPON,
            "phone": _F.NO_TELEPON,
            "position id": _F.POSITION_ID,
            "jabatan": _F.POSITION_ID,
            "store access": _F.STORE_ACCESS,
            "akses gudang": _F.STORE_ACCESS,
            **_STORE_CODE_ALIASES,
        },
        staging_fields=(
            _F.NIK, _F.EMAIL, _F.NAMA, _F.NO_TELEPON, _F.POSITION_ID, _F.STORE_ACCESS, _F.KODE_GUDANG,
        ),
        identifying_fields=(_F.NIK,),
        natural_key=(_F.NIK,),
        update_fields=(_F.EMAIL, _F.NAMA, _F.NO_TELEPON, _F.POSITION_ID, _F.STORE_ACCESS, _F.KODE_GUDANG),
        rules=(
            ValidationRule("NIK is required", _blank(_F.NIK)),
            ValidationRule("Valid email is required", _invalid_email),
        ),
    ),
    TableType.PRICELIST: TableSpec(
        table_type=TableType.PRICELIST,
        aliases={
            **_ITEM_ALIASES,
            **_STORE_CODE_ALIASES,
            "harga beli": _F.HARGA_BELI,
            "cost price": _F.HARGA_BELI,
            "harga jual": _F.HARGA_JUAL,
            "selling price": _F.HARGA_JUAL,
            "harga": _F.HARGA_JUAL,
            "price": _F.HARGA_JUAL,
        },
        staging_fields=(_F.KODE_ITEM, _F.KODE_GUDANG, _F.HARGA_BELI, _F.HARGA_JUAL),
        identifying_fields=(_F.KODE_ITEM,),
        natural_key=(_F.KODE_ITEM, _F.KODE_GUDANG),
        update_fields=(_F.HARGA_BELI, _F.HARGA_JUAL),
        rules=(
            ValidationRule("Item code is required", _blank(_F.KODE_ITEM)),
            ValidationRule("Store code is required", _blank(_F.KODE_GUDANG)),
            ValidationRule("Valid selling price is required", _not_positive(_F.HARGA_JUAL)),
        ),
    ),
    TableType.TRANSFER_ITEMS: TableSpec(
        table_type=TableType.TRANSFER_ITEMS,
        aliases={
            **_SERIAL_ALIASES,
            **_ITEM_ALIASES,
            "qty": _F.QTY,
            "quantity": _F.QTY,
            "qty transfer": _F.QTY,
            "jumlah": _F.QTY,
            "nomor to": _F.TO_NUMBER,
            "to number": _F.TO_NUMBER,
        },
        staging_fields=(_F.TO_ID, _F.SN, _F.KODE_ITEM, _F.NAMA_ITEM, _F.QTY, _F.TO_NUMBER),
        identifying_fields=(_F.KODE_ITEM, _F.SN),
        natural_key=(_F.TO_ID, _F.KODE_ITEM, _F.SN),
        update_fields=(_F.NAMA_ITEM, _F.QTY),
        rules=(
            ValidationRule("Transfer order ID is required", _missing(_F.TO_ID)),
            ValidationRule("Item code is required", _blank(_F.KODE_ITEM)),
            ValidationRule("Valid quantity is required", _not_positive(_F.QTY)),
        ),
        defaults={_F.QTY: "1"},
        optional_key_fields=(_F.SN,),
        parent_field=_F.TO_ID,
    ),
    TableType.STOCK_OPNAME_ITEMS: TableSpec(
        table_type=TableType.STOCK_OPNAME_ITEMS,
        aliases={
            **_SERIAL_ALIASES,
            **_ITEM_ALIASES,
            "qty system": _F.QTY_SYSTEM,
            "system qty": _F.QTY_SYSTEM,
            "qty actual": _F.QTY_ACTUAL,
            "actual qty": _F.QTY_ACTUAL,
        },
        staging_fields=(_F.SO_ID, _F.SN, _F.KODE_ITEM, _F.NAMA_ITEM, _F.QTY_SYSTEM, _F.QTY_ACTUAL),
        identifying_fields=(_F.KODE_ITEM, _F.SN),
        natural_key=(_F.SO_ID, _F.KODE_ITEM, _F.SN),
        update_fields=(_F.NAMA_ITEM, _F.QTY_SYSTEM, _F.QTY_ACTUAL),
        rules=(
            ValidationRule("Stock opname ID is required", _missing(_F.SO_ID)),
            ValidationRule("Item code is required", _blank(_F.KODE_ITEM)),
        ),
        defaults={_F.QTY_SYSTEM: "0", _F.QTY_ACTUAL: "0"},
        optional_key_fields=(_F.SN,),
        parent_field=_F.SO_ID,
    ),
}


def supported_table_types() -> List[str]:
    return [t.value for t in TableType]


def get_table_spec(table_type: "TableType | str") -> TableSpec:
    """
    Look up a table spec by enum member or by its string tag.

    Raises:
        KeyError: If the table type is not supported
    """
    try:
        key = table_type if isinstance(table_type, TableType) else TableType(str(table_type))
    except ValueError:
        raise KeyError(table_type)
    return TABLE_SPECS[key]


def iter_table_specs() -> Iterable[TableSpec]:
    return TABLE_SPECS.values()
