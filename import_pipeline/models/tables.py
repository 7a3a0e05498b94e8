"""
SQLAlchemy tables touched by the import pipeline.

Target tables carry a unique constraint on their natural key so the upsert
can use ON CONFLICT. Staging tables mirror the columns each table type
stages, plus the job id and the row's position in the source file.
"""
from typing import Dict, Type

from sqlalchemy import (
    Boolean, Column, DateTime, Index, Integer, Numeric, String, Table, Text,
    UniqueConstraint, func, true,
)

from import_pipeline.database import Base
from import_pipeline.table_types import (
    CanonicalField, FieldKind, TableType, field_kind, iter_table_specs,
)


def column_type(canonical: CanonicalField):
    kind = field_kind(canonical)
    if kind == FieldKind.INTEGER:
        return Integer
    if kind == FieldKind.DECIMAL:
        return Numeric(15, 2)
    return Text


# =============================================================================
# PARENT TABLES
# =============================================================================

class TransferOrder(Base):
    __tablename__ = "transfer_orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    to_number = Column(String(100), unique=True, nullable=True)
    dari_gudang = Column(String(50), nullable=True)
    ke_gudang = Column(String(50), nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class StockOpname(Base):
    __tablename__ = "stock_opname"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kode_gudang = Column(String(50), nullable=True)
    tanggal = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


# =============================================================================
# TARGET TABLES
# =============================================================================

class ReferenceSheet(Base):
    __tablename__ = "reference_sheet"
    __table_args__ = (UniqueConstraint("kode_item", name="uq_reference_sheet_kode_item"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    kode_item = Column(String(100), nullable=False)
    nama_item = Column(String(255), nullable=False)
    kelompok = Column(String(100))
    family = Column(String(100))
    original_code = Column(String(100))
    color = Column(String(100))
    kode_material = Column(String(100))
    deskripsi_material = Column(String(255))
    kode_motif = Column(String(100))
    deskripsi_motif = Column(String(255))
    created_at = Column(DateTime, server_default=func.now())


class Store(Base):
    __tablename__ = "stores"
    __table_args__ = (UniqueConstraint("kode_gudang", name="uq_stores_kode_gudang"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    kode_gudang = Column(String(50), nullable=False)
    nama_gudang = Column(String(255), nullable=False)
    jenis_gudang = Column(String(100))
    store_username = Column(String(100))
    store_password = Column(String(255))
    created_at = Column(DateTime, server_default=func.now())


class Staff(Base):
    __tablename__ = "staff"
    __table_args__ = (UniqueConstraint("nik", name="uq_staff_nik"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    nik = Column(String(50), nullable=False)
    email = Column(String(255), nullable=False)
    nama = Column(String(255))
    no_telepon = Column(String(50))
    position_id = Column(Integer)
    store_access = Column(String(255))
    kode_gudang = Column(String(50))
    created_at = Column(DateTime, server_default=func.now())


class Pricelist(Base):
    __tablename__ = "pricelist"
    __table_args__ = (
        UniqueConstraint("kode_item", "kode_gudang", name="uq_pricelist_item_store"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    kode_item = Column(String(100), nullable=False)
    kode_gudang = Column(String(50), nullable=False)
    harga_beli = Column(Numeric(15, 2))
    harga_jual = Column(Numeric(15, 2), nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class TransferOrderItem(Base):
    __tablename__ = "to_itemlist"
    __table_args__ = (
        UniqueConstraint("to_id", "kode_item", "sn", name="uq_to_itemlist_to_item_sn"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    to_id = Column(Integer, nullable=False, index=True)
    kode_item = Column(String(100), nullable=False)
    # Empty string rather than NULL so unserialized items share one key
    sn = Column(String(100), nullable=False, default="", server_default="")
    nama_item = Column(String(255))
    qty = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, server_default=func.now())


class StockOpnameItem(Base):
    __tablename__ = "so_itemlist"
    __table_args__ = (
        UniqueConstraint("so_id", "kode_item", "sn", name="uq_so_itemlist_so_item_sn"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    so_id = Column(Integer, nullable=False, index=True)
    kode_item = Column(String(100), nullable=False)
    sn = Column(String(100), nullable=False, default="", server_default="")
    nama_item = Column(String(255))
    qty_system = Column(Integer, nullable=False, default=0)
    qty_actual = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())


TARGET_MODELS: Dict[TableType, Type[Base]] = {
    TableType.REFERENCE_SHEET: ReferenceSheet,
    TableType.STORES: Store,
    TableType.STAFF: Staff,
    TableType.PRICELIST: Pricelist,
    TableType.TRANSFER_ITEMS: TransferOrderItem,
    TableType.STOCK_OPNAME_ITEMS: StockOpnameItem,
}


# =============================================================================
# STAGING TABLES
# =============================================================================

def _build_staging_table(table_type: TableType, fields) -> Table:
    name = "staging_" + table_type.value.replace("-", "_")
    columns = [
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("job_id", String(64), nullable=False),
        Column("row_number", Integer, nullable=False),
    ]
    columns.extend(Column(f.value, column_type(f), nullable=True) for f in fields)
    columns.extend([
        Column("parse_error", Text, nullable=True),
        Column("is_valid", Boolean, nullable=False, default=True, server_default=true()),
        Column("import_timestamp", DateTime, server_default=func.now()),
    ])
    return Table(
        name,
        Base.metadata,
        *columns,
        Index(f"ix_{name}_job_row", "job_id", "row_number"),
    )


STAGING_TABLES: Dict[TableType, Table] = {
    spec.table_type: _build_staging_table(spec.table_type, spec.staging_fields)
    for spec in iter_table_specs()
}


def staging_table(table_type: TableType) -> Table:
    return STAGING_TABLES[table_type]


def target_table(table_type: TableType) -> Table:
    return TARGET_MODELS[table_type].__table__
