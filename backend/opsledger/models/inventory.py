from __future__ import annotations

from ..extensions import db
from opsledger.time_utils import to_utc_z, to_iso_date


ITEM_TYPE_RAW_MATERIAL = "raw_material"
ITEM_TYPE_RECURRING_PRODUCT = "recurring_product"
ITEM_TYPES = (ITEM_TYPE_RAW_MATERIAL, ITEM_TYPE_RECURRING_PRODUCT)

MOVEMENT_IN = "IN"
MOVEMENT_CONSUMPTION = "CONSUMPTION"
MOVEMENT_WASTE = "WASTE"
MOVEMENT_TRANSFER_OUT = "TRANSFER_OUT"
MOVEMENT_TRANSFER_IN = "TRANSFER_IN"

INBOUND_MOVEMENTS = (MOVEMENT_IN, MOVEMENT_TRANSFER_IN)
OUTBOUND_MOVEMENTS = (MOVEMENT_CONSUMPTION, MOVEMENT_WASTE, MOVEMENT_TRANSFER_OUT)
MOVEMENT_TYPES = INBOUND_MOVEMENTS + OUTBOUND_MOVEMENTS

REFERENCE_PRODUCTION_BATCH = "production_batch"
REFERENCE_WASTE_RECORD = "waste_record"
REFERENCE_TRANSFER_RECORD = "transfer_record"
REFERENCE_INITIAL_INTAKE = "initial_intake"
REFERENCE_TYPES = (
    REFERENCE_PRODUCTION_BATCH,
    REFERENCE_WASTE_RECORD,
    REFERENCE_TRANSFER_RECORD,
    REFERENCE_INITIAL_INTAKE,
)

QUANTITY = db.Numeric(14, 3)


class LotMixin:
    """
    Columns shared by both lot tables.

    quantity_received is the historical intake fact and never changes.
    quantity_available is a cache of the ledger balance as of today; it is
    only ever overwritten by stock_ledger_service.recompute_cached_balance.
    """

    id = db.Column(db.Integer, primary_key=True)
    lot_code = db.Column(db.String(32), nullable=False, unique=True, index=True)
    name = db.Column(db.String(255), nullable=False)
    unit = db.Column(db.String(16), nullable=False)

    quantity_received = db.Column(QUANTITY, nullable=False)
    quantity_available = db.Column(QUANTITY, nullable=False, default=0)

    received_date = db.Column(db.Date, nullable=False, index=True)

    # External collaborators (supplier/user directories) are referenced, not owned
    supplier_id = db.Column(db.Integer, nullable=True, index=True)
    handover_to = db.Column(db.Integer, nullable=True)
    amount_paid = db.Column(db.Numeric(14, 2), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    is_archived = db.Column(db.Boolean, nullable=False, default=False, index=True)

    created_by = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    item_type = ""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id} lot_code={self.lot_code!r} unit={self.unit!r}>"

    def _base_dict(self) -> dict:
        return {
            "id": self.id,
            "item_type": self.item_type,
            "lot_code": self.lot_code,
            "name": self.name,
            "unit": self.unit,
            "quantity_received": str(self.quantity_received),
            "quantity_available": str(self.quantity_available),
            "received_date": to_iso_date(self.received_date),
            "supplier_id": self.supplier_id,
            "handover_to": self.handover_to,
            "amount_paid": str(self.amount_paid) if self.amount_paid is not None else None,
            "notes": self.notes,
            "is_archived": self.is_archived,
            "created_by": self.created_by,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class RawMaterial(LotMixin, db.Model):
    __tablename__ = "raw_materials"
    __table_args__ = {"sqlite_autoincrement": True}

    item_type = ITEM_TYPE_RAW_MATERIAL

    condition = db.Column(db.String(64), nullable=True)
    storage_notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        data = self._base_dict()
        data["condition"] = self.condition
        data["storage_notes"] = self.storage_notes
        return data


class RecurringProduct(LotMixin, db.Model):
    __tablename__ = "recurring_products"
    __table_args__ = {"sqlite_autoincrement": True}

    item_type = ITEM_TYPE_RECURRING_PRODUCT

    category = db.Column(db.String(64), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        data = self._base_dict()
        data["category"] = self.category
        return data


LOT_MODELS = {
    ITEM_TYPE_RAW_MATERIAL: RawMaterial,
    ITEM_TYPE_RECURRING_PRODUCT: RecurringProduct,
}


class StockMovement(db.Model):
    """
    Append-only quantity movement for one lot.

    quantity is an unsigned magnitude; the direction comes from movement_type.
    effective_date is business time (may be backdated); recorded_at is insertion
    time and only breaks ties between movements on the same effective_date.
    Rows are never updated or deleted (see immutability.py).
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        db.CheckConstraint(
            "movement_type IN ('IN', 'CONSUMPTION', 'WASTE', 'TRANSFER_OUT', 'TRANSFER_IN')",
            name="ck_stock_movements_movement_type",
        ),
        db.CheckConstraint(
            "item_type IN ('raw_material', 'recurring_product')",
            name="ck_stock_movements_item_type",
        ),
        db.Index("ix_stock_movements_item", "item_type", "item_reference"),
        db.Index(
            "ix_stock_movements_item_order",
            "item_type",
            "item_reference",
            "effective_date",
            "recorded_at",
        ),
        db.Index("ix_stock_movements_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    item_type = db.Column(db.String(32), nullable=False)
    # Lot row id in raw_materials / recurring_products (polymorphic, so no FK)
    item_reference = db.Column(db.Integer, nullable=False)
    lot_reference = db.Column(db.String(32), nullable=True, index=True)

    movement_type = db.Column(db.String(16), nullable=False, index=True)
    quantity = db.Column(QUANTITY, nullable=False)
    unit = db.Column(db.String(16), nullable=False)

    effective_date = db.Column(db.Date, nullable=False, index=True)
    recorded_at = db.Column(db.DateTime, nullable=False)

    reference_id = db.Column(db.Integer, nullable=True)
    reference_type = db.Column(db.String(32), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.Integer, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<StockMovement id={self.id} {self.movement_type} {self.quantity} {self.unit} "
            f"lot={self.lot_reference!r} effective={self.effective_date}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_type": self.item_type,
            "item_reference": self.item_reference,
            "lot_reference": self.lot_reference,
            "movement_type": self.movement_type,
            "quantity": str(self.quantity),
            "unit": self.unit,
            "effective_date": to_iso_date(self.effective_date),
            "recorded_at": to_utc_z(self.recorded_at),
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "notes": self.notes,
            "created_by": self.created_by,
        }
