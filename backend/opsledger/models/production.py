from __future__ import annotations

from ..extensions import db
from .inventory import QUANTITY
from opsledger.time_utils import to_utc_z, to_iso_date


QA_PENDING = "pending"
QA_APPROVED = "approved"
QA_REJECTED = "rejected"
QA_HOLD = "hold"
QA_STATUSES = (QA_PENDING, QA_APPROVED, QA_REJECTED, QA_HOLD)

# Only these dispositions may lock a batch
LOCKABLE_QA_STATUSES = (QA_APPROVED, QA_REJECTED)


class ProductionBatch(db.Model):
    """
    Production run that consumes lots and declares outputs.

    LIFECYCLE:
    1. DRAFT (is_locked=False): materials and outputs may be added/removed freely;
       qa_status may be saved as pending/approved/rejected/hold.
    2. LOCKED (is_locked=True): reached once, with qa_status approved or rejected.
       The batch, its consumed-material lines and its outputs become immutable and
       the batch can never be deleted.

    batch_date is the business date every CONSUMPTION (and reversal) movement
    of this batch is attributed to.
    """
    __tablename__ = "production_batches"
    __table_args__ = (
        db.CheckConstraint(
            "qa_status IN ('pending', 'approved', 'rejected', 'hold')",
            name="ck_production_batches_qa_status",
        ),
        db.Index("ix_production_batches_date_created", "batch_date", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    batch_code = db.Column(db.String(32), nullable=False, unique=True, index=True)
    batch_date = db.Column(db.Date, nullable=False)

    responsible_user_id = db.Column(db.Integer, nullable=True)

    qa_status = db.Column(db.String(16), nullable=False, default=QA_PENDING, index=True)
    qa_reason = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    is_locked = db.Column(db.Boolean, nullable=False, default=False, index=True)
    locked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    production_start_date = db.Column(db.Date, nullable=True)
    production_end_date = db.Column(db.Date, nullable=True)

    # [{"key": ..., "value": ...}, ...]
    custom_fields = db.Column(db.JSON, nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    materials = db.relationship(
        "BatchConsumedMaterial",
        backref="batch",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="BatchConsumedMaterial.id",
    )
    outputs = db.relationship(
        "BatchOutput",
        backref="batch",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="BatchOutput.id",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<ProductionBatch id={self.id} code={self.batch_code!r} locked={self.is_locked} qa={self.qa_status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_code": self.batch_code,
            "batch_date": to_iso_date(self.batch_date),
            "responsible_user_id": self.responsible_user_id,
            "qa_status": self.qa_status,
            "qa_reason": self.qa_reason,
            "notes": self.notes,
            "is_locked": self.is_locked,
            "locked_at": to_utc_z(self.locked_at) if self.locked_at else None,
            "production_start_date": to_iso_date(self.production_start_date),
            "production_end_date": to_iso_date(self.production_end_date),
            "custom_fields": self.custom_fields or [],
            "created_by": self.created_by,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class BatchConsumedMaterial(db.Model):
    """
    One consumption line of a batch.

    Removing the line never touches its CONSUMPTION movement; a reversal IN
    movement is posted instead.
    """
    __tablename__ = "batch_consumed_materials"
    __table_args__ = (
        db.Index("ix_batch_consumed_item", "item_type", "item_reference"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("production_batches.id"), nullable=False, index=True)

    item_type = db.Column(db.String(32), nullable=False)
    item_reference = db.Column(db.Integer, nullable=False)
    lot_code = db.Column(db.String(32), nullable=False)
    material_name = db.Column(db.String(255), nullable=False)

    quantity_consumed = db.Column(QUANTITY, nullable=False)
    unit = db.Column(db.String(16), nullable=False)

    consumption_movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    consumption_movement = db.relationship("StockMovement", foreign_keys=[consumption_movement_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "item_type": self.item_type,
            "item_reference": self.item_reference,
            "lot_code": self.lot_code,
            "material_name": self.material_name,
            "quantity_consumed": str(self.quantity_consumed),
            "unit": self.unit,
            "consumption_movement_id": self.consumption_movement_id,
            "created_at": to_utc_z(self.created_at),
        }


class BatchOutput(db.Model):
    """
    Output declared within a draft batch. Not inventory until the batch locks
    as approved; then exactly one ProcessedGood is created per output.
    """
    __tablename__ = "batch_outputs"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("production_batches.id"), nullable=False, index=True)

    output_name = db.Column(db.String(255), nullable=True)
    output_size = db.Column(QUANTITY, nullable=True)
    output_size_unit = db.Column(db.String(16), nullable=True)

    produced_quantity = db.Column(QUANTITY, nullable=True)
    produced_unit = db.Column(db.String(16), nullable=True)

    # Tag taxonomy is an external collaborator
    produced_goods_tag_id = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def missing_fields(self) -> list[str]:
        missing = []
        if not (self.output_name or "").strip():
            missing.append("output_name")
        if self.produced_quantity is None or self.produced_quantity <= 0:
            missing.append("produced_quantity")
        if not (self.produced_unit or "").strip():
            missing.append("produced_unit")
        if not (self.produced_goods_tag_id or "").strip():
            missing.append("produced_goods_tag_id")
        return missing

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "output_name": self.output_name,
            "output_size": str(self.output_size) if self.output_size is not None else None,
            "output_size_unit": self.output_size_unit,
            "produced_quantity": str(self.produced_quantity) if self.produced_quantity is not None else None,
            "produced_unit": self.produced_unit,
            "produced_goods_tag_id": self.produced_goods_tag_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProcessedGood(db.Model):
    """
    Output inventory materialized when a batch locks as approved.

    quantity_created is fixed at creation; quantity_available is drawn down by
    downstream consumers (sales), which are outside this package.
    """
    __tablename__ = "processed_goods"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("production_batches.id"), nullable=False, index=True)
    batch_output_id = db.Column(db.Integer, db.ForeignKey("batch_outputs.id"), nullable=True, unique=True)
    batch_code = db.Column(db.String(32), nullable=False, index=True)

    product_type = db.Column(db.String(255), nullable=False)
    quantity_created = db.Column(QUANTITY, nullable=False)
    quantity_available = db.Column(QUANTITY, nullable=False)
    unit = db.Column(db.String(16), nullable=False)

    production_date = db.Column(db.Date, nullable=False)
    qa_status = db.Column(db.String(16), nullable=False)

    output_size = db.Column(QUANTITY, nullable=True)
    output_size_unit = db.Column(db.String(16), nullable=True)
    produced_goods_tag_id = db.Column(db.String(64), nullable=True)
    custom_fields = db.Column(db.JSON, nullable=True)

    is_archived = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    # Goods outlive any attempt to delete their batch; never null the FK
    batch = db.relationship(
        "ProductionBatch",
        backref=db.backref("processed_goods", lazy=True, passive_deletes="all"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "batch_output_id": self.batch_output_id,
            "batch_code": self.batch_code,
            "product_type": self.product_type,
            "quantity_created": str(self.quantity_created),
            "quantity_available": str(self.quantity_available),
            "unit": self.unit,
            "production_date": to_iso_date(self.production_date),
            "qa_status": self.qa_status,
            "output_size": str(self.output_size) if self.output_size is not None else None,
            "output_size_unit": self.output_size_unit,
            "produced_goods_tag_id": self.produced_goods_tag_id,
            "custom_fields": self.custom_fields or [],
            "is_archived": self.is_archived,
            "created_at": to_utc_z(self.created_at),
        }
