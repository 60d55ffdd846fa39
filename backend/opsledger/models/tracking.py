from __future__ import annotations

from ..extensions import db
from .inventory import QUANTITY
from opsledger.time_utils import to_utc_z, to_iso_date


class WasteRecord(db.Model):
    """
    Audit row for one WASTE movement (one-to-one, linked via reference_id).

    affects_locked_batch marks waste recorded against a lot that a locked batch
    consumed from; such waste is allowed but kept distinguishable.
    """
    __tablename__ = "waste_records"
    __table_args__ = (
        db.CheckConstraint("quantity_wasted > 0", name="ck_waste_records_quantity_positive"),
        db.Index("ix_waste_records_lot", "lot_type", "lot_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    waste_code = db.Column(db.String(32), nullable=False, unique=True, index=True)

    lot_type = db.Column(db.String(32), nullable=False)
    lot_id = db.Column(db.Integer, nullable=False)
    lot_code = db.Column(db.String(32), nullable=False)

    quantity_wasted = db.Column(QUANTITY, nullable=False)
    unit = db.Column(db.String(16), nullable=False)

    reason = db.Column(db.String(255), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    waste_date = db.Column(db.Date, nullable=False)

    affects_locked_batch = db.Column(db.Boolean, nullable=False, default=False)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "waste_code": self.waste_code,
            "lot_type": self.lot_type,
            "lot_id": self.lot_id,
            "lot_code": self.lot_code,
            "quantity_wasted": str(self.quantity_wasted),
            "unit": self.unit,
            "reason": self.reason,
            "notes": self.notes,
            "waste_date": to_iso_date(self.waste_date),
            "affects_locked_batch": self.affects_locked_batch,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }


class TransferRecord(db.Model):
    """
    Audit row shared by a TRANSFER_OUT / TRANSFER_IN movement pair.
    Both movements carry this record's id as reference_id.
    """
    __tablename__ = "transfer_records"
    __table_args__ = (
        db.CheckConstraint("quantity_transferred > 0", name="ck_transfer_records_quantity_positive"),
        db.CheckConstraint("from_lot_id <> to_lot_id", name="ck_transfer_records_distinct_lots"),
        db.Index("ix_transfer_records_from", "lot_type", "from_lot_id"),
        db.Index("ix_transfer_records_to", "lot_type", "to_lot_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transfer_code = db.Column(db.String(32), nullable=False, unique=True, index=True)

    lot_type = db.Column(db.String(32), nullable=False)
    from_lot_id = db.Column(db.Integer, nullable=False)
    from_lot_code = db.Column(db.String(32), nullable=False)
    to_lot_id = db.Column(db.Integer, nullable=False)
    to_lot_code = db.Column(db.String(32), nullable=False)

    quantity_transferred = db.Column(QUANTITY, nullable=False)
    unit = db.Column(db.String(16), nullable=False)

    reason = db.Column(db.String(255), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    transfer_date = db.Column(db.Date, nullable=False)

    affects_locked_batch = db.Column(db.Boolean, nullable=False, default=False)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False)

    def to_dict(self, *, perspective_lot_id: int | None = None) -> dict:
        data = {
            "id": self.id,
            "transfer_code": self.transfer_code,
            "lot_type": self.lot_type,
            "from_lot_id": self.from_lot_id,
            "from_lot_code": self.from_lot_code,
            "to_lot_id": self.to_lot_id,
            "to_lot_code": self.to_lot_code,
            "quantity_transferred": str(self.quantity_transferred),
            "unit": self.unit,
            "reason": self.reason,
            "notes": self.notes,
            "transfer_date": to_iso_date(self.transfer_date),
            "affects_locked_batch": self.affects_locked_batch,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
        if perspective_lot_id is not None:
            data["direction"] = "transfer_out" if self.from_lot_id == perspective_lot_id else "transfer_in"
        return data


class IdentifierSequence(db.Model):
    """
    Per-category counter backing the identifier allocator.

    next_number is advanced with a compare-and-set UPDATE; the allocator still
    re-checks the target table before handing a code out.
    """
    __tablename__ = "identifier_sequences"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    category = db.Column(db.String(32), nullable=False, unique=True)
    next_number = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": self.category,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
