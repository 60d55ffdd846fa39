# Overview: Service-layer operations for waste and lot-to-lot transfers; posts WASTE and TRANSFER_OUT/TRANSFER_IN movements.

from __future__ import annotations

from flask import current_app
from sqlalchemy import or_

from ..extensions import db
from ..errors import InsufficientQuantity, IntegrityViolation, ValidationError
from ..models import WasteRecord, TransferRecord
from ..models.inventory import (
    MOVEMENT_WASTE,
    MOVEMENT_TRANSFER_OUT,
    MOVEMENT_TRANSFER_IN,
    REFERENCE_WASTE_RECORD,
    REFERENCE_TRANSFER_RECORD,
)
from ..validation import coerce_id, coerce_optional_id
from opsledger.time_utils import utcnow, today, parse_iso_date
from . import identifier_service
from .concurrency import run_in_transaction
from .lot_service import locked_batch_codes_for_lot
from .stock_ledger_service import get_balance, get_lot_or_404, post_movement, to_quantity
"""
Waste / Transfer Invariants

- Quantity must be > 0 and must not exceed the lot's balance as of the
  effective date (the source lot's, for transfers). Never partially applied.
- One WasteRecord per WASTE movement; one TransferRecord per
  TRANSFER_OUT/TRANSFER_IN pair, both movements referencing it.
- TRANSFER_IN is stamped strictly after its TRANSFER_OUT so same-day replay
  shows the outflow first.
- Locked batches do NOT block waste or transfers: corrections must stay
  possible. They are marked with affects_locked_batch instead.
"""


def _require_reason(reason) -> str:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("reason is required")
    if len(reason) > 255:
        raise ValidationError("reason exceeds max length 255")
    return reason


def _effective_date(value):
    try:
        return parse_iso_date(value) or today()
    except (TypeError, ValueError):
        raise ValidationError("effective_date must be a date (YYYY-MM-DD)")


def _insufficient(verb: str, qty, available, lot, *, suffix: str = "") -> InsufficientQuantity:
    return InsufficientQuantity(
        f"Cannot {verb} {qty} {lot.unit}. Only {available} {lot.unit} available{suffix}.",
        lot_code=lot.lot_code,
        requested=qty,
        available=available,
        unit=lot.unit,
    )


def record_waste(
    lot_type: str,
    lot_id: int,
    quantity,
    reason: str,
    effective_date=None,
    *,
    notes: str | None = None,
    created_by: int | None = None,
) -> WasteRecord:
    """Record waste against a lot; validated against its as-of balance."""
    lot_id = coerce_id(lot_id, "lot_id")
    created_by = coerce_optional_id(created_by, "created_by")
    qty = to_quantity(quantity)
    reason = _require_reason(reason)
    eff = _effective_date(effective_date)

    def _op():
        lot = get_lot_or_404(lot_type, lot_id, lock=True)

        available = get_balance(lot_type, lot.id, eff)
        if qty > available:
            raise _insufficient("waste", qty, available, lot)

        locked_codes = locked_batch_codes_for_lot(lot_type, lot.id)
        waste_code = identifier_service.allocate(identifier_service.CATEGORY_WASTE)
        now = utcnow()
        record = WasteRecord(
            waste_code=waste_code,
            lot_type=lot_type,
            lot_id=lot.id,
            lot_code=lot.lot_code,
            quantity_wasted=qty,
            unit=lot.unit,
            reason=reason,
            notes=notes,
            waste_date=eff,
            affects_locked_batch=bool(locked_codes),
            created_by=created_by,
            created_at=now,
        )
        db.session.add(record)
        db.session.flush()

        post_movement(
            lot=lot,
            movement_type=MOVEMENT_WASTE,
            quantity=qty,
            effective_date=eff,
            reference_type=REFERENCE_WASTE_RECORD,
            reference_id=record.id,
            notes=f"Waste: {reason}. {notes}" if notes else f"Waste: {reason}",
            created_by=created_by,
            after=now,
        )
        current_app.logger.info("Waste %s recorded: %s %s from %s", waste_code, qty, lot.unit, lot.lot_code)
        if locked_codes:
            current_app.logger.info(
                "Waste %s corrects lot %s consumed by locked batches %s",
                waste_code, lot.lot_code, ", ".join(locked_codes),
            )
        return record

    return run_in_transaction(_op)


def transfer_between_lots(
    lot_type: str,
    from_lot_id: int,
    to_lot_id: int,
    quantity,
    reason: str,
    effective_date=None,
    *,
    notes: str | None = None,
    created_by: int | None = None,
) -> TransferRecord:
    """Move quantity from one lot to another lot of the same type and unit."""
    from_lot_id = coerce_id(from_lot_id, "from_lot_id")
    to_lot_id = coerce_id(to_lot_id, "to_lot_id")
    created_by = coerce_optional_id(created_by, "created_by")
    if from_lot_id == to_lot_id:
        raise IntegrityViolation("Cannot transfer a lot to itself", lot_id=from_lot_id)
    qty = to_quantity(quantity)
    reason = _require_reason(reason)
    eff = _effective_date(effective_date)

    def _op():
        # Lock in id order so two opposite transfers cannot deadlock
        locked = {
            lot_id: get_lot_or_404(lot_type, lot_id, lock=True)
            for lot_id in sorted((from_lot_id, to_lot_id))
        }
        source, dest = locked[from_lot_id], locked[to_lot_id]

        if source.unit != dest.unit:
            raise ValidationError(
                f"Cannot transfer between lots with different units: {source.unit} vs {dest.unit}",
                from_lot_code=source.lot_code,
                to_lot_code=dest.lot_code,
            )

        available = get_balance(lot_type, source.id, eff)
        if qty > available:
            raise _insufficient("transfer", qty, available, source, suffix=" in source lot")

        locked_codes = sorted(
            set(locked_batch_codes_for_lot(lot_type, source.id))
            | set(locked_batch_codes_for_lot(lot_type, dest.id))
        )
        transfer_code = identifier_service.allocate(identifier_service.CATEGORY_TRANSFER)
        now = utcnow()
        record = TransferRecord(
            transfer_code=transfer_code,
            lot_type=lot_type,
            from_lot_id=source.id,
            from_lot_code=source.lot_code,
            to_lot_id=dest.id,
            to_lot_code=dest.lot_code,
            quantity_transferred=qty,
            unit=source.unit,
            reason=reason,
            notes=notes,
            transfer_date=eff,
            affects_locked_batch=bool(locked_codes),
            created_by=created_by,
            created_at=now,
        )
        db.session.add(record)
        db.session.flush()

        out_movement = post_movement(
            lot=source,
            movement_type=MOVEMENT_TRANSFER_OUT,
            quantity=qty,
            effective_date=eff,
            reference_type=REFERENCE_TRANSFER_RECORD,
            reference_id=record.id,
            notes=(
                f"Transfer to {dest.lot_code}: {reason}. {notes}" if notes
                else f"Transfer to {dest.lot_code}: {reason}"
            ),
            created_by=created_by,
            after=now,
        )
        post_movement(
            lot=dest,
            movement_type=MOVEMENT_TRANSFER_IN,
            quantity=qty,
            effective_date=eff,
            reference_type=REFERENCE_TRANSFER_RECORD,
            reference_id=record.id,
            notes=(
                f"Transfer from {source.lot_code}: {reason}. {notes}" if notes
                else f"Transfer from {source.lot_code}: {reason}"
            ),
            created_by=created_by,
            after=out_movement.recorded_at,
        )
        current_app.logger.info(
            "Transfer %s: %s %s from %s to %s",
            transfer_code, qty, source.unit, source.lot_code, dest.lot_code,
        )
        if locked_codes:
            current_app.logger.info(
                "Transfer %s corrects lots consumed by locked batches %s",
                transfer_code, ", ".join(locked_codes),
            )
        return record

    return run_in_transaction(_op)


def list_waste_records(lot_type: str, lot_id: int) -> list[WasteRecord]:
    get_lot_or_404(lot_type, lot_id)
    return (
        db.session.query(WasteRecord)
        .filter(WasteRecord.lot_type == lot_type, WasteRecord.lot_id == lot_id)
        .order_by(WasteRecord.waste_date.desc(), WasteRecord.created_at.desc(), WasteRecord.id.desc())
        .all()
    )


def list_transfer_records(lot_type: str, lot_id: int) -> list[TransferRecord]:
    get_lot_or_404(lot_type, lot_id)
    return (
        db.session.query(TransferRecord)
        .filter(
            TransferRecord.lot_type == lot_type,
            or_(TransferRecord.from_lot_id == lot_id, TransferRecord.to_lot_id == lot_id),
        )
        .order_by(TransferRecord.transfer_date.desc(), TransferRecord.created_at.desc(), TransferRecord.id.desc())
        .all()
    )
