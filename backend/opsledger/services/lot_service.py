# Overview: Service-layer operations for lots; intake, descriptive edits, archival and usage queries.

from __future__ import annotations

from decimal import Decimal

from flask import current_app
from sqlalchemy import or_

from ..extensions import db
from ..errors import InvalidState, ValidationError
from ..models import (
    BatchConsumedMaterial,
    BatchOutput,
    ProductionBatch,
    WasteRecord,
    TransferRecord,
)
from ..models.inventory import ITEM_TYPE_RAW_MATERIAL, MOVEMENT_IN, REFERENCE_INITIAL_INTAKE
from ..validation import (
    IntakeCommand,
    LOT_PROTECTED_FIELDS,
    LOT_UPDATE_POLICIES,
    lot_model,
    validate_payload,
)
from opsledger.time_utils import utcnow
from . import identifier_service, stock_ledger_service
from .concurrency import run_in_transaction
from .stock_ledger_service import get_lot_or_404
"""
Lot Invariants

- A lot is created once, on intake, and never re-created.
- quantity_received is the historical intake fact; it is never edited.
- quantity_available is the ledger cache; only stock_ledger_service writes it.
- Intake with quantity_received > 0 posts exactly one IN movement
  (reference_type=initial_intake, effective_date=received_date).
- Archival hides a lot from default listings; allowed only when the cache is
  at or below ARCHIVE_MAX_AVAILABLE.
"""


def _lot_category(lot_type: str) -> str:
    if lot_type == ITEM_TYPE_RAW_MATERIAL:
        return identifier_service.CATEGORY_LOT_RAW_MATERIAL
    return identifier_service.CATEGORY_LOT_RECURRING_PRODUCT


def create_lot_inner(lot_type: str, command: IntakeCommand):
    """Intake without commit; used by create_lot and by fixtures that seed lots."""
    model = lot_model(lot_type)
    category = _lot_category(lot_type)

    if command.lot_code:
        lot_code = identifier_service.claim_explicit_code(category, command.lot_code)
    else:
        lot_code = identifier_service.allocate(category)

    now = utcnow()
    lot = model(
        lot_code=lot_code,
        name=command.name,
        unit=command.unit,
        quantity_received=command.quantity_received,
        quantity_available=Decimal("0"),
        received_date=command.received_date,
        supplier_id=command.supplier_id,
        handover_to=command.handover_to,
        amount_paid=command.amount_paid,
        notes=command.notes,
        created_by=command.created_by,
        created_at=now,
        **command.extra,
    )
    db.session.add(lot)
    db.session.flush()

    if command.quantity_received > 0:
        stock_ledger_service.post_movement(
            lot=lot,
            movement_type=MOVEMENT_IN,
            quantity=command.quantity_received,
            effective_date=command.received_date,
            reference_type=REFERENCE_INITIAL_INTAKE,
            reference_id=lot.id,
            notes=f"Initial intake: {command.name}",
            created_by=command.created_by,
            after=now,
        )
    return lot


def create_lot(lot_type: str, command: IntakeCommand | dict):
    """
    Receive a new lot.

    Accepts an IntakeCommand or a raw payload (validated before any write).
    """
    if isinstance(command, dict):
        command = IntakeCommand.from_payload(lot_type, command)

    def _op():
        lot = create_lot_inner(lot_type, command)
        current_app.logger.info("Lot %s received: %s %s", lot.lot_code, command.quantity_received, command.unit)
        return lot

    return run_in_transaction(_op)


def get_lot(lot_type: str, lot_id: int):
    return get_lot_or_404(lot_type, lot_id)


def list_lots(lot_type: str, *, include_archived: bool = False) -> list:
    model = lot_model(lot_type)
    q = db.session.query(model)
    if not include_archived:
        q = q.filter(model.is_archived.is_(False))
    return q.order_by(model.received_date.desc(), model.id.desc()).all()


def update_lot(lot_type: str, lot_id: int, changes: dict):
    """
    Edit descriptive lot fields.

    Quantities, codes, unit and received_date are the ledger's business and
    are rejected here.
    """
    changes = changes or {}
    protected = sorted(k for k in changes if k in LOT_PROTECTED_FIELDS)
    if protected:
        raise ValidationError(
            f"Protected lot fields cannot be edited: {', '.join(protected)}",
            fields=protected,
        )
    patch = validate_payload(
        model=lot_model(lot_type),
        payload=changes,
        policy=LOT_UPDATE_POLICIES[lot_type],
        partial=True,
    )

    def _op():
        lot = get_lot_or_404(lot_type, lot_id, lock=True)
        for k, v in patch.items():
            setattr(lot, k, v)
        db.session.flush()
        return lot

    return run_in_transaction(_op)


def archive_lot(lot_type: str, lot_id: int):
    limit = Decimal(str(current_app.config.get("ARCHIVE_MAX_AVAILABLE", 5)))

    def _op():
        lot = get_lot_or_404(lot_type, lot_id, lock=True)
        if lot.quantity_available > limit:
            raise InvalidState(
                f"Can only archive lots with quantity {limit.normalize()} or less",
                lot_code=lot.lot_code,
                available=lot.quantity_available,
            )
        lot.is_archived = True
        db.session.flush()
        current_app.logger.info("Lot %s archived", lot.lot_code)
        return lot

    return run_in_transaction(_op)


def unarchive_lot(lot_type: str, lot_id: int):
    def _op():
        lot = get_lot_or_404(lot_type, lot_id, lock=True)
        lot.is_archived = False
        db.session.flush()
        return lot

    return run_in_transaction(_op)


def locked_batch_codes_for_lot(lot_type: str, lot_id: int) -> list[str]:
    rows = (
        db.session.query(ProductionBatch.batch_code)
        .join(BatchConsumedMaterial, BatchConsumedMaterial.batch_id == ProductionBatch.id)
        .filter(
            BatchConsumedMaterial.item_type == lot_type,
            BatchConsumedMaterial.item_reference == lot_id,
            ProductionBatch.is_locked.is_(True),
        )
        .distinct()
        .order_by(ProductionBatch.batch_code.asc())
        .all()
    )
    return [code for (code,) in rows]


def check_lot_in_locked_batches(lot_type: str, lot_id: int) -> dict:
    """Whether any locked batch consumed from this lot, and which."""
    get_lot_or_404(lot_type, lot_id)
    codes = locked_batch_codes_for_lot(lot_type, lot_id)
    return {"locked": bool(codes), "batch_codes": codes}


def fetch_batch_usage(lot_type: str, lot_id: int) -> list[dict]:
    """Every consumption line against this lot with its batch and declared outputs, newest first."""
    get_lot_or_404(lot_type, lot_id)
    lines = (
        db.session.query(BatchConsumedMaterial, ProductionBatch)
        .join(ProductionBatch, ProductionBatch.id == BatchConsumedMaterial.batch_id)
        .filter(
            BatchConsumedMaterial.item_type == lot_type,
            BatchConsumedMaterial.item_reference == lot_id,
        )
        .order_by(BatchConsumedMaterial.created_at.desc(), BatchConsumedMaterial.id.desc())
        .all()
    )
    if not lines:
        return []

    batch_ids = {batch.id for _, batch in lines}
    outputs_by_batch: dict[int, list[dict]] = {}
    for output in (
        db.session.query(BatchOutput)
        .filter(BatchOutput.batch_id.in_(batch_ids))
        .order_by(BatchOutput.id.asc())
        .all()
    ):
        outputs_by_batch.setdefault(output.batch_id, []).append({
            "output_name": output.output_name,
            "produced_quantity": str(output.produced_quantity) if output.produced_quantity is not None else None,
            "produced_unit": output.produced_unit,
            "output_size": str(output.output_size) if output.output_size is not None else None,
            "output_size_unit": output.output_size_unit,
        })

    return [
        {
            "batch_id": batch.id,
            "batch_code": batch.batch_code,
            "batch_date": batch.batch_date.isoformat(),
            "line_id": line.id,
            "quantity_consumed": str(line.quantity_consumed),
            "unit": line.unit,
            "is_locked": batch.is_locked,
            "qa_status": batch.qa_status,
            "outputs": outputs_by_batch.get(batch.id, []),
        }
        for line, batch in lines
    ]


def fetch_waste_transfer_history(lot_type: str, lot_id: int) -> dict:
    """Waste and transfer records touching this lot, newest first."""
    get_lot_or_404(lot_type, lot_id)
    waste = (
        db.session.query(WasteRecord)
        .filter(WasteRecord.lot_type == lot_type, WasteRecord.lot_id == lot_id)
        .order_by(WasteRecord.created_at.desc(), WasteRecord.id.desc())
        .all()
    )
    transfers = (
        db.session.query(TransferRecord)
        .filter(
            TransferRecord.lot_type == lot_type,
            or_(TransferRecord.from_lot_id == lot_id, TransferRecord.to_lot_id == lot_id),
        )
        .order_by(TransferRecord.created_at.desc(), TransferRecord.id.desc())
        .all()
    )
    return {
        "waste": [w.to_dict() for w in waste],
        "transfers": [t.to_dict(perspective_lot_id=lot_id) for t in transfers],
    }
