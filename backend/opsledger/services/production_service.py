# Overview: Service-layer operations for production batches; the draft -> locked state machine.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..errors import BatchLocked, InsufficientQuantity, InvalidState, NotFound, ValidationError
from ..models import BatchConsumedMaterial, BatchOutput, ProcessedGood, ProductionBatch
from ..models.inventory import MOVEMENT_CONSUMPTION, MOVEMENT_IN, REFERENCE_PRODUCTION_BATCH
from ..models.production import LOCKABLE_QA_STATUSES, QA_APPROVED, QA_PENDING
from ..validation import (
    coerce_id,
    coerce_optional_id,
    BATCH_SAVE_POLICY,
    BATCH_UPDATE_POLICY,
    LockBatchCommand,
    OUTPUT_POLICY,
    OutputSpec,
    enforce_rules_custom_fields,
    enforce_rules_production_dates,
    enforce_rules_qa_status,
    validate_payload,
)
from opsledger.time_utils import utcnow, today
from . import identifier_service
from .concurrency import lock_for_update, run_in_transaction
from .stock_ledger_service import get_balance, get_lot_or_404, latest_recorded_at, post_movement, to_quantity
"""
Production Batch State Machine (authoritative)

    DRAFT --(lock, qa_status in {approved, rejected})--> LOCKED

DRAFT:
- Consumed-material lines and outputs may be added, edited and removed.
- Adding a line posts a CONSUMPTION movement dated batch_date, validated
  against the lot's balance as of batch_date.
- Removing a line posts a reversal IN movement; the CONSUMPTION row is never
  touched. Deleting the batch reverses every line the same way.
- qa_status may be saved as pending/approved/rejected/hold (save_batch).

LOCKING:
- pending and hold can never lock (InvalidState).
- Every output needs name, quantity > 0, unit and goods tag.
- approved: one ProcessedGood per output, quantity_created = produced_quantity.
- rejected: no ProcessedGood.

LOCKED:
- One-way. The batch, its lines and its outputs are immutable and the batch
  can never be deleted (BatchLocked).
"""


def get_batch(batch_id: int, *, lock: bool = False) -> ProductionBatch:
    q = db.session.query(ProductionBatch).filter(ProductionBatch.id == batch_id)
    if lock:
        q = lock_for_update(q)
    batch = q.first()
    if batch is None:
        raise NotFound(f"Production batch not found: #{batch_id}", batch_id=batch_id)
    return batch


def _require_draft(batch: ProductionBatch, action: str) -> None:
    if batch.is_locked:
        raise BatchLocked(
            f"Batch {batch.batch_code} is locked; cannot {action}",
            batch_code=batch.batch_code,
        )


def list_batches() -> list[ProductionBatch]:
    return (
        db.session.query(ProductionBatch)
        .order_by(ProductionBatch.batch_date.desc(), ProductionBatch.created_at.desc(), ProductionBatch.id.desc())
        .all()
    )


def get_batch_detail(batch_id: int) -> dict:
    batch = get_batch(batch_id)
    data = batch.to_dict()
    data["materials"] = [m.to_dict() for m in batch.materials]
    data["outputs"] = [o.to_dict() for o in batch.outputs]
    data["processed_goods"] = [g.to_dict() for g in batch.processed_goods]
    return data


def create_batch(
    batch_date,
    *,
    responsible_user_id: int | None = None,
    notes: str | None = None,
    batch_code: str | None = None,
    created_by: int | None = None,
) -> ProductionBatch:
    patch = validate_payload(
        model=ProductionBatch,
        payload={"batch_date": batch_date},
        policy=BATCH_UPDATE_POLICY,
        partial=True,
    )

    def _op():
        if batch_code:
            code = identifier_service.claim_explicit_code(identifier_service.CATEGORY_BATCH, batch_code)
        else:
            code = identifier_service.allocate(identifier_service.CATEGORY_BATCH)
        now = utcnow()
        batch = ProductionBatch(
            batch_code=code,
            batch_date=patch["batch_date"],
            responsible_user_id=responsible_user_id,
            notes=notes,
            qa_status=QA_PENDING,
            is_locked=False,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        db.session.add(batch)
        db.session.flush()
        current_app.logger.info("Batch %s created for %s", code, batch.batch_date)
        return batch

    return run_in_transaction(_op)


def update_batch(batch_id: int, changes: dict) -> ProductionBatch:
    """Descriptive edits of a draft batch. batch_date is fixed once materials are consumed."""
    patch = validate_payload(model=ProductionBatch, payload=changes, policy=BATCH_UPDATE_POLICY, partial=True)

    def _op():
        batch = get_batch(batch_id, lock=True)
        _require_draft(batch, "edit it")
        if "batch_date" in patch and patch["batch_date"] != batch.batch_date and batch.materials:
            raise InvalidState(
                "batch_date cannot change after materials have been consumed; remove them first",
                batch_code=batch.batch_code,
            )
        for k, v in patch.items():
            setattr(batch, k, v)
        db.session.flush()
        return batch

    return run_in_transaction(_op)


def save_batch(batch_id: int, changes: dict) -> ProductionBatch:
    """Save draft progress (QA status incl. hold, production dates, custom fields) without locking."""
    patch = validate_payload(model=ProductionBatch, payload=changes, policy=BATCH_SAVE_POLICY, partial=True)
    enforce_rules_qa_status(patch)
    enforce_rules_custom_fields(patch)

    def _op():
        batch = get_batch(batch_id, lock=True)
        _require_draft(batch, "save changes")
        merged = {
            "production_start_date": batch.production_start_date,
            "production_end_date": batch.production_end_date,
            **patch,
        }
        enforce_rules_production_dates(merged)
        for k, v in patch.items():
            setattr(batch, k, v)
        db.session.flush()
        return batch

    return run_in_transaction(_op)


def add_consumed_material(
    batch_id: int,
    lot_type: str,
    lot_id: int,
    quantity,
    *,
    created_by: int | None = None,
) -> BatchConsumedMaterial:
    """Consume from a lot into a draft batch; posts CONSUMPTION dated batch_date."""
    lot_id = coerce_id(lot_id, "lot_id")
    created_by = coerce_optional_id(created_by, "created_by")
    qty = to_quantity(quantity)

    def _op():
        batch = get_batch(batch_id, lock=True)
        _require_draft(batch, "add materials")
        lot = get_lot_or_404(lot_type, lot_id, lock=True)

        available = get_balance(lot_type, lot.id, batch.batch_date)
        if available < qty:
            raise InsufficientQuantity(
                f"Insufficient quantity available in {lot.lot_code}. Available: {available}, Requested: {qty}",
                lot_code=lot.lot_code,
                requested=qty,
                available=available,
                unit=lot.unit,
                batch_code=batch.batch_code,
            )

        movement = post_movement(
            lot=lot,
            movement_type=MOVEMENT_CONSUMPTION,
            quantity=qty,
            effective_date=batch.batch_date,
            reference_type=REFERENCE_PRODUCTION_BATCH,
            reference_id=batch.id,
            notes=f"Consumed in production batch {batch.batch_code}",
            created_by=created_by,
        )
        line = BatchConsumedMaterial(
            batch_id=batch.id,
            item_type=lot_type,
            item_reference=lot.id,
            lot_code=lot.lot_code,
            material_name=lot.name,
            quantity_consumed=qty,
            unit=lot.unit,
            consumption_movement_id=movement.id,
            created_at=movement.recorded_at,
        )
        db.session.add(line)
        db.session.flush()
        db.session.expire(batch, ["materials"])
        return line

    return run_in_transaction(_op)


def _post_reversal(batch: ProductionBatch, line: BatchConsumedMaterial, notes: str):
    lot = get_lot_or_404(line.item_type, line.item_reference, lock=True)
    return post_movement(
        lot=lot,
        movement_type=MOVEMENT_IN,
        quantity=line.quantity_consumed,
        effective_date=batch.batch_date,
        reference_type=REFERENCE_PRODUCTION_BATCH,
        reference_id=batch.id,
        notes=notes,
        after=latest_recorded_at(lot.item_type, lot.id),
    )


def remove_consumed_material(batch_id: int, line_id: int) -> None:
    """Undo one consumption line with a reversal IN movement."""
    def _op():
        batch = get_batch(batch_id, lock=True)
        _require_draft(batch, "remove materials")
        line = (
            db.session.query(BatchConsumedMaterial)
            .filter(BatchConsumedMaterial.id == line_id, BatchConsumedMaterial.batch_id == batch.id)
            .first()
        )
        if line is None:
            raise NotFound(
                f"Consumed material line #{line_id} not found in batch {batch.batch_code}",
                batch_code=batch.batch_code,
                line_id=line_id,
            )
        _post_reversal(batch, line, f"Reversal: Removed from production batch {batch.batch_code}")
        db.session.delete(line)
        db.session.flush()
        db.session.expire(batch, ["materials"])

    return run_in_transaction(_op)


def _get_output(batch: ProductionBatch, output_id: int) -> BatchOutput:
    output = (
        db.session.query(BatchOutput)
        .filter(BatchOutput.id == output_id, BatchOutput.batch_id == batch.id)
        .first()
    )
    if output is None:
        raise NotFound(
            f"Output #{output_id} not found in batch {batch.batch_code}",
            batch_code=batch.batch_code,
            output_id=output_id,
        )
    return output


def declare_output(batch_id: int, spec: OutputSpec | dict) -> BatchOutput:
    """Declare an output on a draft batch. No ledger effect."""
    if isinstance(spec, dict):
        spec = OutputSpec.from_payload(spec)

    def _op():
        batch = get_batch(batch_id, lock=True)
        _require_draft(batch, "declare outputs")
        now = utcnow()
        output = BatchOutput(batch_id=batch.id, created_at=now, updated_at=now, **spec.as_patch())
        db.session.add(output)
        db.session.flush()
        db.session.expire(batch, ["outputs"])
        return output

    return run_in_transaction(_op)


def update_output(batch_id: int, output_id: int, changes: dict) -> BatchOutput:
    patch = validate_payload(model=BatchOutput, payload=changes, policy=OUTPUT_POLICY, partial=True)

    def _op():
        batch = get_batch(batch_id, lock=True)
        _require_draft(batch, "edit outputs")
        output = _get_output(batch, output_id)
        for k, v in patch.items():
            setattr(output, k, v)
        db.session.flush()
        return output

    return run_in_transaction(_op)


def remove_output(batch_id: int, output_id: int) -> None:
    def _op():
        batch = get_batch(batch_id, lock=True)
        _require_draft(batch, "remove outputs")
        db.session.delete(_get_output(batch, output_id))
        db.session.flush()
        db.session.expire(batch, ["outputs"])

    return run_in_transaction(_op)


def lock_batch(batch_id: int, command: LockBatchCommand | dict) -> tuple[ProductionBatch, list[ProcessedGood]]:
    """
    Lock a draft batch with its final QA disposition.

    Returns the batch and the ProcessedGood rows created (empty unless approved).
    """
    if isinstance(command, dict):
        command = LockBatchCommand.from_payload(command)

    def _op():
        batch = get_batch(batch_id, lock=True)
        if batch.is_locked:
            raise BatchLocked(
                f"Batch {batch.batch_code} is already completed and locked",
                batch_code=batch.batch_code,
            )
        if command.qa_status not in LOCKABLE_QA_STATUSES:
            raise InvalidState(
                f"Cannot lock batch {batch.batch_code}: QA status '{command.qa_status}' is not final "
                f"(must be one of: {', '.join(LOCKABLE_QA_STATUSES)})",
                batch_code=batch.batch_code,
                qa_status=command.qa_status,
            )

        outputs = list(batch.outputs)
        if not outputs:
            raise InvalidState(
                f"Cannot lock batch {batch.batch_code}: no outputs defined",
                batch_code=batch.batch_code,
            )
        for output in outputs:
            missing = output.missing_fields()
            if missing:
                raise InvalidState(
                    f"Cannot lock batch {batch.batch_code}: output "
                    f"\"{output.output_name or 'Unnamed'}\" is missing required fields",
                    batch_code=batch.batch_code,
                    output_id=output.id,
                    missing=missing,
                )

        start = command.production_start_date or batch.production_start_date
        end = command.production_end_date or batch.production_end_date
        enforce_rules_production_dates({"production_start_date": start, "production_end_date": end})

        batch.qa_status = command.qa_status
        batch.production_start_date = start
        batch.production_end_date = end
        if command.qa_reason is not None:
            batch.qa_reason = command.qa_reason or None
        if command.custom_fields:
            batch.custom_fields = command.custom_fields
        batch.is_locked = True
        batch.locked_at = utcnow()
        db.session.flush()

        goods = []
        if command.qa_status == QA_APPROVED:
            production_date = end or today()
            for output in outputs:
                good = ProcessedGood(
                    batch_id=batch.id,
                    batch_output_id=output.id,
                    batch_code=batch.batch_code,
                    product_type=output.output_name,
                    quantity_created=output.produced_quantity,
                    quantity_available=output.produced_quantity,
                    unit=output.produced_unit,
                    production_date=production_date,
                    qa_status=command.qa_status,
                    output_size=output.output_size,
                    output_size_unit=output.output_size_unit,
                    produced_goods_tag_id=output.produced_goods_tag_id,
                    custom_fields=batch.custom_fields,
                    created_at=batch.locked_at,
                )
                db.session.add(good)
                goods.append(good)
            db.session.flush()

        current_app.logger.info(
            "Batch %s locked as %s; %s processed good(s) created",
            batch.batch_code, command.qa_status, len(goods),
        )
        return batch, goods

    return run_in_transaction(_op)


def delete_batch(batch_id: int) -> None:
    """Delete a draft batch, reversing every consumption line first."""
    def _op():
        batch = get_batch(batch_id, lock=True)
        if batch.is_locked:
            raise BatchLocked(
                f"Cannot delete locked batch {batch.batch_code}. Locked batches cannot be deleted.",
                batch_code=batch.batch_code,
            )
        code = batch.batch_code
        for line in list(batch.materials):
            _post_reversal(batch, line, f"Reversal: Batch {code} deleted")
        db.session.delete(batch)
        db.session.flush()
        current_app.logger.info("Batch %s deleted", code)

    return run_in_transaction(_op)


def list_processed_goods(*, include_archived: bool = False) -> list[ProcessedGood]:
    q = db.session.query(ProcessedGood)
    if not include_archived:
        q = q.filter(ProcessedGood.is_archived.is_(False))
    return q.order_by(ProcessedGood.production_date.desc(), ProcessedGood.id.desc()).all()
