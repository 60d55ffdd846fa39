# Overview: ORM-level guards for append-only ledger rows and locked production batches.

"""
Immutability enforcement (ORM event listeners).

Services already refuse these mutations with proper errors; the listeners are
the backstop for any code path that reaches the session directly.

Entity                  | Immutable when
------------------------|--------------------------------------------
StockMovement           | always (append-only ledger)
WasteRecord             | always
TransferRecord          | always
ProductionBatch         | once is_locked has been persisted as true
BatchConsumedMaterial   | parent batch locked (insert/update/delete)
BatchOutput             | parent batch locked (insert/update/delete)
ProcessedGood           | quantity_created, always
"""

from __future__ import annotations

from sqlalchemy import event, select
from sqlalchemy.orm.attributes import get_history

from .errors import IntegrityViolation, BatchLocked
from .models import (
    StockMovement,
    WasteRecord,
    TransferRecord,
    ProductionBatch,
    BatchConsumedMaterial,
    BatchOutput,
    ProcessedGood,
)


def _reject_update(mapper, connection, target):
    raise IntegrityViolation(
        f"{type(target).__name__} rows are append-only and cannot be updated",
        entity_id=target.id,
    )


def _reject_delete(mapper, connection, target):
    raise IntegrityViolation(
        f"{type(target).__name__} rows are append-only and cannot be deleted",
        entity_id=target.id,
    )


def _check_batch_update(mapper, connection, target):
    locked, batch_code = _persisted_lock_state(connection, target.id)
    if locked:
        raise BatchLocked(
            f"Batch {batch_code} is locked and cannot be modified",
            batch_code=batch_code,
        )


def _check_batch_delete(mapper, connection, target):
    locked, batch_code = _persisted_lock_state(connection, target.id)
    if locked:
        raise BatchLocked(
            f"Batch {batch_code} is locked and cannot be deleted",
            batch_code=batch_code,
        )


def _persisted_lock_state(connection, batch_id) -> tuple[bool, str | None]:
    row = connection.execute(
        select(ProductionBatch.is_locked, ProductionBatch.batch_code).where(ProductionBatch.id == batch_id)
    ).first()
    if row is None:
        return False, None
    return bool(row[0]), row[1]


def _check_batch_child(mapper, connection, target):
    locked, batch_code = _persisted_lock_state(connection, target.batch_id)
    if locked:
        raise BatchLocked(
            f"Batch {batch_code} is locked; its {type(target).__name__} rows cannot change",
            batch_code=batch_code,
        )


def _check_processed_good_update(mapper, connection, target):
    hist = get_history(target, "quantity_created")
    if hist.deleted:
        raise IntegrityViolation(
            "ProcessedGood.quantity_created is immutable",
            entity_id=target.id,
        )


_LISTENERS = [
    (StockMovement, "before_update", _reject_update),
    (StockMovement, "before_delete", _reject_delete),
    (WasteRecord, "before_update", _reject_update),
    (WasteRecord, "before_delete", _reject_delete),
    (TransferRecord, "before_update", _reject_update),
    (TransferRecord, "before_delete", _reject_delete),
    (ProductionBatch, "before_update", _check_batch_update),
    (ProductionBatch, "before_delete", _check_batch_delete),
    (BatchConsumedMaterial, "before_insert", _check_batch_child),
    (BatchConsumedMaterial, "before_update", _check_batch_child),
    (BatchConsumedMaterial, "before_delete", _check_batch_child),
    (BatchOutput, "before_insert", _check_batch_child),
    (BatchOutput, "before_update", _check_batch_child),
    (BatchOutput, "before_delete", _check_batch_child),
    (ProcessedGood, "before_update", _check_processed_good_update),
]


def register_immutability_listeners() -> None:
    """Attach the listeners once; safe to call from every create_app()."""
    for model, identifier, fn in _LISTENERS:
        if not event.contains(model, identifier, fn):
            event.listen(model, identifier, fn)
