# Overview: Service-layer operations for the stock ledger; the single source of truth for lot quantities.

from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import and_, case, func, or_
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..errors import IntegrityViolation, NotFound, ValidationError
from ..models import StockMovement
from ..models.inventory import INBOUND_MOVEMENTS, OUTBOUND_MOVEMENTS, MOVEMENT_TYPES, REFERENCE_TYPES
from opsledger.time_utils import utcnow, today, parse_iso_date
from ..validation import lot_model
from .concurrency import lock_for_update
"""
Stock Ledger Invariants (authoritative)

Balance:
- balance(lot, D) = SUM(+quantity for IN/TRANSFER_IN, -quantity for CONSUMPTION/WASTE/TRANSFER_OUT)
  over movements with effective_date <= D (inclusive).
- Every movement type has a direction; an unknown type is a defect, never zero.

Ordering:
- Canonical order is (effective_date asc, recorded_at asc, id asc).
- recorded_at is insertion time and only breaks ties within one business date.
- A correction is stamped strictly after the movement it corrects (ORDERING_TICK).

Cache:
- Lot.quantity_available == balance(lot, today) after every post.
- The cache is overwritten from the ledger, never incremented in place.
- Recompute is best-effort: failures are logged and retried, then left for
  maintenance_service.reconcile_cached_balances to repair.

Append-only:
- Movements are never updated or deleted; "undo" is a new offsetting movement.
"""

QUANTITY_STEP = Decimal("0.001")
ORDERING_TICK = timedelta(milliseconds=1)


def to_quantity(value, *, field: str = "quantity", allow_zero: bool = False) -> Decimal:
    """Coerce user input to a 3-decimal quantity; rejects non-numeric and non-positive values."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required", field=field)
    try:
        qty = Decimal(str(value)).quantize(QUANTITY_STEP)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", field=field)
    if not qty.is_finite():
        raise ValidationError(f"{field} must be a number", field=field)
    if qty < 0 or (qty == 0 and not allow_zero):
        raise ValidationError(f"{field} must be greater than 0", field=field, value=qty)
    return qty


def _normalize(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(QUANTITY_STEP)


def signed_quantity(movement_type: str, quantity) -> Decimal:
    if movement_type in INBOUND_MOVEMENTS:
        return _normalize(quantity)
    if movement_type in OUTBOUND_MOVEMENTS:
        return -_normalize(quantity)
    raise IntegrityViolation(f"Unknown movement type: {movement_type}", movement_type=movement_type)


def _signed_expression():
    return case(
        (StockMovement.movement_type.in_(INBOUND_MOVEMENTS), StockMovement.quantity),
        (StockMovement.movement_type.in_(OUTBOUND_MOVEMENTS), -StockMovement.quantity),
    )


def get_lot_or_404(lot_type: str, lot_id: int, *, lock: bool = False):
    """
    Load a lot row.

    lock=True takes a row lock (SELECT ... FOR UPDATE) so that the balance
    check and the post that follows it are serialized per lot.
    """
    model = lot_model(lot_type)
    q = db.session.query(model).filter(model.id == lot_id)
    if lock:
        q = lock_for_update(q)
    lot = q.first()
    if lot is None:
        raise NotFound(f"Lot not found: {lot_type} #{lot_id}", lot_type=lot_type, lot_id=lot_id)
    return lot


def _movements_for(lot_type: str, lot_id: int):
    return db.session.query(StockMovement).filter(
        StockMovement.item_type == lot_type,
        StockMovement.item_reference == lot_id,
    )


def get_balance(lot_type: str, lot_id: int, as_of: date | None = None) -> Decimal:
    """As-of balance (inclusive of as_of). Defaults to today."""
    lot_model(lot_type)
    as_of = parse_iso_date(as_of) or today()
    total = db.session.query(func.coalesce(func.sum(_signed_expression()), 0)).filter(
        StockMovement.item_type == lot_type,
        StockMovement.item_reference == lot_id,
        StockMovement.effective_date <= as_of,
    ).scalar()
    return _normalize(total)


def balance_before(
    lot_type: str,
    lot_id: int,
    effective_date: date,
    recorded_at: datetime,
    movement_id: int | None = None,
) -> Decimal:
    """
    Balance immediately before an insertion point in canonical order.

    Counts movements on earlier dates plus those on the same date that sort
    before (recorded_at, movement_id).
    """
    lot_model(lot_type)
    effective_date = parse_iso_date(effective_date)
    same_day_before = StockMovement.recorded_at < recorded_at
    if movement_id is not None:
        same_day_before = or_(
            same_day_before,
            and_(StockMovement.recorded_at == recorded_at, StockMovement.id < movement_id),
        )
    total = db.session.query(func.coalesce(func.sum(_signed_expression()), 0)).filter(
        StockMovement.item_type == lot_type,
        StockMovement.item_reference == lot_id,
        or_(
            StockMovement.effective_date < effective_date,
            and_(StockMovement.effective_date == effective_date, same_day_before),
        ),
    ).scalar()
    return _normalize(total)


def balance_before_movement(lot_type: str, lot_id: int, movement_id: int) -> tuple[StockMovement, Decimal]:
    """The lot's balance just before one of its own movements (audit display)."""
    lot_model(lot_type)
    movement = db.session.get(StockMovement, movement_id)
    if movement is None or movement.item_type != lot_type or movement.item_reference != lot_id:
        raise NotFound(
            f"Movement #{movement_id} not found for {lot_type} #{lot_id}",
            movement_id=movement_id,
        )
    return movement, balance_before(
        lot_type, lot_id, movement.effective_date, movement.recorded_at, movement_id=movement.id
    )


def get_history(
    lot_type: str,
    lot_id: int,
    start: date | None = None,
    end: date | None = None,
) -> list[StockMovement]:
    """Movements for one lot in canonical order, optionally limited to [start, end]."""
    lot_model(lot_type)
    q = _movements_for(lot_type, lot_id)
    start = parse_iso_date(start)
    end = parse_iso_date(end)
    if start is not None:
        q = q.filter(StockMovement.effective_date >= start)
    if end is not None:
        q = q.filter(StockMovement.effective_date <= end)
    return q.order_by(
        StockMovement.effective_date.asc(),
        StockMovement.recorded_at.asc(),
        StockMovement.id.asc(),
    ).all()


def get_running_balance_trail(lot_type: str, lot_id: int) -> list[dict]:
    """Full history folded left to right; each row carries signed_quantity and balance_after."""
    balance = Decimal("0.000")
    trail = []
    for movement in get_history(lot_type, lot_id):
        delta = signed_quantity(movement.movement_type, movement.quantity)
        balance += delta
        row = movement.to_dict()
        row["signed_quantity"] = str(delta)
        row["balance_after"] = str(balance)
        trail.append(row)
    return trail


def recompute_cached_balance(lot) -> Decimal | None:
    """
    Overwrite lot.quantity_available with balance(lot, today).

    Runs in a SAVEPOINT so a failure never poisons the enclosing command.
    Returns the new balance, or None when every attempt failed.
    """
    attempts = current_app.config.get("CACHE_RECOMPUTE_ATTEMPTS", 3)
    for attempt in range(1, attempts + 1):
        try:
            with db.session.begin_nested():
                balance = get_balance(lot.item_type, lot.id, today())
                lot.quantity_available = balance
                db.session.flush()
            return balance
        except SQLAlchemyError as exc:
            current_app.logger.warning(
                "Cache recompute for lot %s failed (attempt %s/%s): %s",
                lot.lot_code, attempt, attempts, exc,
            )
    current_app.logger.error(
        "Cache recompute for lot %s gave up after %s attempts; run reconcile-balances to repair",
        lot.lot_code, attempts,
    )
    return None


def _check_effective_date(effective_date: date) -> None:
    tolerance = current_app.config.get("FUTURE_DATE_TOLERANCE_DAYS", 0)
    latest = today() + timedelta(days=tolerance)
    if effective_date > latest:
        raise ValidationError(
            "effective_date cannot be in the future",
            effective_date=effective_date.isoformat(),
        )


def post_movement(
    *,
    lot,
    movement_type: str,
    quantity,
    effective_date,
    reference_type: str | None = None,
    reference_id: int | None = None,
    notes: str | None = None,
    created_by: int | None = None,
    recorded_at: datetime | None = None,
    after: datetime | None = None,
    recompute: bool = True,
) -> StockMovement:
    """
    Append one movement for a lot (no commit; runs inside the caller's transaction).

    recorded_at defaults to now. `after` forces recorded_at strictly later than
    a given instant (used for corrections and paired movements on one date).
    """
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Unknown movement type: {movement_type}", movement_type=movement_type)
    if reference_type is not None and reference_type not in REFERENCE_TYPES:
        raise ValidationError(f"Unknown reference type: {reference_type}", reference_type=reference_type)

    qty = to_quantity(quantity)
    eff = parse_iso_date(effective_date)
    if eff is None:
        raise ValidationError("effective_date is required")
    _check_effective_date(eff)

    stamp = recorded_at or utcnow()
    if after is not None and stamp <= after:
        stamp = after + ORDERING_TICK

    movement = StockMovement(
        item_type=lot.item_type,
        item_reference=lot.id,
        lot_reference=lot.lot_code,
        movement_type=movement_type,
        quantity=qty,
        unit=lot.unit,
        effective_date=eff,
        recorded_at=stamp,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        created_by=created_by,
    )
    db.session.add(movement)
    db.session.flush()

    if recompute:
        recompute_cached_balance(lot)
    return movement


def latest_recorded_at(lot_type: str, lot_id: int) -> datetime | None:
    """Newest recorded_at on a lot; corrections are stamped after it."""
    return db.session.query(func.max(StockMovement.recorded_at)).filter(
        StockMovement.item_type == lot_type,
        StockMovement.item_reference == lot_id,
    ).scalar()
