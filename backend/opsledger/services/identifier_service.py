# Overview: Service-layer operations for identifiers; the only place codes are sequenced.

"""
Identifier Allocator - human-readable, monotonically increasing codes

WHY: Lot, batch, waste and transfer codes are printed on labels and read
aloud on the floor. They must be unique, short, and sort in issue order.

ALLOCATION (per category):
1. Read the category counter (IdentifierSequence.next_number).
2. Read the highest code already present in the target table.
3. candidate = max(counter, highest + 1, previous candidate + 1)
4. Re-check the target table for the candidate right before reserving it.
5. Reserve by compare-and-set on the counter (UPDATE ... WHERE next_number = observed).
6. On any conflict, retry with the next candidate, at most IDENTIFIER_MAX_RETRIES
   times, then raise AllocationExhausted.

The counter makes concurrent allocators skip each other's reservations even
before the reserving transaction inserts its row; the table re-check covers
codes created outside the allocator (imports, explicit codes).
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import AllocationExhausted, ValidationError
from ..models import (
    IdentifierSequence,
    RawMaterial,
    RecurringProduct,
    ProductionBatch,
    WasteRecord,
    TransferRecord,
)


@dataclass(frozen=True)
class IdentifierCategory:
    name: str
    prefix: str
    width: int
    first_number: int
    model: type
    column: str

    def format(self, number: int) -> str:
        return f"{self.prefix}{number:0{self.width}d}"

    def parse(self, code: str | None) -> int | None:
        if not code or not code.startswith(self.prefix):
            return None
        suffix = code[len(self.prefix):]
        if not suffix.isdigit():
            return None
        return int(suffix)


CATEGORY_LOT_RAW_MATERIAL = "lot-raw-material"
CATEGORY_LOT_RECURRING_PRODUCT = "lot-recurring-product"
CATEGORY_BATCH = "batch"
CATEGORY_WASTE = "waste"
CATEGORY_TRANSFER = "transfer"

CATEGORIES = {
    CATEGORY_LOT_RAW_MATERIAL: IdentifierCategory(
        CATEGORY_LOT_RAW_MATERIAL, "LOT-RM-", 3, 0, RawMaterial, "lot_code"
    ),
    CATEGORY_LOT_RECURRING_PRODUCT: IdentifierCategory(
        CATEGORY_LOT_RECURRING_PRODUCT, "LOT-RP-", 3, 0, RecurringProduct, "lot_code"
    ),
    CATEGORY_BATCH: IdentifierCategory(
        CATEGORY_BATCH, "BATCH-", 4, 1, ProductionBatch, "batch_code"
    ),
    CATEGORY_WASTE: IdentifierCategory(
        CATEGORY_WASTE, "WASTE-", 4, 1, WasteRecord, "waste_code"
    ),
    CATEGORY_TRANSFER: IdentifierCategory(
        CATEGORY_TRANSFER, "TRANSFER-", 4, 1, TransferRecord, "transfer_code"
    ),
}


def get_category(category: str) -> IdentifierCategory:
    try:
        return CATEGORIES[category]
    except KeyError:
        raise ValidationError(f"Unknown identifier category: {category}", category=category)


def normalize_code(value: str) -> str:
    """Normalize to uppercase, no spaces."""
    return value.upper().strip().replace(" ", "")


def _highest_existing_number(cat: IdentifierCategory) -> int | None:
    """
    Highest numeric suffix present in the target table.

    Codes are zero-padded to a minimum width, so ordering by (length, code)
    descending finds the numerically largest code even past the pad width.
    """
    column = getattr(cat.model, cat.column)
    rows = (
        db.session.query(column)
        .filter(column.like(f"{cat.prefix}%"))
        .order_by(func.length(column).desc(), column.desc())
        .limit(20)
        .all()
    )
    for (code,) in rows:
        number = cat.parse(code)
        if number is not None:
            return number
    return None


def _code_exists(cat: IdentifierCategory, code: str) -> bool:
    column = getattr(cat.model, cat.column)
    return db.session.query(column).filter(column == code).first() is not None


def _find_sequence(cat: IdentifierCategory) -> IdentifierSequence | None:
    return db.session.query(IdentifierSequence).filter_by(category=cat.name).first()


def _sequence_row(cat: IdentifierCategory) -> IdentifierSequence:
    seq = _find_sequence(cat)
    if seq is not None:
        return seq

    # First allocation in this category. A concurrent allocator may insert the
    # same row first, in which case only the savepoint is rolled back.
    try:
        with db.session.begin_nested():
            seq = IdentifierSequence(category=cat.name, next_number=cat.first_number)
            db.session.add(seq)
    except IntegrityError:
        current_app.logger.info("Identifier counter for %s created concurrently; re-reading", cat.name)
        seq = _find_sequence(cat)
        if seq is None:
            raise
    return seq


def _reserve(cat: IdentifierCategory, observed: int, candidate: int) -> bool:
    """Compare-and-set: advance the counter past candidate iff nobody moved it."""
    result = db.session.execute(
        update(IdentifierSequence)
        .where(
            IdentifierSequence.category == cat.name,
            IdentifierSequence.next_number == observed,
        )
        .values(next_number=candidate + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def allocate(category: str, *, max_retries: int | None = None) -> str:
    """
    Allocate the next code for a category inside the caller's transaction.

    Raises AllocationExhausted after max_retries conflicting attempts.
    """
    cat = get_category(category)
    if max_retries is None:
        max_retries = current_app.config.get("IDENTIFIER_MAX_RETRIES", 10)

    floor = cat.first_number
    for attempt in range(max_retries):
        seq = _sequence_row(cat)
        db.session.refresh(seq)
        observed = seq.next_number

        highest = _highest_existing_number(cat)
        candidate = max(observed, floor)
        if highest is not None:
            candidate = max(candidate, highest + 1)

        code = cat.format(candidate)
        if _code_exists(cat, code):
            current_app.logger.warning(
                "Identifier %s already exists, retrying (attempt %s/%s)", code, attempt + 1, max_retries
            )
            floor = candidate + 1
            continue

        if not _reserve(cat, observed, candidate):
            current_app.logger.warning(
                "Identifier counter for %s moved while reserving %s, retrying (attempt %s/%s)",
                cat.name, code, attempt + 1, max_retries,
            )
            floor = candidate + 1
            continue

        return code

    raise AllocationExhausted(
        f"Failed to generate unique {cat.name} identifier after {max_retries} attempts",
        category=cat.name,
    )


def claim_explicit_code(category: str, code: str) -> str:
    """
    Validate a caller-supplied code (e.g. an imported lot label).

    The code must be unused; if it falls in the allocator's numeric range the
    counter is moved past it so later allocations do not collide.
    """
    cat = get_category(category)
    normalized = normalize_code(code)
    if not normalized:
        raise ValidationError("Identifier cannot be blank", category=cat.name)
    if _code_exists(cat, normalized):
        raise ValidationError(
            f"Identifier '{normalized}' already exists. Use a different code or let the system generate one.",
            code=normalized,
        )

    number = cat.parse(normalized)
    if number is not None:
        seq = _sequence_row(cat)
        db.session.execute(
            update(IdentifierSequence)
            .where(
                IdentifierSequence.category == cat.name,
                IdentifierSequence.next_number <= number,
            )
            .values(next_number=number + 1)
            .execution_options(synchronize_session=False)
        )
        db.session.expire(seq)
    return normalized
