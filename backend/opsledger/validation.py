from __future__ import annotations
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from opsledger.time_utils import parse_iso_datetime, parse_iso_date

from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import Boolean, Integer, Numeric, String, Text, Date, DateTime, JSON
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError
from .models import LOT_MODELS, ProductionBatch, BatchOutput
from .models.inventory import ITEM_TYPE_RAW_MATERIAL, ITEM_TYPE_RECURRING_PRODUCT
from .models.production import QA_STATUSES


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


_LOT_COMMON_FIELDS = {
    "lot_code", "name", "unit", "quantity_received", "received_date",
    "supplier_id", "handover_to", "amount_paid", "notes", "created_by",
}
_LOT_REQUIRED = {"name", "unit", "quantity_received", "received_date"}

LOT_CREATE_POLICIES = {
    ITEM_TYPE_RAW_MATERIAL: ModelValidationPolicy(
        writable_fields=_LOT_COMMON_FIELDS | {"condition", "storage_notes"},
        required_on_create=_LOT_REQUIRED,
    ),
    ITEM_TYPE_RECURRING_PRODUCT: ModelValidationPolicy(
        writable_fields=_LOT_COMMON_FIELDS | {"category"},
        required_on_create=_LOT_REQUIRED,
    ),
}

# Fields that define a lot's ledger identity; never editable after intake
LOT_PROTECTED_FIELDS = {
    "lot_code", "quantity_received", "quantity_available", "created_by",
    "unit", "received_date",
}

LOT_UPDATE_POLICIES = {
    lot_type: ModelValidationPolicy(writable_fields=policy.writable_fields - LOT_PROTECTED_FIELDS)
    for lot_type, policy in LOT_CREATE_POLICIES.items()
}

BATCH_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={"batch_code", "batch_date", "responsible_user_id", "notes", "created_by"},
    required_on_create={"batch_date"},
)

BATCH_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields={"batch_date", "responsible_user_id", "notes"},
)

BATCH_SAVE_POLICY = ModelValidationPolicy(
    writable_fields={
        "qa_status", "qa_reason", "notes",
        "production_start_date", "production_end_date", "custom_fields",
    },
)

OUTPUT_POLICY = ModelValidationPolicy(
    writable_fields={
        "output_name", "output_size", "output_size_unit",
        "produced_quantity", "produced_unit", "produced_goods_tag_id",
    },
)


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_integer(key: str, value: Any) -> int:
    # Strict: reject bools, floats and scientific notation
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer", field=key)
        if "e" in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)", field=key)
        if "." in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)", field=key)
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer", field=key)
    raise ValidationError(f"{key} must be an integer", field=key)


def coerce_id(value: Any, key: str) -> int:
    """Row id from a payload or caller: a positive integer, never a bool or float."""
    if value is None:
        raise ValidationError(f"{key} is required", field=key)
    number = _coerce_integer(key, value)
    if number <= 0:
        raise ValidationError(f"{key} must be a positive integer", field=key)
    return number


def coerce_optional_id(value: Any, key: str) -> Optional[int]:
    return None if value is None else coerce_id(value, key)


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return _coerce_integer(col.key, value)

    # Quantities and money: Decimal, never float
    if isinstance(coltype, Numeric):
        if isinstance(value, bool):
            raise ValidationError(f"{col.key} must be a number", field=col.key)
        try:
            num = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{col.key} must be a number", field=col.key)
        if not num.is_finite():
            raise ValidationError(f"{col.key} must be a number", field=col.key)
        if num < 0:
            raise ValidationError(f"{col.key} cannot be negative", field=col.key)
        if coltype.scale is not None:
            num = num.quantize(Decimal(1).scaleb(-coltype.scale))
        return num

    # Booleans
    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be true or false", field=col.key)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime", field=col.key)
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime", field=col.key)
            return dt
        raise ValidationError(f"{col.key} must be a datetime", field=col.key)

    # Business dates
    if isinstance(coltype, Date):
        try:
            d = parse_iso_date(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{col.key} must be a date (YYYY-MM-DD)", field=col.key)
        if d is None:
            raise ValidationError(f"{col.key} must be a date (YYYY-MM-DD)", field=col.key)
        return d

    if isinstance(coltype, JSON):
        return value

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    # Default: leave as-is
    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", missing=missing)

    cols = _columns_by_key(model)

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}", field=k)
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}", field=k)

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null", field=k)
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank", field=k)

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}", field=k)

        patch[k] = val

    return patch


def lot_model(lot_type: str):
    try:
        return LOT_MODELS[lot_type]
    except (KeyError, TypeError):
        raise ValidationError(
            f"Unknown lot type: {lot_type}. Expected one of: {', '.join(LOT_MODELS)}",
            lot_type=lot_type,
        )


def enforce_rules_qa_status(patch: dict) -> None:
    if "qa_status" in patch and patch["qa_status"] not in QA_STATUSES:
        raise ValidationError(
            f"qa_status must be one of: {', '.join(QA_STATUSES)}",
            qa_status=patch["qa_status"],
        )


def enforce_rules_production_dates(patch: dict) -> None:
    start = patch.get("production_start_date")
    end = patch.get("production_end_date")
    if start is not None and end is not None and end < start:
        raise ValidationError("production_end_date cannot be before production_start_date")


def enforce_rules_custom_fields(patch: dict) -> None:
    # [{"key": str, "value": str}, ...]
    fields = patch.get("custom_fields")
    if fields is None:
        return
    if not isinstance(fields, list):
        raise ValidationError("custom_fields must be a list of {key, value} objects")
    cleaned = []
    for item in fields:
        if not isinstance(item, dict) or not str(item.get("key") or "").strip():
            raise ValidationError("custom_fields entries need a non-empty key")
        cleaned.append({"key": str(item["key"]).strip(), "value": "" if item.get("value") is None else str(item["value"])})
    patch["custom_fields"] = cleaned


@dataclass(frozen=True)
class IntakeCommand:
    """Receipt of one lot (raw material or recurring product)."""
    name: str
    unit: str
    quantity_received: Decimal
    received_date: date
    lot_code: Optional[str] = None
    supplier_id: Optional[int] = None
    handover_to: Optional[int] = None
    amount_paid: Optional[Decimal] = None
    notes: Optional[str] = None
    created_by: Optional[int] = None
    # Lot-type specific columns (condition/storage_notes or category)
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, lot_type: str, payload: dict) -> "IntakeCommand":
        patch = validate_payload(
            model=lot_model(lot_type),
            payload=payload,
            policy=LOT_CREATE_POLICIES[lot_type],
            partial=False,
        )
        base = {k: patch.pop(k) for k in list(patch) if k in cls.__dataclass_fields__ and k != "extra"}
        return cls(**base, extra=patch)


@dataclass(frozen=True)
class OutputSpec:
    """A declared batch output. Every field is optional while the batch is a draft."""
    output_name: Optional[str] = None
    produced_quantity: Optional[Decimal] = None
    produced_unit: Optional[str] = None
    produced_goods_tag_id: Optional[str] = None
    output_size: Optional[Decimal] = None
    output_size_unit: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "OutputSpec":
        return cls(**validate_payload(model=BatchOutput, payload=payload, policy=OUTPUT_POLICY, partial=True))

    def as_patch(self) -> dict:
        return {k: getattr(self, k) for k in self.__dataclass_fields__}


@dataclass(frozen=True)
class LockBatchCommand:
    qa_status: str
    qa_reason: Optional[str] = None
    production_start_date: Optional[date] = None
    production_end_date: Optional[date] = None
    custom_fields: Optional[list] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "LockBatchCommand":
        payload = dict(payload or {})
        payload.pop("notes", None)
        patch = validate_payload(
            model=ProductionBatch,
            payload=payload,
            policy=BATCH_SAVE_POLICY,
            partial=True,
        )
        if not patch.get("qa_status"):
            raise ValidationError("qa_status is required to lock a batch")
        enforce_rules_qa_status(patch)
        enforce_rules_production_dates(patch)
        enforce_rules_custom_fields(patch)
        return cls(**patch)


_WASTE_FIELDS = {"lot_type", "lot_id", "quantity", "reason", "effective_date", "notes", "created_by"}
_TRANSFER_FIELDS = {
    "lot_type", "from_lot_id", "to_lot_id", "quantity", "reason", "effective_date", "notes", "created_by",
}


def _check_fields(payload: dict, allowed: set, required: set) -> None:
    for k in payload:
        if k not in allowed:
            raise ValidationError(f"Field not allowed: {k}", field=k)
    missing = sorted(f for f in required if payload.get(f) is None)
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", missing=missing)


def _optional_text(payload: dict, key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string", field=key)
    return value


@dataclass(frozen=True)
class WasteCommand:
    """
    Waste against one lot. quantity and effective_date stay raw here; the
    waste service parses them before any write.
    """
    lot_type: str
    lot_id: int
    quantity: Any
    reason: Optional[str] = None
    effective_date: Any = None
    notes: Optional[str] = None
    created_by: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "WasteCommand":
        _check_fields(payload, _WASTE_FIELDS, {"lot_type", "lot_id", "quantity"})
        lot_model(payload["lot_type"])
        return cls(
            lot_type=payload["lot_type"],
            lot_id=coerce_id(payload["lot_id"], "lot_id"),
            quantity=payload["quantity"],
            reason=_optional_text(payload, "reason"),
            effective_date=payload.get("effective_date"),
            notes=_optional_text(payload, "notes"),
            created_by=coerce_optional_id(payload.get("created_by"), "created_by"),
        )


@dataclass(frozen=True)
class TransferCommand:
    lot_type: str
    from_lot_id: int
    to_lot_id: int
    quantity: Any
    reason: Optional[str] = None
    effective_date: Any = None
    notes: Optional[str] = None
    created_by: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "TransferCommand":
        _check_fields(payload, _TRANSFER_FIELDS, {"lot_type", "from_lot_id", "to_lot_id", "quantity"})
        lot_model(payload["lot_type"])
        return cls(
            lot_type=payload["lot_type"],
            from_lot_id=coerce_id(payload["from_lot_id"], "from_lot_id"),
            to_lot_id=coerce_id(payload["to_lot_id"], "to_lot_id"),
            quantity=payload["quantity"],
            reason=_optional_text(payload, "reason"),
            effective_date=payload.get("effective_date"),
            notes=_optional_text(payload, "notes"),
            created_by=coerce_optional_id(payload.get("created_by"), "created_by"),
        )
