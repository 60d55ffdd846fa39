# backend/opsledger/routes/lots.py
"""
Lot intake, inspection and ledger query routes.

lot_type in the URL is raw_material or recurring_product.
"""
from flask import Blueprint, request, jsonify

from ..decorators import handle_errors, json_body
from ..errors import ValidationError
from ..services import lot_service, stock_ledger_service
from ..services.stock_ledger_service import get_lot_or_404
from ..validation import IntakeCommand, coerce_id
from opsledger.time_utils import parse_iso_date


lots_bp = Blueprint("lots", __name__, url_prefix="/api/lots")


def _query_date(name: str):
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return parse_iso_date(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a date (YYYY-MM-DD)", field=name)


@lots_bp.post("/<lot_type>")
@handle_errors("receive lot")
@json_body()
def create_lot(lot_type: str, payload: dict):
    """
    Receive a new lot and post its initial IN movement.

    Request body:
    {
        "name": str, "unit": str, "quantity_received": number, "received_date": "YYYY-MM-DD",
        "lot_code": str (optional, allocated when omitted),
        "supplier_id", "handover_to", "amount_paid", "notes", ... (optional)
    }

    Returns:
        201: Lot created
        400: Invalid request
    """
    command = IntakeCommand.from_payload(lot_type, payload)
    lot = lot_service.create_lot(lot_type, command)
    return jsonify(lot.to_dict()), 201


@lots_bp.get("/<lot_type>")
@handle_errors("list lots")
def list_lots(lot_type: str):
    include_archived = request.args.get("include_archived", "false").lower() in ("1", "true", "yes")
    lots = lot_service.list_lots(lot_type, include_archived=include_archived)
    return jsonify({"items": [lot.to_dict() for lot in lots]}), 200


@lots_bp.get("/<lot_type>/<int:lot_id>")
@handle_errors("load lot")
def get_lot(lot_type: str, lot_id: int):
    return jsonify(lot_service.get_lot(lot_type, lot_id).to_dict()), 200


@lots_bp.patch("/<lot_type>/<int:lot_id>")
@handle_errors("update lot")
@json_body()
def update_lot(lot_type: str, lot_id: int, payload: dict):
    lot = lot_service.update_lot(lot_type, lot_id, payload)
    return jsonify(lot.to_dict()), 200


@lots_bp.post("/<lot_type>/<int:lot_id>/archive")
@handle_errors("archive lot")
def archive_lot(lot_type: str, lot_id: int):
    return jsonify(lot_service.archive_lot(lot_type, lot_id).to_dict()), 200


@lots_bp.post("/<lot_type>/<int:lot_id>/unarchive")
@handle_errors("unarchive lot")
def unarchive_lot(lot_type: str, lot_id: int):
    return jsonify(lot_service.unarchive_lot(lot_type, lot_id).to_dict()), 200


@lots_bp.get("/<lot_type>/<int:lot_id>/balance")
@handle_errors("compute balance")
def get_balance(lot_type: str, lot_id: int):
    """
    As-of balance from the ledger (inclusive).

    Query params:
        as_of: YYYY-MM-DD (optional, default today)
        before_movement: movement id (optional); returns the balance just
            before that movement in canonical order instead
    """
    lot = get_lot_or_404(lot_type, lot_id)
    body = {
        "lot_type": lot_type,
        "lot_id": lot.id,
        "lot_code": lot.lot_code,
        "unit": lot.unit,
        "quantity_available": str(lot.quantity_available),
    }

    raw_movement = request.args.get("before_movement")
    if raw_movement:
        movement, balance = stock_ledger_service.balance_before_movement(
            lot_type, lot.id, coerce_id(raw_movement, "before_movement")
        )
        body.update({
            "before_movement": movement.id,
            "as_of": movement.effective_date.isoformat(),
            "balance": str(balance),
        })
        return jsonify(body), 200

    as_of = _query_date("as_of")
    balance = stock_ledger_service.get_balance(lot_type, lot.id, as_of)
    body.update({"as_of": as_of.isoformat() if as_of else None, "balance": str(balance)})
    return jsonify(body), 200


@lots_bp.get("/<lot_type>/<int:lot_id>/history")
@handle_errors("load movement history")
def get_history(lot_type: str, lot_id: int):
    get_lot_or_404(lot_type, lot_id)
    movements = stock_ledger_service.get_history(
        lot_type, lot_id, start=_query_date("start"), end=_query_date("end")
    )
    return jsonify({"items": [m.to_dict() for m in movements]}), 200


@lots_bp.get("/<lot_type>/<int:lot_id>/trail")
@handle_errors("load running balance trail")
def get_trail(lot_type: str, lot_id: int):
    get_lot_or_404(lot_type, lot_id)
    return jsonify({"items": stock_ledger_service.get_running_balance_trail(lot_type, lot_id)}), 200


@lots_bp.get("/<lot_type>/<int:lot_id>/batch-usage")
@handle_errors("load batch usage")
def get_batch_usage(lot_type: str, lot_id: int):
    return jsonify({"items": lot_service.fetch_batch_usage(lot_type, lot_id)}), 200


@lots_bp.get("/<lot_type>/<int:lot_id>/waste-transfer-history")
@handle_errors("load waste and transfer history")
def get_waste_transfer_history(lot_type: str, lot_id: int):
    return jsonify(lot_service.fetch_waste_transfer_history(lot_type, lot_id)), 200


@lots_bp.get("/<lot_type>/<int:lot_id>/locked-batches")
@handle_errors("check locked batches")
def get_locked_batches(lot_type: str, lot_id: int):
    return jsonify(lot_service.check_lot_in_locked_batches(lot_type, lot_id)), 200
