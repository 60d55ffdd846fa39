# backend/opsledger/routes/waste_transfer.py
"""
Waste and lot-to-lot transfer routes.
"""
from flask import Blueprint, jsonify

from ..decorators import handle_errors, json_body
from ..services import waste_transfer_service
from ..validation import TransferCommand, WasteCommand


waste_transfer_bp = Blueprint("waste_transfer", __name__, url_prefix="/api")


@waste_transfer_bp.post("/waste")
@handle_errors("record waste")
@json_body()
def record_waste(payload: dict):
    """
    Record waste against a lot.

    Request body:
    {
        "lot_type": "raw_material" | "recurring_product",
        "lot_id": int,
        "quantity": number,
        "reason": str,
        "effective_date": "YYYY-MM-DD" (optional, default today),
        "notes": str (optional),
        "created_by": int (optional)
    }

    Returns:
        201: Waste recorded
        400: Invalid request
        404: Lot not found
        409: Quantity exceeds as-of balance
    """
    cmd = WasteCommand.from_payload(payload)
    record = waste_transfer_service.record_waste(
        cmd.lot_type,
        cmd.lot_id,
        cmd.quantity,
        cmd.reason,
        cmd.effective_date,
        notes=cmd.notes,
        created_by=cmd.created_by,
    )
    return jsonify(record.to_dict()), 201


@waste_transfer_bp.post("/transfers")
@handle_errors("transfer between lots")
@json_body()
def transfer_between_lots(payload: dict):
    """
    Move quantity between two lots of the same type and unit.

    Request body:
    {
        "lot_type": "raw_material" | "recurring_product",
        "from_lot_id": int,
        "to_lot_id": int,
        "quantity": number,
        "reason": str,
        "effective_date": "YYYY-MM-DD" (optional, default today),
        "notes": str (optional),
        "created_by": int (optional)
    }

    Returns:
        201: Transfer recorded
        400: Invalid request or unit mismatch
        404: Lot not found
        409: Same lot, or quantity exceeds the source's as-of balance
    """
    cmd = TransferCommand.from_payload(payload)
    record = waste_transfer_service.transfer_between_lots(
        cmd.lot_type,
        cmd.from_lot_id,
        cmd.to_lot_id,
        cmd.quantity,
        cmd.reason,
        cmd.effective_date,
        notes=cmd.notes,
        created_by=cmd.created_by,
    )
    return jsonify(record.to_dict()), 201
