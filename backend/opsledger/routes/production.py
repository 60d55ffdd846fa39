# backend/opsledger/routes/production.py
"""
Production batch routes: draft editing, consumption, outputs and locking.
"""
from flask import Blueprint, jsonify

from ..decorators import handle_errors, json_body
from ..models import ProductionBatch
from ..services import production_service
from ..validation import BATCH_CREATE_POLICY, LockBatchCommand, OutputSpec, validate_payload


production_bp = Blueprint("production", __name__, url_prefix="/api/batches")


@production_bp.post("")
@handle_errors("create batch")
@json_body()
def create_batch(payload: dict):
    """
    Create a draft batch.

    Request body:
    {
        "batch_date": "YYYY-MM-DD",
        "responsible_user_id": int (optional),
        "notes": str (optional),
        "batch_code": str (optional, allocated when omitted)
    }
    """
    patch = validate_payload(model=ProductionBatch, payload=payload, policy=BATCH_CREATE_POLICY, partial=False)
    batch = production_service.create_batch(patch.pop("batch_date"), **patch)
    return jsonify(batch.to_dict()), 201


@production_bp.get("")
@handle_errors("list batches")
def list_batches():
    return jsonify({"items": [b.to_dict() for b in production_service.list_batches()]}), 200


@production_bp.get("/<int:batch_id>")
@handle_errors("load batch")
def get_batch(batch_id: int):
    return jsonify(production_service.get_batch_detail(batch_id)), 200


@production_bp.patch("/<int:batch_id>")
@handle_errors("update batch")
@json_body()
def update_batch(batch_id: int, payload: dict):
    return jsonify(production_service.update_batch(batch_id, payload).to_dict()), 200


@production_bp.delete("/<int:batch_id>")
@handle_errors("delete batch")
def delete_batch(batch_id: int):
    """
    Delete a draft batch. Every consumption line is reversed first.

    Returns:
        204: Deleted
        409: Batch is locked
    """
    production_service.delete_batch(batch_id)
    return "", 204


@production_bp.post("/<int:batch_id>/save")
@handle_errors("save batch")
@json_body()
def save_batch(batch_id: int, payload: dict):
    return jsonify(production_service.save_batch(batch_id, payload).to_dict()), 200


@production_bp.post("/<int:batch_id>/materials")
@handle_errors("add consumed material")
@json_body()
def add_material(batch_id: int, payload: dict):
    """
    Consume from a lot into this batch.

    Request body:
    {
        "lot_type": "raw_material" | "recurring_product",
        "lot_id": int,
        "quantity": number
    }

    Returns:
        201: Line added (CONSUMPTION posted)
        409: Batch locked, or quantity exceeds the balance as of batch_date
    """
    line = production_service.add_consumed_material(
        batch_id,
        payload["lot_type"],
        payload["lot_id"],
        payload["quantity"],
        created_by=payload.get("created_by"),
    )
    return jsonify(line.to_dict()), 201


@production_bp.delete("/<int:batch_id>/materials/<int:line_id>")
@handle_errors("remove consumed material")
def remove_material(batch_id: int, line_id: int):
    production_service.remove_consumed_material(batch_id, line_id)
    return "", 204


@production_bp.post("/<int:batch_id>/outputs")
@handle_errors("declare output")
@json_body()
def declare_output(batch_id: int, payload: dict):
    output = production_service.declare_output(batch_id, OutputSpec.from_payload(payload))
    return jsonify(output.to_dict()), 201


@production_bp.patch("/<int:batch_id>/outputs/<int:output_id>")
@handle_errors("update output")
@json_body()
def update_output(batch_id: int, output_id: int, payload: dict):
    return jsonify(production_service.update_output(batch_id, output_id, payload).to_dict()), 200


@production_bp.delete("/<int:batch_id>/outputs/<int:output_id>")
@handle_errors("remove output")
def remove_output(batch_id: int, output_id: int):
    production_service.remove_output(batch_id, output_id)
    return "", 204


@production_bp.post("/<int:batch_id>/lock")
@handle_errors("lock batch")
@json_body()
def lock_batch(batch_id: int, payload: dict):
    """
    Lock a batch with its final QA status.

    Request body:
    {
        "qa_status": "approved" | "rejected",
        "qa_reason": str (optional),
        "production_start_date": "YYYY-MM-DD" (optional),
        "production_end_date": "YYYY-MM-DD" (optional),
        "custom_fields": [{"key": str, "value": str}] (optional)
    }

    Returns:
        200: Locked; processed_goods lists the goods created (empty unless approved)
        409: Already locked, QA status pending/hold, or incomplete outputs
    """
    batch, goods = production_service.lock_batch(batch_id, LockBatchCommand.from_payload(payload))
    return jsonify({
        "batch": batch.to_dict(),
        "processed_goods": [g.to_dict() for g in goods],
    }), 200
