# backend/opsledger/routes/processed_goods.py
from flask import Blueprint, request, jsonify

from ..decorators import handle_errors
from ..services import production_service


processed_goods_bp = Blueprint("processed_goods", __name__, url_prefix="/api/processed-goods")


@processed_goods_bp.get("")
@handle_errors("list processed goods")
def list_processed_goods():
    include_archived = request.args.get("include_archived", "false").lower() in ("1", "true", "yes")
    goods = production_service.list_processed_goods(include_archived=include_archived)
    return jsonify({"items": [g.to_dict() for g in goods]}), 200
