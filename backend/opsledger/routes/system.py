# backend/opsledger/routes/system.py
"""
System health endpoint.

Reports database connectivity and a summary of ledger tables for
deployment debugging.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy import text
from ..extensions import db
from ..models import RawMaterial, RecurringProduct, StockMovement, ProductionBatch
from opsledger.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_ledger_health() -> dict:
    """Row counts of the ledger tables; fails if the schema is missing."""
    start_time = time.time()
    try:
        details = {
            "raw_material_lots": db.session.query(RawMaterial).count(),
            "recurring_product_lots": db.session.query(RecurringProduct).count(),
            "stock_movements": db.session.query(StockMovement).count(),
            "production_batches": db.session.query(ProductionBatch).count(),
        }
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2), "details": details}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Ledger health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Ledger tables unavailable",
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: All systems healthy
    - 503: One or more systems unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    ledger_health = check_ledger_health()

    unhealthy = any(c["status"] == "unhealthy" for c in (database_health, ledger_health))
    if unhealthy:
        db.session.rollback()

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": "unhealthy" if unhealthy else "healthy",
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "ledger": ledger_health,
        },
    }

    return response, 503 if unhealthy else 200
