# Overview: Service-layer operations for maintenance; repairs the lot balance cache from the ledger.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import LOT_MODELS
from opsledger.time_utils import today
from .concurrency import run_in_transaction
from .stock_ledger_service import get_balance


def reconcile_cached_balances(*, fix: bool = False) -> list[dict]:
    """
    Compare every lot's quantity_available with its ledger balance as of today.

    Returns one entry per divergent lot. With fix=True the cache is overwritten
    from the ledger (the repair path for best-effort recompute failures).
    """
    as_of = today()

    def _op():
        divergent = []
        for lot_type, model in LOT_MODELS.items():
            for lot in db.session.query(model).order_by(model.id.asc()).all():
                ledger = get_balance(lot_type, lot.id, as_of)
                cached = lot.quantity_available
                if cached is not None and ledger == cached:
                    continue
                divergent.append({
                    "lot_type": lot_type,
                    "lot_id": lot.id,
                    "lot_code": lot.lot_code,
                    "cached": str(cached) if cached is not None else None,
                    "ledger": str(ledger),
                })
                if fix:
                    lot.quantity_available = ledger
        if fix and divergent:
            db.session.flush()
            current_app.logger.warning("Repaired %s divergent lot balance cache(s)", len(divergent))
        return divergent

    return run_in_transaction(_op)
