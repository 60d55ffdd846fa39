"""
Lot service tests.

Verifies:
- Intake allocates a code and posts exactly one IN movement
- Protected fields cannot be edited after intake
- Archival thresholds and default listing filters
- Usage and waste/transfer lookups per lot
"""

from datetime import date
from decimal import Decimal

import pytest

from opsledger.errors import InvalidState, NotFound, ValidationError
from opsledger.models import StockMovement
from opsledger.services import lot_service, production_service, waste_transfer_service
from opsledger.services.stock_ledger_service import get_history


class TestIntake:

    def test_intake_posts_one_in_movement(self, db_session, make_lot):
        lot = make_lot("100", name="Rye", supplier_id=7, condition="dry")

        assert lot.lot_code == "LOT-RM-000"
        assert lot.quantity_received == Decimal("100")
        assert lot.quantity_available == Decimal("100")
        assert lot.condition == "dry"
        assert lot.supplier_id == 7

        history = get_history(lot.item_type, lot.id)
        assert len(history) == 1
        movement = history[0]
        assert movement.movement_type == "IN"
        assert movement.effective_date == date(2025, 3, 1)
        assert movement.reference_type == "initial_intake"
        assert movement.reference_id == lot.id
        assert movement.unit == "kg"
        assert movement.recorded_at > lot.created_at.replace(tzinfo=None)

    def test_zero_intake_posts_nothing(self, db_session, make_lot):
        lot = make_lot("0")

        assert lot.quantity_available == Decimal("0")
        assert db_session.query(StockMovement).count() == 0

    def test_recurring_product_prefix(self, db_session, make_lot):
        lot = make_lot("12", lot_type="recurring_product", unit="pcs", category="jars")

        assert lot.lot_code == "LOT-RP-000"
        assert lot.category == "jars"

    def test_explicit_code_is_kept(self, db_session, make_lot):
        assert make_lot(lot_code="lot-rm-300").lot_code == "LOT-RM-300"

    def test_missing_required_fields(self, db_session):
        with pytest.raises(ValidationError) as exc_info:
            lot_service.create_lot("raw_material", {"name": "Rye"})
        assert "quantity_received" in exc_info.value.message

    def test_negative_quantity_rejected(self, db_session, make_lot):
        with pytest.raises(ValidationError):
            make_lot("-5")

    def test_field_of_other_lot_type_rejected(self, db_session, make_lot):
        with pytest.raises(ValidationError):
            make_lot("5", category="jars")

    def test_failed_intake_leaves_no_rows(self, db_session, make_lot):
        with pytest.raises(ValidationError):
            make_lot("5", received_date=date(2999, 1, 1))

        assert lot_service.list_lots("raw_material", include_archived=True) == []
        assert db_session.query(StockMovement).count() == 0


class TestEdits:

    def test_descriptive_fields_editable(self, db_session, make_lot):
        lot = make_lot("10")
        updated = lot_service.update_lot("raw_material", lot.id, {"name": "Spelt", "storage_notes": "bin 4"})

        assert updated.name == "Spelt"
        assert updated.storage_notes == "bin 4"

    @pytest.mark.parametrize(
        "field,value",
        [
            ("quantity_received", "50"),
            ("quantity_available", "50"),
            ("unit", "g"),
            ("lot_code", "LOT-RM-999"),
            ("received_date", "2025-01-01"),
        ],
    )
    def test_protected_fields_rejected(self, db_session, make_lot, field, value):
        lot = make_lot("10")

        with pytest.raises(ValidationError) as exc_info:
            lot_service.update_lot("raw_material", lot.id, {field: value})
        assert field in exc_info.value.message

    def test_update_missing_lot(self, db_session):
        with pytest.raises(NotFound):
            lot_service.update_lot("raw_material", 404, {"name": "x"})


class TestArchive:

    def test_cannot_archive_above_threshold(self, db_session, make_lot):
        lot = make_lot("10")

        with pytest.raises(InvalidState) as exc_info:
            lot_service.archive_lot("raw_material", lot.id)
        assert exc_info.value.message == "Can only archive lots with quantity 5 or less"

    def test_archive_hides_from_default_listing(self, db_session, make_lot):
        lot = make_lot("10")
        keep = make_lot("10", name="Oats")
        waste_transfer_service.record_waste("raw_material", lot.id, "6", "spoiled", "2025-03-02")

        lot_service.archive_lot("raw_material", lot.id)

        assert [l.id for l in lot_service.list_lots("raw_material")] == [keep.id]
        assert {l.id for l in lot_service.list_lots("raw_material", include_archived=True)} == {lot.id, keep.id}

        lot_service.unarchive_lot("raw_material", lot.id)
        assert len(lot_service.list_lots("raw_material")) == 2


class TestUsage:

    def test_batch_usage_and_lock_check(self, db_session, make_lot, make_batch, complete_output):
        lot = make_lot("100")
        batch = make_batch()
        production_service.add_consumed_material(batch.id, "raw_material", lot.id, "30")
        production_service.declare_output(batch.id, complete_output())

        assert lot_service.check_lot_in_locked_batches("raw_material", lot.id) == {
            "locked": False,
            "batch_codes": [],
        }

        production_service.lock_batch(batch.id, {"qa_status": "approved"})

        usage = lot_service.fetch_batch_usage("raw_material", lot.id)
        assert len(usage) == 1
        assert usage[0]["batch_code"] == batch.batch_code
        assert usage[0]["quantity_consumed"] == "30.000"
        assert usage[0]["is_locked"] is True
        assert usage[0]["outputs"][0]["output_name"] == "Flour Mix"
        assert lot_service.check_lot_in_locked_batches("raw_material", lot.id) == {
            "locked": True,
            "batch_codes": [batch.batch_code],
        }

    def test_usage_of_unused_lot(self, db_session, make_lot):
        lot = make_lot("5")
        assert lot_service.fetch_batch_usage("raw_material", lot.id) == []

    def test_waste_transfer_history(self, db_session, make_lot):
        a = make_lot("20")
        b = make_lot("5")
        waste_transfer_service.record_waste("raw_material", a.id, "2", "spoiled", "2025-03-02")
        waste_transfer_service.transfer_between_lots("raw_material", a.id, b.id, "3", "consolidate", "2025-03-03")

        history_a = lot_service.fetch_waste_transfer_history("raw_material", a.id)
        history_b = lot_service.fetch_waste_transfer_history("raw_material", b.id)

        assert [w["quantity_wasted"] for w in history_a["waste"]] == ["2.000"]
        assert history_a["transfers"][0]["direction"] == "transfer_out"
        assert history_b["waste"] == []
        assert history_b["transfers"][0]["direction"] == "transfer_in"
