"""
HTTP API tests.

Verifies:
- Happy paths for lots, ledger queries, waste, transfers and batches
- Error taxonomy maps to status codes with context in the body
- Malformed bodies are answered with 400
"""

import pytest


def _receive(client, quantity="100", lot_type="raw_material", **extra):
    payload = {
        "name": "Wheat Flour",
        "unit": "kg",
        "quantity_received": quantity,
        "received_date": "2025-03-01",
        **extra,
    }
    resp = client.post(f"/api/lots/{lot_type}", json=payload)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()


# =============================================================================
# SYSTEM
# =============================================================================


class TestHealth:

    def test_health(self, client, db_session):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["status"] == "healthy"
        assert body["checks"]["ledger"]["details"]["stock_movements"] == 0

    def test_cors_for_allowed_origin(self, client, db_session):
        resp = client.get("/health", headers={"Origin": "http://localhost:5173"})
        assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:5173"

        resp = client.get("/health", headers={"Origin": "http://evil.example"})
        assert "Access-Control-Allow-Origin" not in resp.headers


# =============================================================================
# LOTS AND LEDGER QUERIES
# =============================================================================


class TestLots:

    def test_receive_and_query(self, client, db_session):
        lot = _receive(client, "100")
        assert lot["lot_code"] == "LOT-RM-000"
        assert lot["quantity_available"] == "100.000"

        resp = client.get(f"/api/lots/raw_material/{lot['id']}/balance?as_of=2025-02-28")
        assert resp.status_code == 200
        assert resp.get_json()["balance"] == "0.000"

        resp = client.get(f"/api/lots/raw_material/{lot['id']}/history")
        items = resp.get_json()["items"]
        assert [m["movement_type"] for m in items] == ["IN"]

        resp = client.get(f"/api/lots/raw_material/{lot['id']}/trail")
        assert resp.get_json()["items"][0]["balance_after"] == "100.000"

        resp = client.get("/api/lots/raw_material")
        assert [l["lot_code"] for l in resp.get_json()["items"]] == ["LOT-RM-000"]

    def test_protected_field_edit_rejected(self, client, db_session):
        lot = _receive(client)
        resp = client.patch(f"/api/lots/raw_material/{lot['id']}", json={"quantity_received": "5"})
        assert resp.status_code == 400
        assert resp.get_json()["fields"] == ["quantity_received"]

    def test_archive_threshold(self, client, db_session):
        lot = _receive(client, "6")
        resp = client.post(f"/api/lots/raw_material/{lot['id']}/archive")
        assert resp.status_code == 409

        small = _receive(client, "5")
        resp = client.post(f"/api/lots/raw_material/{small['id']}/archive")
        assert resp.status_code == 200
        assert resp.get_json()["is_archived"] is True

    def test_unknown_lot_type(self, client, db_session):
        resp = client.get("/api/lots/pallet")
        assert resp.status_code == 400

    def test_missing_lot(self, client, db_session):
        resp = client.get("/api/lots/raw_material/999")
        assert resp.status_code == 404
        assert resp.get_json()["lot_id"] == 999

    def test_bad_as_of(self, client, db_session):
        lot = _receive(client)
        resp = client.get(f"/api/lots/raw_material/{lot['id']}/balance?as_of=yesterday")
        assert resp.status_code == 400

    def test_balance_before_movement(self, client, db_session):
        lot = _receive(client, "100")
        other = _receive(client, "7")
        resp = client.post("/api/waste", json={
            "lot_type": "raw_material",
            "lot_id": lot["id"],
            "quantity": "30",
            "reason": "spill",
            "effective_date": "2025-03-01",
        })
        assert resp.status_code == 201

        items = client.get(f"/api/lots/raw_material/{lot['id']}/history").get_json()["items"]
        intake, waste = items
        assert waste["movement_type"] == "WASTE"

        body = client.get(f"/api/lots/raw_material/{lot['id']}/balance?before_movement={waste['id']}").get_json()
        assert body["balance"] == "100.000"
        assert body["before_movement"] == waste["id"]
        assert body["as_of"] == "2025-03-01"

        body = client.get(f"/api/lots/raw_material/{lot['id']}/balance?before_movement={intake['id']}").get_json()
        assert body["balance"] == "0.000"

        foreign = client.get(f"/api/lots/raw_material/{other['id']}/history").get_json()["items"][0]
        resp = client.get(f"/api/lots/raw_material/{lot['id']}/balance?before_movement={foreign['id']}")
        assert resp.status_code == 404

        resp = client.get(f"/api/lots/raw_material/{lot['id']}/balance?before_movement=latest")
        assert resp.status_code == 400

    @pytest.mark.parametrize("body", [None, "[1, 2]"])
    def test_malformed_body(self, client, db_session, body):
        resp = client.post("/api/lots/raw_material", data=body, content_type="application/json")
        assert resp.status_code == 400


# =============================================================================
# WASTE AND TRANSFERS
# =============================================================================


class TestWasteTransfer:

    def test_waste_over_balance_is_conflict(self, client, db_session):
        lot = _receive(client, "20")
        resp = client.post("/api/waste", json={
            "lot_type": "raw_material",
            "lot_id": lot["id"],
            "quantity": "25",
            "reason": "spill",
            "effective_date": "2025-03-04",
        })

        assert resp.status_code == 409
        body = resp.get_json()
        assert body["error"] == "Cannot waste 25.000 kg. Only 20.000 kg available."
        assert body["lot_code"] == lot["lot_code"]
        assert body["available"] == "20.000"

    def test_waste_missing_field(self, client, db_session):
        resp = client.post("/api/waste", json={"lot_id": 1, "quantity": "1", "reason": "x"})
        assert resp.status_code == 400
        assert "lot_type" in resp.get_json()["error"]

    def test_transfer(self, client, db_session):
        source = _receive(client, "20")
        dest = _receive(client, "5")

        resp = client.post("/api/transfers", json={
            "lot_type": "raw_material",
            "from_lot_id": source["id"],
            "to_lot_id": dest["id"],
            "quantity": "10",
            "reason": "consolidate",
            "effective_date": "2025-03-06",
        })

        assert resp.status_code == 201
        assert resp.get_json()["transfer_code"] == "TRANSFER-0001"
        assert client.get(f"/api/lots/raw_material/{source['id']}").get_json()["quantity_available"] == "10.000"
        assert client.get(f"/api/lots/raw_material/{dest['id']}").get_json()["quantity_available"] == "15.000"

        history = client.get(f"/api/lots/raw_material/{dest['id']}/waste-transfer-history").get_json()
        assert history["transfers"][0]["direction"] == "transfer_in"

    def test_same_lot_transfer_is_conflict(self, client, db_session):
        lot = _receive(client, "20")
        resp = client.post("/api/transfers", json={
            "lot_type": "raw_material",
            "from_lot_id": lot["id"],
            "to_lot_id": lot["id"],
            "quantity": "1",
            "reason": "x",
            "effective_date": "2025-03-06",
        })
        assert resp.status_code == 409

    def test_string_ids_are_coerced(self, client, db_session):
        source = _receive(client, "20")
        dest = _receive(client, "5")
        resp = client.post("/api/transfers", json={
            "lot_type": "raw_material",
            "from_lot_id": str(source["id"]),
            "to_lot_id": dest["id"],
            "quantity": "4",
            "reason": "consolidate",
            "effective_date": "2025-03-06",
        })

        assert resp.status_code == 201
        body = resp.get_json()
        assert body["from_lot_id"] == source["id"]
        assert body["to_lot_id"] == dest["id"]

    def test_padded_id_still_same_lot(self, client, db_session):
        lot = _receive(client, "20")
        resp = client.post("/api/transfers", json={
            "lot_type": "raw_material",
            "from_lot_id": f"0{lot['id']}",
            "to_lot_id": lot["id"],
            "quantity": "1",
            "reason": "x",
            "effective_date": "2025-03-06",
        })
        assert resp.status_code == 409
        assert resp.get_json()["error"] == "Cannot transfer a lot to itself"

    @pytest.mark.parametrize("bad_id", ["abc", "1.5", "1e3", True, 2.0, -3, [1]])
    def test_malformed_lot_id_is_bad_request(self, client, db_session, bad_id):
        lot = _receive(client, "20")
        resp = client.post("/api/transfers", json={
            "lot_type": "raw_material",
            "from_lot_id": bad_id,
            "to_lot_id": lot["id"],
            "quantity": "1",
            "reason": "x",
        })
        assert resp.status_code == 400
        assert resp.get_json()["field"] == "from_lot_id"

    def test_malformed_waste_ids_are_bad_request(self, client, db_session):
        lot = _receive(client, "20")
        resp = client.post("/api/waste", json={
            "lot_type": "raw_material",
            "lot_id": lot["id"],
            "quantity": "1",
            "reason": "spill",
            "created_by": "someone",
        })
        assert resp.status_code == 400
        assert resp.get_json()["field"] == "created_by"
        assert client.get(f"/api/lots/raw_material/{lot['id']}").get_json()["quantity_available"] == "20.000"

    def test_unknown_waste_field_rejected(self, client, db_session):
        lot = _receive(client, "20")
        resp = client.post("/api/waste", json={
            "lot_type": "raw_material",
            "lot_id": lot["id"],
            "quantity": "1",
            "reason": "spill",
            "batch_id": 3,
        })
        assert resp.status_code == 400
        assert "batch_id" in resp.get_json()["error"]


# =============================================================================
# BATCHES
# =============================================================================


class TestBatches:

    def test_batch_lifecycle(self, client, db_session, complete_output):
        lot = _receive(client, "70")

        resp = client.post("/api/batches", json={"batch_date": "2025-03-10"})
        assert resp.status_code == 201
        batch = resp.get_json()
        assert batch["batch_code"] == "BATCH-0001"

        resp = client.post(f"/api/batches/{batch['id']}/materials", json={
            "lot_type": "raw_material",
            "lot_id": lot["id"],
            "quantity": "50",
        })
        assert resp.status_code == 201

        resp = client.post(f"/api/batches/{batch['id']}/outputs", json=complete_output())
        assert resp.status_code == 201

        resp = client.post(f"/api/batches/{batch['id']}/save", json={"qa_status": "hold"})
        assert resp.status_code == 200
        assert resp.get_json()["qa_status"] == "hold"

        resp = client.post(f"/api/batches/{batch['id']}/lock", json={"qa_status": "hold"})
        assert resp.status_code == 409

        resp = client.post(f"/api/batches/{batch['id']}/lock", json={"qa_status": "approved"})
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["batch"]["is_locked"] is True
        assert [g["quantity_created"] for g in body["processed_goods"]] == ["45.000"]

        detail = client.get(f"/api/batches/{batch['id']}").get_json()
        assert len(detail["materials"]) == 1
        assert len(detail["processed_goods"]) == 1

        resp = client.delete(f"/api/batches/{batch['id']}")
        assert resp.status_code == 409
        assert resp.get_json()["batch_code"] == "BATCH-0001"

        usage = client.get(f"/api/lots/raw_material/{lot['id']}/batch-usage").get_json()["items"]
        assert usage[0]["is_locked"] is True
        locked = client.get(f"/api/lots/raw_material/{lot['id']}/locked-batches").get_json()
        assert locked == {"locked": True, "batch_codes": ["BATCH-0001"]}

        goods = client.get("/api/processed-goods").get_json()["items"]
        assert goods[0]["batch_code"] == "BATCH-0001"

    def test_remove_material_and_delete_draft(self, client, db_session):
        lot = _receive(client, "100")
        batch = client.post("/api/batches", json={"batch_date": "2025-03-10"}).get_json()
        line = client.post(f"/api/batches/{batch['id']}/materials", json={
            "lot_type": "raw_material",
            "lot_id": lot["id"],
            "quantity": "30",
        }).get_json()

        assert client.get(f"/api/lots/raw_material/{lot['id']}").get_json()["quantity_available"] == "70.000"

        resp = client.delete(f"/api/batches/{batch['id']}/materials/{line['id']}")
        assert resp.status_code == 204
        assert client.get(f"/api/lots/raw_material/{lot['id']}").get_json()["quantity_available"] == "100.000"

        resp = client.delete(f"/api/batches/{batch['id']}")
        assert resp.status_code == 204
        assert client.get(f"/api/batches/{batch['id']}").status_code == 404

    def test_overdraw_is_conflict(self, client, db_session):
        lot = _receive(client, "10")
        batch = client.post("/api/batches", json={"batch_date": "2025-03-10"}).get_json()

        resp = client.post(f"/api/batches/{batch['id']}/materials", json={
            "lot_type": "raw_material",
            "lot_id": lot["id"],
            "quantity": "11",
        })
        assert resp.status_code == 409
        assert resp.get_json()["requested"] == "11.000"

    def test_unknown_batch_field(self, client, db_session):
        resp = client.post("/api/batches", json={"batch_date": "2025-03-10", "is_locked": True})
        assert resp.status_code == 400
