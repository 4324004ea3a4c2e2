def test_health(client) -> None:
    assert client.get("/health").json() == {"status": "healthy"}


def test_sale_cancel_round_trip(client, factory) -> None:
    branch = factory.branch()
    customer = factory.customer()
    coil = factory.product("COIL", "raw_tracked")
    sheet = factory.product("SHEET", "manufactured_virtual", selling_price="450")
    factory.recipe(sheet, coil, "2.5")
    coil_a = factory.batch(coil, branch, "100", code="COIL-A")

    sale_resp = client.post(
        "/api/v1/sales",
        headers={"X-User-Id": "clerk-1"},
        json={
            "customer_id": customer.id,
            "branch_id": branch.id,
            "items": [
                {
                    "product_id": sheet.id,
                    "quantity": "10",
                    "unit_price": "450",
                    "item_assignments": [{"batch_id": coil_a.id, "quantity": "25"}],
                }
            ],
        },
    )
    assert sale_resp.status_code == 200
    sale = sale_resp.json()["data"]
    assert sale["production_status"] == "queue"
    assert sale["total_amount"] == 4500.0
    assert sale["items"][0]["assignments"] == [{"batch_id": coil_a.id, "quantity_deducted": 25.0}]
    assert "request_id" in sale_resp.json()["meta"]

    batch_resp = client.get(f"/api/v1/inventory/batches/{coil_a.id}")
    assert batch_resp.json()["data"]["remaining_quantity"] == 75.0
    assert batch_resp.json()["data"]["status"] == "in_stock"

    statement = client.get(f"/api/v1/ledger/contacts/{customer.id}").json()["data"]
    assert statement["ledger_balance"] == 4500.0
    assert [e["transaction_type"] for e in statement["entries"]] == ["INVOICE"]

    cancel_resp = client.post(f"/api/v1/sales/{sale['sales_order_id']}/cancel")
    assert cancel_resp.status_code == 200

    assert client.get(f"/api/v1/inventory/batches/{coil_a.id}").json()["data"]["remaining_quantity"] == 100.0
    assert client.get(f"/api/v1/ledger/contacts/{customer.id}").json()["data"]["ledger_balance"] == 0.0
    assert client.get(f"/api/v1/sales/{sale['sales_order_id']}").status_code == 404


def test_errors_use_engine_envelope(client, factory) -> None:
    branch = factory.branch()
    coil = factory.product("COIL", "raw_tracked")
    wire = factory.product("WIRE", "raw_tracked")
    factory.batch(coil, branch, "5")
    wire_batch = factory.batch(wire, branch, "5")

    short = client.post(
        "/api/v1/sales",
        json={"branch_id": branch.id, "items": [{"product_id": coil.id, "quantity": "6", "unit_price": "1"}]},
    )
    assert short.status_code == 409
    assert short.json()["error"]["code"] == "INSUFFICIENT_STOCK"
    assert short.json()["error"]["retryable"] is False

    mismatch = client.post(
        "/api/v1/sales",
        json={
            "branch_id": branch.id,
            "items": [
                {
                    "product_id": coil.id,
                    "quantity": "2",
                    "unit_price": "1",
                    "item_assignments": [{"batch_id": wire_batch.id, "quantity": "2"}],
                }
            ],
        },
    )
    assert mismatch.status_code == 409
    assert mismatch.json()["error"]["code"] == "PRODUCT_MISMATCH"

    missing = client.get("/api/v1/sales/999")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"

    invalid = client.post("/api/v1/sales", json={"branch_id": branch.id, "items": []})
    assert invalid.status_code == 422


def test_price_override_permission_header(client, factory) -> None:
    branch = factory.branch()
    bolt = factory.product("BOLT", selling_price="12.50")
    payload = {"branch_id": branch.id, "items": [{"product_id": bolt.id, "quantity": "2", "unit_price": "11"}]}

    denied = client.post("/api/v1/sales", json=payload)
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "PERMISSION_DENIED"

    allowed = client.post("/api/v1/sales", json=payload, headers={"X-Permissions": "sale_price_override"})
    assert allowed.status_code == 200
    assert allowed.json()["data"]["total_amount"] == 22.0


def test_production_flow_over_http(client, factory) -> None:
    branch = factory.branch()
    coil = factory.product("COIL", "raw_tracked")
    sheet = factory.product("SHEET", "manufactured_virtual")
    factory.recipe(sheet, coil, "2")
    factory.batch(coil, branch, "50")

    order_id = client.post(
        "/api/v1/sales",
        json={"branch_id": branch.id, "items": [{"product_id": sheet.id, "quantity": "5", "unit_price": "100"}]},
    ).json()["data"]["sales_order_id"]

    skipped = client.post(f"/api/v1/sales/{order_id}/deliver", json={"dispatcher_name": "Bilal"})
    assert skipped.status_code == 409
    assert skipped.json()["error"]["code"] == "INVALID_STATE_TRANSITION"

    produced = client.post(
        f"/api/v1/sales/{order_id}/production-status", json={"status": "produced", "worker_name": "Ali"}
    )
    assert produced.json()["data"]["production_status"] == "produced"

    delivered = client.post(
        f"/api/v1/sales/{order_id}/deliver", json={"dispatcher_name": "Bilal", "vehicle_plate": "LEA-1234"}
    )
    assert delivered.json()["data"]["production_status"] == "delivered"

    locked = client.post(f"/api/v1/sales/{order_id}/cancel")
    assert locked.status_code == 409


def test_allocation_proposal(client, factory) -> None:
    branch = factory.branch()
    coil = factory.product("COIL", "raw_tracked")
    first = factory.batch(coil, branch, "30")
    factory.batch(coil, branch, "30")

    resp = client.post(
        "/api/v1/inventory/allocation-proposals",
        json={"product_id": coil.id, "branch_id": branch.id, "quantity": "40"},
    )

    data = resp.json()["data"]
    assert data["satisfiable"] is True
    assert data["suggestions"][0] == {
        "batch_id": first.id,
        "instance_code": first.instance_code,
        "available": 30.0,
        "quantity": 30.0,
    }
    assert data["suggestions"][1]["quantity"] == 10.0


def test_advance_and_refund_over_http(client, factory) -> None:
    customer = factory.customer()

    advance = client.post(
        "/api/v1/payments/advances",
        headers={"X-User-Id": "cashier-1"},
        json={"customer_id": customer.id, "amount": "1000", "method": "transfer"},
    ).json()["data"]
    assert advance["kind"] == "advance"
    assert advance["status"] == "pending_confirmation"

    confirmed = client.post(f"/api/v1/payments/{advance['payment_id']}/confirm", headers={"X-User-Id": "cashier-1"})
    assert confirmed.json()["data"]["confirmed_by"] == "cashier-1"

    refund = client.post(
        "/api/v1/payments/refunds",
        json={"customer_id": customer.id, "refund_amount": "400", "withdrawal_fee": "25", "method": "cash"},
    ).json()["data"]
    assert refund["ledger_balance"] == -575.0
    assert refund["net_refund"] == 375.0
    assert [e["transaction_type"] for e in refund["entries"]] == ["REFUND", "REFUND_FEE"]

    too_much = client.post("/api/v1/payments/refunds", json={"customer_id": customer.id, "refund_amount": "600"})
    assert too_much.status_code == 409
    assert too_much.json()["error"]["retryable"] is False


def test_material_assignment_over_http(client, factory) -> None:
    branch = factory.branch()
    coil = factory.product("COIL", "raw_tracked")
    sheet = factory.product("SHEET", "manufactured_virtual")
    factory.recipe(sheet, coil, "2")
    coil_a = factory.batch(coil, branch, "50", code="COIL-A")
    coil_b = factory.batch(coil, branch, "50", code="COIL-B")

    sale = client.post(
        "/api/v1/sales",
        json={"branch_id": branch.id, "items": [{"product_id": sheet.id, "quantity": "5", "unit_price": "100"}]},
    ).json()["data"]
    item = sale["items"][0]
    assert item["assignments"] == [{"batch_id": coil_a.id, "quantity_deducted": 10.0}]

    resp = client.post(
        f"/api/v1/sales/items/{item['item_id']}/material",
        json={"item_assignments": [{"batch_id": coil_b.id, "quantity": "10"}]},
    )

    assert resp.status_code == 200
    assert resp.json()["data"]["items"][0]["assignments"] == [{"batch_id": coil_b.id, "quantity_deducted": 10.0}]
    assert client.get(f"/api/v1/inventory/batches/{coil_a.id}").json()["data"]["remaining_quantity"] == 50.0
