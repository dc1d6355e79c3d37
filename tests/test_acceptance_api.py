from decimal import Decimal

import pytest

from conftest import PRODUCTS, FakeResponse

INVOICE_OK = FakeResponse(200, {"success": True, "orderNo": "SO-9", "invoiceNo": "INV-9"})


def _create(client, auth, kind, client_id, products=None, **extra):
    body = {"clientId": client_id, "products": products or PRODUCTS, "deliveryType": "truck", **extra}
    response = client.post(f"/{kind}", json=body, headers=auth("sales_rep"))
    assert response.status_code == 201, response.get_json()
    return response.get_json()["record"]


def _accept(client, auth, kind, record_id, role, user=None, **body):
    return client.put(f"/{kind}/{record_id}/accept/{role}", json=body, headers=auth(user or role))


def _get(client, auth, kind, record_id):
    return client.get(f"/{kind}/{record_id}", headers=auth("manager")).get_json()["record"]


def _accept_all(client, auth, kind, record_id, roles=("manager", "supervisor", "storekeeper")):
    for role in roles:
        response = _accept(client, auth, kind, record_id, role)
        assert response.status_code == 200, response.get_json()
    return response.get_json()


# ---------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------
def test_create_order_computes_lines_and_totals(client, auth, linked_client_id):
    record = _create(client, auth, "orders", linked_client_id)

    assert record["sequence_id"].startswith("NPO-")
    assert record["stage"] == "pending"
    assert record["status"] == "not_delivered"
    assert record["fully_accepted"] is False
    assert Decimal(record["total_price"]) == Decimal("55")
    assert Decimal(record["total_vat"]) == Decimal("8.25")
    assert Decimal(record["total_subtotal"]) == Decimal("63.25")

    lines = record["products"]
    assert [line["medad_product_no"] for line in lines] == ["P-1", "P-2"]
    assert Decimal(lines[0]["vat"]) == Decimal("4.5")
    assert sum(Decimal(line["subtotal"]) for line in lines) == Decimal(record["total_subtotal"])

    # ERP defaults come from the creating sales rep
    assert record["medad_salesman_id"] == "S-1"
    assert record["warehouse_no"] == "W-1"
    assert record["client"]["medad_customer_id"] == "C-100"


def test_sequence_ids_increase(client, auth, linked_client_id):
    first = _create(client, auth, "orders", linked_client_id)
    second = _create(client, auth, "orders", linked_client_id)
    quotation = _create(client, auth, "quotations", linked_client_id)

    assert int(second["sequence_id"][-5:]) == int(first["sequence_id"][-5:]) + 1
    assert quotation["sequence_id"].startswith("NPQ-")
    assert quotation["sequence_id"].endswith("-00001")


@pytest.mark.parametrize(
    "body",
    [
        {"clientId": 9999, "products": PRODUCTS},
        {"products": []},
        {"products": [{"quantity": 0, "price": 3}]},
        {"products": [{"quantity": 1, "price": "abc"}]},
        {"products": PRODUCTS, "deliveryDate": "tomorrow"},
    ],
)
def test_create_validation(client, auth, linked_client_id, body):
    body = {"clientId": linked_client_id, **body}
    response = client.post("/orders", json=body, headers=auth("sales_rep"))
    assert response.status_code == 400


def test_stored_line_amounts_are_exact(client, auth, linked_client_id):
    products = [
        {"description": "Wire", "medad_product_no": "P-7", "quantity": "0.333", "price": "3.07"},
        {"description": "Tiles", "medad_product_no": "P-8", "quantity": 5, "price": "10.05"},
    ]
    created = _create(client, auth, "orders", linked_client_id, products=products)

    record = _get(client, auth, "orders", created["id"])

    for item, line in zip(products, record["products"]):
        price = Decimal(str(item["price"]))
        quantity = Decimal(str(item["quantity"]))
        assert Decimal(line["unit_price"]) == price
        assert Decimal(line["quantity"]) == quantity
        assert Decimal(line["line_total"]) == price * quantity
        assert Decimal(line["vat"]) == price * quantity * Decimal("0.15")
        assert Decimal(line["subtotal"]) == Decimal(line["line_total"]) + Decimal(line["vat"])

    assert Decimal(record["products"][0]["vat"]) == Decimal("0.1533465")
    assert Decimal(record["total_vat"]) == Decimal("7.6908465")
    assert Decimal(record["total_subtotal"]) == sum(Decimal(line["subtotal"]) for line in record["products"])


@pytest.mark.parametrize(
    "line, message",
    [
        ({"quantity": 5, "price": "10.005"}, "price allows at most 2 decimal places"),
        ({"quantity": "0.3333", "price": 3}, "quantity allows at most 3 decimal places"),
        ({"quantity": 1, "price": "1e12"}, "price is too large"),
    ],
)
def test_over_precise_lines_are_refused(client, auth, linked_client_id, line, message):
    response = client.post(
        "/orders", json={"clientId": linked_client_id, "products": [line]}, headers=auth("sales_rep")
    )

    assert response.status_code == 400
    assert message in response.get_json()["error"]
    assert client.get("/orders", headers=auth("manager")).get_json()["total"] == 0


def test_create_requires_client(client, auth):
    response = client.post("/orders", json={"products": PRODUCTS}, headers=auth("sales_rep"))
    assert response.status_code == 400


def test_storekeeper_cannot_create(client, auth, linked_client_id):
    response = client.post(
        "/orders", json={"clientId": linked_client_id, "products": PRODUCTS}, headers=auth("storekeeper")
    )
    assert response.status_code == 403


# ---------------------------------------------------------------------
# Acceptance chain
# ---------------------------------------------------------------------
def test_order_chain_and_invoice_sync(client, auth, medad, linked_client_id, notifications):
    medad.respond("POST", "/invoice", INVOICE_OK)
    record = _create(client, auth, "orders", linked_client_id)

    response = _accept(client, auth, "orders", record["id"], "manager")
    assert response.status_code == 200
    assert response.get_json()["record"]["stage"] == "manager_accepted"
    assert "medad" not in response.get_json()

    _accept(client, auth, "orders", record["id"], "supervisor")
    body = _accept(client, auth, "orders", record["id"], "storekeeper", notes="loaded on truck 4").get_json()

    final = body["record"]
    assert final["stage"] == "storekeeper_accepted"
    assert final["fully_accepted"] is True
    assert final["storekeeper_notes"] == "loaded on truck 4"
    assert final["manager_accept_by"] == "Manager"
    assert body["medad"]["status"] == "SENT_TO_MEDAD"
    assert final["medad_invoice_no"] == "INV-9"
    assert final["medad_order_no"] == "SO-9"

    (_, _, kwargs), = medad.calls_to("POST", "/invoice")
    payload = kwargs["json"]
    assert payload["orderNo"] == record["sequence_id"]
    assert payload["customerId"] == "C-100"
    assert payload["salesmanId"] == "S-1"
    assert payload["warehouseNo"] == "W-1"
    assert payload["orderTaxInPrice"] == "N"
    assert [line["productNo"] for line in payload["Order_Detail"]] == ["P-1", "P-2"]
    assert payload["Order_Detail"][0]["taxPercent"] == 15.0

    assert [e.target_role for e in notifications if e.action.startswith("ACCEPT_")] == [
        "supervisor", "storekeeper", "driver",
    ]


def test_acceptance_out_of_order_conflicts(client, auth, linked_client_id):
    record = _create(client, auth, "orders", linked_client_id)

    assert _accept(client, auth, "orders", record["id"], "supervisor").status_code == 409
    assert _accept(client, auth, "orders", record["id"], "storekeeper").status_code == 409
    assert _accept(client, auth, "orders", record["id"], "manager").status_code == 200
    # the same acceptance only wins once
    assert _accept(client, auth, "orders", record["id"], "manager").status_code == 409


def test_acceptance_role_gates(client, auth, linked_client_id):
    record = _create(client, auth, "orders", linked_client_id)

    assert _accept(client, auth, "orders", record["id"], "manager", user="supervisor").status_code == 403
    assert _accept(client, auth, "orders", record["id"], "driver").status_code == 400
    assert _accept(client, auth, "orders", 999, "manager").status_code == 404


def test_order_with_missing_erp_links_is_marked_failed(client, auth, medad, unlinked_client_id):
    products = [{"description": "no code", "quantity": 1, "price": 5}]
    record = _create(client, auth, "orders", unlinked_client_id, products=products)

    body = _accept_all(client, auth, "orders", record["id"])

    assert body["record"]["fully_accepted"] is True
    assert body["medad"]["status"] == "FAILED"
    assert "Missing linked Medad customer" in body["medad"]["error"]
    assert "missing medad_product_no" in body["medad"]["error"]
    assert medad.calls == []


def test_manual_order_sync(client, auth, medad, linked_client_id):
    medad.respond("POST", "/invoice", FakeResponse(502, text="Bad Gateway"), INVOICE_OK)
    record = _create(client, auth, "orders", linked_client_id)

    assert client.post(f"/orders/{record['id']}/sync", headers=auth("manager")).status_code == 409

    body = _accept_all(client, auth, "orders", record["id"])
    assert body["medad"]["status"] == "FAILED"
    assert body["record"]["medad_response"] == {"raw": "Bad Gateway"}

    response = client.post(f"/orders/{record['id']}/sync", headers=auth("manager"))
    assert response.status_code == 200
    assert response.get_json()["record"]["medad_sync_status"] == "SENT_TO_MEDAD"


def test_quotation_is_fully_accepted_after_management(client, auth, medad, linked_client_id):
    record = _create(client, auth, "quotations", linked_client_id, managerNotes="30 days")
    assert record["condition"] == "cash"
    assert record["manager_notes"] == "30 days"

    _accept(client, auth, "quotations", record["id"], "manager")
    body = _accept(client, auth, "quotations", record["id"], "supervisor").get_json()

    assert body["record"]["fully_accepted"] is True
    assert body["record"]["stage"] == "supervisor_accepted"
    assert "medad" not in body
    assert medad.calls == []
    assert client.post(f"/quotations/{record['id']}/sync", headers=auth("manager")).status_code == 404


# ---------------------------------------------------------------------
# Edit / revisions
# ---------------------------------------------------------------------
def test_edit_before_acceptance_keeps_sequence_id(client, auth, linked_client_id):
    record = _create(client, auth, "orders", linked_client_id)

    response = client.put(f"/orders/{record['id']}", json={"notes": "call first"}, headers=auth("sales_rep"))

    assert response.status_code == 200
    edited = response.get_json()["record"]
    assert edited["sequence_id"] == record["sequence_id"]
    assert edited["notes"] == "call first"
    assert edited["delivery_type"] == "truck"


def test_edit_after_acceptance_resets_chain_and_adds_revision(client, auth, linked_client_id):
    record = _create(client, auth, "orders", linked_client_id)
    _accept(client, auth, "orders", record["id"], "manager")
    _accept(client, auth, "orders", record["id"], "supervisor")

    new_lines = [{"description": "Sand", "medad_product_no": "P-3", "quantity": 4, "price": "2.5"}]
    response = client.put(f"/orders/{record['id']}", json={"products": new_lines}, headers=auth("sales_rep"))

    assert response.status_code == 200
    edited = response.get_json()["record"]
    assert edited["sequence_id"] == f"{record['sequence_id']} Rev1"
    assert edited["manager_accept"] == "pending"
    assert edited["supervisor_accept"] == "pending"
    assert edited["manager_accept_by"] is None
    assert edited["stage"] == "pending"
    assert [line["medad_product_no"] for line in edited["products"]] == ["P-3"]
    assert Decimal(edited["total_price"]) == Decimal("10")
    assert Decimal(edited["total_subtotal"]) == Decimal("11.5")

    _accept(client, auth, "orders", record["id"], "manager")
    again = client.put(f"/orders/{record['id']}", json={"notes": "v3"}, headers=auth("sales_rep"))
    assert again.get_json()["record"]["sequence_id"] == f"{record['sequence_id']} Rev2"


def test_revised_order_is_posted_again(client, auth, medad, linked_client_id):
    medad.respond("POST", "/invoice", INVOICE_OK)
    record = _create(client, auth, "orders", linked_client_id)
    assert _accept_all(client, auth, "orders", record["id"])["medad"]["status"] == "SENT_TO_MEDAD"

    new_lines = [{"description": "Sand", "medad_product_no": "P-3", "quantity": 4, "price": "2.5"}]
    edited = client.put(
        f"/orders/{record['id']}", json={"products": new_lines}, headers=auth("sales_rep")
    ).get_json()["record"]
    assert edited["medad_sync_status"] == "not_sent"
    assert edited["medad_error"] is None
    assert edited["medad_synced_at"] is None

    body = _accept_all(client, auth, "orders", record["id"])

    assert body["medad"]["status"] == "SENT_TO_MEDAD"
    first, second = medad.calls_to("POST", "/invoice")
    assert first[2]["json"]["orderNo"] == record["sequence_id"]
    assert second[2]["json"]["orderNo"] == f"{record['sequence_id']} Rev1"
    assert [line["productNo"] for line in second[2]["json"]["Order_Detail"]] == ["P-3"]
    assert second[2]["json"]["net"] == 10.0


def test_reject_then_resubmit(client, auth, linked_client_id):
    record = _create(client, auth, "quotations", linked_client_id)
    _accept(client, auth, "quotations", record["id"], "manager")

    response = client.put(f"/quotations/{record['id']}/reject", json={"notes": "price too high"}, headers=auth("supervisor"))
    assert response.status_code == 200
    rejected = response.get_json()["record"]
    assert rejected["status"] == "rejected"
    assert rejected["stage"] == "rejected"
    assert rejected["manager_accept"] == "pending"
    assert rejected["notes"] == "price too high"

    assert _accept(client, auth, "quotations", record["id"], "manager").status_code == 409
    assert client.put(f"/quotations/{record['id']}/reject", json={}, headers=auth("manager")).status_code == 409

    resubmitted = client.put(
        f"/quotations/{record['id']}", json={"notes": "discounted"}, headers=auth("sales_rep")
    ).get_json()["record"]
    assert resubmitted["status"] == "not_delivered"
    assert resubmitted["sequence_id"].endswith("Rev1")
    assert _accept(client, auth, "quotations", record["id"], "manager").status_code == 200


# ---------------------------------------------------------------------
# Delivery / terminal state
# ---------------------------------------------------------------------
def test_delivery_requires_full_acceptance(client, auth, medad, linked_client_id):
    medad.respond("POST", "/invoice", INVOICE_OK)
    record = _create(client, auth, "orders", linked_client_id)
    _accept(client, auth, "orders", record["id"], "manager")

    assert client.put(f"/orders/{record['id']}/delivered", json={}, headers=auth("driver")).status_code == 409

    _accept(client, auth, "orders", record["id"], "supervisor")
    _accept(client, auth, "orders", record["id"], "storekeeper")
    assert client.put(f"/orders/{record['id']}/delivered", json={}, headers=auth("sales_rep")).status_code == 403

    response = client.put(f"/orders/{record['id']}/delivered", json={}, headers=auth("driver"))
    assert response.status_code == 200
    delivered = response.get_json()["record"]
    assert delivered["status"] == "delivered"
    assert delivered["stage"] == "delivered"
    assert delivered["actual_delivery_date"] is not None


def test_delivered_order_refuses_edit_and_delete(client, auth, medad, linked_client_id):
    medad.respond("POST", "/invoice", INVOICE_OK)
    record = _create(client, auth, "orders", linked_client_id, notes="original")
    _accept_all(client, auth, "orders", record["id"])
    client.put(f"/orders/{record['id']}/delivered", json={}, headers=auth("driver"))
    before = _get(client, auth, "orders", record["id"])

    edit = client.put(
        f"/orders/{record['id']}", json={"notes": "changed", "products": PRODUCTS[:1]}, headers=auth("sales_rep")
    )
    delete = client.delete(f"/orders/{record['id']}", headers=auth("sales_rep"))

    assert edit.status_code == 400
    assert delete.status_code == 400
    after = _get(client, auth, "orders", record["id"])
    assert after == before
    assert after["notes"] == "original"
    assert len(after["products"]) == 2


def test_delete_pending_order(client, auth, linked_client_id):
    record = _create(client, auth, "orders", linked_client_id)

    response = client.delete(f"/orders/{record['id']}", headers=auth("sales_rep"))

    assert response.status_code == 200
    assert client.get(f"/orders/{record['id']}", headers=auth("manager")).status_code == 404
    assert client.delete(f"/orders/{record['id']}", headers=auth("sales_rep")).status_code == 404


def test_accepted_order_cannot_be_deleted(client, auth, linked_client_id):
    record = _create(client, auth, "orders", linked_client_id)
    _accept(client, auth, "orders", record["id"], "manager")

    response = client.delete(f"/orders/{record['id']}", headers=auth("sales_rep"))

    assert response.status_code == 400
    assert _get(client, auth, "orders", record["id"])["manager_accept"] == "accepted"


def test_rejected_order_can_be_deleted(client, auth, linked_client_id):
    record = _create(client, auth, "orders", linked_client_id)
    _accept(client, auth, "orders", record["id"], "manager")
    client.put(f"/orders/{record['id']}/reject", json={"notes": "wrong client"}, headers=auth("supervisor"))

    assert client.delete(f"/orders/{record['id']}", headers=auth("sales_rep")).status_code == 200
    assert client.get(f"/orders/{record['id']}", headers=auth("manager")).status_code == 404


def test_order_booked_in_medad_cannot_be_deleted(client, auth, medad, linked_client_id):
    medad.respond("POST", "/invoice", INVOICE_OK)
    record = _create(client, auth, "orders", linked_client_id)
    _accept_all(client, auth, "orders", record["id"])

    assert client.delete(f"/orders/{record['id']}", headers=auth("sales_rep")).status_code == 400

    # rejecting clears the acceptances, the Medad invoice still exists
    client.put(f"/orders/{record['id']}/reject", json={}, headers=auth("manager"))
    assert client.delete(f"/orders/{record['id']}", headers=auth("sales_rep")).status_code == 400

    # a revision resets the sync state but keeps the booked invoice number
    revised = client.put(f"/orders/{record['id']}", json={"notes": "v2"}, headers=auth("sales_rep"))
    assert revised.get_json()["record"]["medad_invoice_no"] == "INV-9"
    assert client.delete(f"/orders/{record['id']}", headers=auth("sales_rep")).status_code == 400
    assert _get(client, auth, "orders", record["id"])["sequence_id"] == f"{record['sequence_id']} Rev1"


# ---------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------
def test_listing_filters_and_pagination(client, auth, linked_client_id):
    ids = [_create(client, auth, "orders", linked_client_id)["id"] for _ in range(3)]
    _accept(client, auth, "orders", ids[0], "manager")

    page = client.get("/orders?page=1&limit=2", headers=auth("manager")).get_json()
    assert page["total"] == 3
    assert page["totalPages"] == 2
    assert len(page["items"]) == 2

    awaiting = client.get("/orders?awaiting=supervisor", headers=auth("supervisor")).get_json()
    assert [item["id"] for item in awaiting["items"]] == [ids[0]]

    found = client.get("/orders?query=Nahdi", headers=auth("manager")).get_json()
    assert found["total"] == 3

    assert client.get("/orders?status=lost", headers=auth("manager")).status_code == 400
