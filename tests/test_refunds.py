from __future__ import annotations

import pytest

import database
import orders
from errors import BusinessRuleViolation, NotFound, ValidationError


@pytest.fixture
def paid_order(make_user, make_store, make_product):
    buyer = make_user("Buyer")
    store = make_store()
    product_id = make_product(store, price=20000)
    order = orders.checkout(buyer, [{"product_id": product_id, "quantity": 1}], "Alamat", "cod")[0]
    orders.apply_payment_status(order["order_number"], "paid")
    return {"buyer": buyer, "store": store, "order": order}


def test_refund_sets_requested_and_notifies_seller(client, login, paid_order):
    login(paid_order["buyer"])
    order_id = paid_order["order"]["id"]

    response = client.post(f"/orders/{order_id}/refund", json={"reason": "Barang rusak", "refund_amount": 20000})

    assert response.status_code == 201
    refund = response.get_json()["data"]
    assert refund["status"] == "pending"
    assert refund["refund_amount"] == pytest.approx(20000)
    assert client.get(f"/orders/{order_id}").get_json()["data"]["refund_status"] == "requested"
    seller_notes = database.fetch_notifications(paid_order["store"]["owner_id"])
    assert [note["type"] for note in seller_notes] == ["refund"]


def test_second_refund_while_pending_fails(client, login, paid_order):
    login(paid_order["buyer"])
    order_id = paid_order["order"]["id"]

    first = client.post(f"/orders/{order_id}/refund", json={"reason": "Barang rusak"})
    second = client.post(f"/orders/{order_id}/refund", json={"reason": "Masih rusak"})

    assert first.status_code == 201
    assert second.status_code == 400
    assert second.get_json()["error"] is True


def test_refund_allowed_after_previous_rejected(paid_order):
    order_id = paid_order["order"]["id"]
    refund = orders.request_refund(paid_order["buyer"], order_id, "Rusak")
    with database.session_scope() as session:
        session.get(database.RefundRequest, refund["id"]).status = "rejected"

    again = orders.request_refund(paid_order["buyer"], order_id, "Masih rusak")

    assert again["id"] != refund["id"]


def test_cancelled_order_cannot_be_refunded(paid_order):
    orders.update_order_status(paid_order["store"]["owner_id"], paid_order["order"]["id"], "cancelled")

    with pytest.raises(BusinessRuleViolation):
        orders.request_refund(paid_order["buyer"], paid_order["order"]["id"], "Batal")


def test_refund_amount_bounds(paid_order):
    with pytest.raises(ValidationError):
        orders.request_refund(paid_order["buyer"], paid_order["order"]["id"], "Rusak", refund_amount=20001)
    with pytest.raises(ValidationError):
        orders.request_refund(paid_order["buyer"], paid_order["order"]["id"], "Rusak", refund_amount=-1)


def test_refund_on_someone_elses_order(make_user, paid_order):
    with pytest.raises(NotFound):
        orders.request_refund(make_user("Orang lain"), paid_order["order"]["id"], "Rusak")


def test_refund_listing_and_detail(client, login, paid_order):
    login(paid_order["buyer"])
    refund = orders.request_refund(paid_order["buyer"], paid_order["order"]["id"], "Rusak")

    listing = client.get("/orders/refunds").get_json()["data"]
    detail = client.get(f"/orders/refunds/{refund['id']}").get_json()["data"]

    assert [row["id"] for row in listing] == [refund["id"]]
    assert detail["order"]["order_number"] == paid_order["order"]["order_number"]


def test_dispute_derives_seller(client, login, paid_order):
    login(paid_order["buyer"])
    refund = orders.request_refund(paid_order["buyer"], paid_order["order"]["id"], "Rusak")

    response = client.post(
        f"/orders/{paid_order['order']['id']}/dispute",
        json={"title": "Penjual tidak merespons", "description": "Sudah 3 hari", "refund_request_id": refund["id"]},
    )

    assert response.status_code == 201
    dispute = response.get_json()["data"]
    assert dispute["seller_id"] == paid_order["store"]["owner_id"]
    assert dispute["status"] == "open"
    assert [row["id"] for row in client.get("/orders/disputes").get_json()["data"]] == [dispute["id"]]


def test_dispute_without_store_is_bad_request(paid_order):
    with database.session_scope() as session:
        session.get(database.Order, paid_order["order"]["id"]).store_id = None

    with pytest.raises(ValidationError):
        orders.create_dispute(paid_order["buyer"], paid_order["order"]["id"], "Judul", "Isi")


def test_dispute_rejects_foreign_refund(paid_order):
    with pytest.raises(ValidationError):
        orders.create_dispute(paid_order["buyer"], paid_order["order"]["id"], "Judul", "Isi", refund_request_id=77)
