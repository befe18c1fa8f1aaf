from __future__ import annotations

import pytest

import orders


def test_estimate_defaults_weight_to_one_kilogram():
    options = orders.estimate_shipping([{"quantity": 2}])

    regular, express = options
    assert regular["courier_code"] == "REG"
    assert regular["cost"] == pytest.approx(10000 + 2000 * 2)
    assert regular["estimated_days"] == 3
    assert express["courier_code"] == "EXP"
    assert express["cost"] == pytest.approx(regular["cost"] + 5000)
    assert express["estimated_days"] == 1


def test_estimate_charges_at_least_one_kilogram():
    options = orders.estimate_shipping([{"quantity": 1, "weight": 0.2}])

    assert options[0]["cost"] == pytest.approx(12000)


def test_estimate_endpoint(client, login, make_user):
    login(make_user("Buyer"))

    response = client.post(
        "/shipping/estimate",
        json={"destination_postal_code": "40115", "items": [{"quantity": 3, "weight": 1.5}]},
    )

    assert response.status_code == 200
    options = response.get_json()["data"]["options"]
    assert options[0]["cost"] == pytest.approx(10000 + 2000 * 4.5)


@pytest.mark.parametrize(
    "payload",
    [
        {"items": [{"quantity": 1}]},
        {"destination_postal_code": "40115", "items": []},
        {"destination_postal_code": "40115", "items": [{"quantity": 0}]},
        {"destination_postal_code": "40115", "items": [{"quantity": 1, "weight": -2}]},
    ],
)
def test_estimate_endpoint_validation(client, login, make_user, payload):
    login(make_user("Buyer"))

    assert client.post("/shipping/estimate", json=payload).status_code == 400


def test_shipment_lifecycle(client, login, make_user, make_store, make_product):
    buyer = make_user("Buyer")
    store = make_store()
    product_id = make_product(store)
    order = orders.checkout(buyer, [{"product_id": product_id, "quantity": 1}], "Alamat", "cod")[0]

    login(buyer)
    before = client.get(f"/orders/{order['id']}/shipment").get_json()["data"]
    assert before["shipment"] is None
    assert before["order"]["order_number"] == order["order_number"]

    login(store["owner_id"])
    saved = client.put(
        f"/seller/orders/{order['id']}/shipment",
        json={"courier_name": "JNE", "tracking_number": "JNE123", "status": "in_transit", "shipped_at": "2026-02-01T10:00:00"},
    )
    assert saved.status_code == 200
    client.put(f"/seller/orders/{order['id']}/shipment", json={"status": "delivered"})

    login(buyer)
    shipment = client.get(f"/orders/{order['id']}/shipment").get_json()["data"]["shipment"]
    assert shipment["tracking_number"] == "JNE123"
    assert shipment["status"] == "delivered"
    assert shipment["shipped_at"].startswith("2026-02-01T10:00")


def test_shipment_requires_owning_seller(client, login, make_user, make_store, make_product):
    buyer = make_user("Buyer")
    product_id = make_product(make_store("Pemilik"))
    order = orders.checkout(buyer, [{"product_id": product_id, "quantity": 1}], "Alamat", "cod")[0]
    login(make_store("Lain")["owner_id"])

    response = client.put(f"/seller/orders/{order['id']}/shipment", json={"tracking_number": "X"})

    assert response.status_code == 404


def test_bad_shipment_timestamp(client, login, make_user, make_store, make_product):
    buyer = make_user("Buyer")
    store = make_store()
    product_id = make_product(store)
    order = orders.checkout(buyer, [{"product_id": product_id, "quantity": 1}], "Alamat", "cod")[0]
    login(store["owner_id"])

    response = client.put(f"/seller/orders/{order['id']}/shipment", json={"shipped_at": "kemarin"})

    assert response.status_code == 400
