from __future__ import annotations

import re

import pytest
from sqlalchemy import func, select

import database
import orders
from errors import InsufficientStock, ValidationError


def _order_count() -> int:
    with database.session_scope() as session:
        return session.scalar(select(func.count(database.Order.id))) or 0


def test_single_store_example(client, login, make_user, make_store, make_product, stock):
    buyer = make_user("Buyer")
    store = make_store("S1")
    product_a = make_product(store, name="A", price=15000, stock=5)
    product_b = make_product(store, name="B", price=7500, stock=2)
    login(buyer)

    response = client.post(
        "/orders/checkout",
        json={
            "items": [
                {"product_id": product_a, "quantity": 3},
                {"product_id": product_b, "quantity": 2},
            ],
            "shipping_address": "Jl. Merdeka 1, Bandung",
            "payment_method": "bank_transfer",
        },
    )

    assert response.status_code == 201
    created = response.get_json()["data"]
    assert len(created) == 1
    order = created[0]
    assert order["store_id"] == store["id"]
    assert order["status"] == "pending"
    assert order["payment_status"] == "unpaid"
    assert order["total_amount"] == pytest.approx(3 * 15000 + 2 * 7500)
    assert order["shipping_address"] == "Jl. Merdeka 1, Bandung"
    assert len(order["items"]) == 2
    assert stock(product_a) == 2
    assert stock(product_b) == 0


def test_one_order_per_store(make_user, make_store, make_product):
    buyer = make_user("Buyer")
    first_store = make_store("Satu")
    second_store = make_store("Dua")
    third_store = make_store("Tiga")
    p1 = make_product(first_store, name="P1", price=1000)
    p2 = make_product(second_store, name="P2", price=2000)
    p3 = make_product(first_store, name="P3", price=3000)
    p4 = make_product(third_store, name="P4", price=4000)

    created = orders.checkout(
        buyer,
        [
            {"product_id": p1, "quantity": 1},
            {"product_id": p2, "quantity": 2},
            {"product_id": p3, "quantity": 1},
            {"product_id": p4, "quantity": 1},
        ],
        "Jl. Asia Afrika 8",
        "ewallet",
    )

    assert len(created) == 3
    by_store = {order["store_id"]: order for order in created}
    assert {item["product_id"] for item in by_store[first_store["id"]]["items"]} == {p1, p3}
    assert {item["product_id"] for item in by_store[second_store["id"]]["items"]} == {p2}
    assert {item["product_id"] for item in by_store[third_store["id"]]["items"]} == {p4}
    assert len({order["order_number"] for order in created}) == 3


def test_totals_use_effective_price(make_user, make_store, make_product):
    buyer = make_user("Buyer")
    store = make_store()
    discounted = make_product(store, name="Diskon", price=20000, discount_price=15000)
    zero_discount = make_product(store, name="Nol", price=9000, discount_price=0)

    created = orders.checkout(
        buyer,
        [{"product_id": discounted, "quantity": 2}, {"product_id": zero_discount, "quantity": 3}],
        "Alamat",
        "cod",
    )

    items = {item["product_id"]: item for item in created[0]["items"]}
    assert items[discounted]["price"] == pytest.approx(15000)
    assert items[zero_discount]["price"] == pytest.approx(9000)
    assert created[0]["total_amount"] == pytest.approx(2 * 15000 + 3 * 9000)
    assert sum(order["total_amount"] for order in created) == pytest.approx(
        sum(item["subtotal"] for item in created[0]["items"])
    )


def test_order_number_format(make_user, make_store, make_product):
    buyer = make_user("Buyer")
    product_id = make_product(make_store())

    created = orders.checkout(buyer, [{"product_id": product_id, "quantity": 1}], "Alamat", "cod")

    assert re.fullmatch(r"ORD-[A-Z0-9]{4}-\d+", created[0]["order_number"])


def test_insufficient_stock_rolls_back_everything(client, login, make_user, make_store, make_product, stock):
    buyer = make_user("Buyer")
    first_store = make_store("Satu")
    second_store = make_store("Dua")
    plenty = make_product(first_store, name="Banyak", stock=10)
    scarce = make_product(second_store, name="Langka", stock=1)
    login(buyer)

    response = client.post(
        "/orders/checkout",
        json={
            "items": [
                {"product_id": plenty, "quantity": 4},
                {"product_id": scarce, "quantity": 2},
            ],
            "shipping_address": "Alamat",
            "payment_method": "cod",
        },
    )

    assert response.status_code == 400
    assert "Langka" in response.get_json()["message"]
    assert _order_count() == 0
    assert stock(plenty) == 10
    assert stock(scarce) == 1


def test_duplicate_lines_stay_separate(make_user, make_store, make_product, stock):
    buyer = make_user("Buyer")
    product_id = make_product(make_store(), stock=5)

    created = orders.checkout(
        buyer,
        [{"product_id": product_id, "quantity": 2}, {"product_id": product_id, "quantity": 1}],
        "Alamat",
        "cod",
    )

    assert [item["quantity"] for item in created[0]["items"]] == [2, 1]
    assert stock(product_id) == 2


def test_duplicate_lines_cannot_oversell(make_user, make_store, make_product, stock):
    buyer = make_user("Buyer")
    product_id = make_product(make_store(), stock=5)

    with pytest.raises(InsufficientStock):
        orders.checkout(
            buyer,
            [{"product_id": product_id, "quantity": 3}, {"product_id": product_id, "quantity": 3}],
            "Alamat",
            "cod",
        )

    assert stock(product_id) == 5
    assert _order_count() == 0


@pytest.mark.parametrize(
    "items",
    [
        [],
        "not-a-list",
        [{"product_id": 1, "quantity": 0}],
        [{"quantity": 1}],
    ],
)
def test_malformed_items_are_rejected(make_user, items):
    buyer = make_user("Buyer")

    with pytest.raises(ValidationError):
        orders.checkout(buyer, items, "Alamat", "cod")


def test_unknown_product_is_rejected(make_user, make_store, make_product, stock):
    buyer = make_user("Buyer")
    product_id = make_product(make_store(), stock=5)

    with pytest.raises(ValidationError):
        orders.checkout(
            buyer,
            [{"product_id": product_id, "quantity": 1}, {"product_id": 4242, "quantity": 1}],
            "Alamat",
            "cod",
        )

    assert stock(product_id) == 5
    assert _order_count() == 0


def test_checkout_clears_purchased_cart_lines(make_user, make_store, make_product):
    buyer = make_user("Buyer")
    store = make_store()
    bought = make_product(store, name="Dibeli")
    kept = make_product(store, name="Disimpan")
    database.add_to_cart(buyer, bought, 1)
    database.add_to_cart(buyer, kept, 1)

    orders.checkout(buyer, [{"product_id": bought, "quantity": 1}], "Alamat", "cod")

    remaining = [item["product_id"] for item in database.fetch_cart(buyer)["items"]]
    assert remaining == [kept]


def test_checkout_logs_order_activity(make_user, make_store, make_product):
    buyer = make_user("Buyer")
    product_id = make_product(make_store())

    orders.checkout(buyer, [{"product_id": product_id, "quantity": 2}], "Alamat", "cod")

    with database.session_scope() as session:
        events = session.execute(
            select(database.ProductActivity).where(database.ProductActivity.user_id == buyer)
        ).scalars().all()
        assert [(event.type, event.meta["quantity"]) for event in events] == [("order", 2)]


def test_order_views_for_buyer_and_seller(client, login, make_user, make_store, make_product):
    buyer = make_user("Buyer")
    stranger = make_user("Stranger")
    store = make_store()
    product_id = make_product(store)
    order = orders.checkout(buyer, [{"product_id": product_id, "quantity": 1}], "Alamat", "cod")[0]

    login(buyer)
    assert [row["id"] for row in client.get("/orders").get_json()["data"]] == [order["id"]]
    assert client.get(f"/orders/{order['id']}").status_code == 200

    login(store["owner_id"])
    assert client.get(f"/orders/{order['id']}").status_code == 200
    seller_rows = client.get("/seller/orders").get_json()["data"]
    assert seller_rows[0]["buyer"]["full_name"] == "Buyer"

    login(stranger)
    assert client.get(f"/orders/{order['id']}").status_code == 404


def test_seller_status_update_is_restricted(client, login, make_user, make_store, make_product):
    buyer = make_user("Buyer")
    store = make_store()
    product_id = make_product(store)
    order = orders.checkout(buyer, [{"product_id": product_id, "quantity": 1}], "Alamat", "cod")[0]
    login(store["owner_id"])

    bad = client.put(f"/seller/orders/{order['id']}/status", json={"status": "teleported"})
    good = client.put(f"/seller/orders/{order['id']}/status", json={"status": "shipped"})

    assert bad.status_code == 400
    assert good.status_code == 200
    assert good.get_json()["data"]["status"] == "shipped"
    assert database.fetch_notifications(buyer)[0]["type"] == "order"


def test_other_seller_cannot_update_status(client, login, make_user, make_store, make_product):
    buyer = make_user("Buyer")
    store = make_store("Pemilik")
    other_store = make_store("Lain")
    product_id = make_product(store)
    order = orders.checkout(buyer, [{"product_id": product_id, "quantity": 1}], "Alamat", "cod")[0]
    login(other_store["owner_id"])

    response = client.put(f"/seller/orders/{order['id']}/status", json={"status": "shipped"})

    assert response.status_code == 404


def test_invoice(client, login, make_user, make_store, make_product):
    buyer = make_user("Budi")
    store = make_store("Toko Faktur", city="Surabaya")
    product_id = make_product(store, name="Lampu", price=12500)
    order = orders.checkout(buyer, [{"product_id": product_id, "quantity": 2}], "Alamat", "cod")[0]
    login(buyer)

    invoice = client.get(f"/orders/{order['id']}/invoice").get_json()["data"]

    assert invoice["order_number"] == order["order_number"]
    assert invoice["buyer"]["name"] == "Budi"
    assert invoice["store"] == {"id": store["id"], "name": "Toko Faktur", "city": "Surabaya"}
    assert invoice["items"][0]["subtotal"] == pytest.approx(25000)
    assert invoice["grand_total"] == pytest.approx(25000)


def test_whole_float_quantity_is_accepted(client, login, make_user, make_store, make_product, stock):
    product_id = make_product(make_store(), stock=5)
    login(make_user("Buyer"))

    response = client.post(
        "/orders/checkout",
        json={"items": [{"product_id": product_id, "quantity": 2.0}], "shipping_address": "Alamat", "payment_method": "cod"},
    )

    assert response.status_code == 201
    assert response.get_json()["data"][0]["items"][0]["quantity"] == 2
    assert stock(product_id) == 3


@pytest.mark.parametrize("quantity", [2.5, "abc", True])
def test_checkout_and_cart_share_quantity_rule(client, login, make_user, make_store, make_product, quantity):
    product_id = make_product(make_store(), stock=5)
    login(make_user("Buyer"))

    checkout = client.post(
        "/orders/checkout",
        json={"items": [{"product_id": product_id, "quantity": quantity}], "shipping_address": "Alamat", "payment_method": "cod"},
    )
    cart = client.post("/buyer/cart", json={"product_id": product_id, "quantity": quantity})

    assert checkout.status_code == cart.status_code == 400
    assert checkout.get_json()["message"] == cart.get_json()["message"] == "The quantity field must be a whole number."
    assert _order_count() == 0


def _checkout_three(make_user, product_id: int) -> dict:
    return orders.checkout(make_user("Buyer"), [{"product_id": product_id, "quantity": 3}], "Alamat", "cod")[0]


def test_seller_cancellation_returns_stock_once(make_user, make_store, make_product, stock):
    store = make_store()
    product_id = make_product(store, stock=5)
    order = _checkout_three(make_user, product_id)
    assert stock(product_id) == 2

    orders.update_order_status(store["owner_id"], order["id"], "cancelled")
    orders.update_order_status(store["owner_id"], order["id"], "cancelled")

    assert stock(product_id) == 5


def test_reopened_order_takes_its_stock_again(make_user, make_store, make_product, stock):
    store = make_store()
    product_id = make_product(store, stock=5)
    order = _checkout_three(make_user, product_id)

    orders.update_order_status(store["owner_id"], order["id"], "cancelled")
    orders.update_order_status(store["owner_id"], order["id"], "pending")
    assert stock(product_id) == 2

    orders.update_order_status(store["owner_id"], order["id"], "cancelled")
    assert stock(product_id) == 5


def test_reopening_fails_when_units_were_resold(make_user, make_store, make_product, stock):
    store = make_store()
    product_id = make_product(store, stock=5)
    order = _checkout_three(make_user, product_id)
    orders.update_order_status(store["owner_id"], order["id"], "cancelled")
    _checkout_three(make_user, product_id)

    with pytest.raises(InsufficientStock):
        orders.update_order_status(store["owner_id"], order["id"], "processing")

    assert stock(product_id) == 2
    with database.session_scope() as session:
        assert session.get(database.Order, order["id"]).status == "cancelled"


def test_cancelling_a_shipped_order_keeps_stock(make_user, make_store, make_product, stock):
    store = make_store()
    product_id = make_product(store, stock=5)
    order = _checkout_three(make_user, product_id)
    orders.update_order_status(store["owner_id"], order["id"], "shipped")

    orders.update_order_status(store["owner_id"], order["id"], "cancelled")

    assert stock(product_id) == 2
