from __future__ import annotations

import pytest
from sqlalchemy import func, select

import database
import orders
from errors import Forbidden, NotFound, ValidationError


def _buy(buyer: int, product_id: int, *, pay: bool = True) -> dict:
    order = orders.checkout(buyer, [{"product_id": product_id, "quantity": 1}], "Alamat", "cod")[0]
    if pay:
        orders.apply_payment_status(order["order_number"], "paid")
    return order


def _product(product_id: int) -> database.Product:
    with database.session_scope() as session:
        return session.get(database.Product, product_id)


def _store(store_id: int) -> database.Store:
    with database.session_scope() as session:
        return session.get(database.Store, store_id)


def test_review_requires_paid_order(make_user, make_store, make_product):
    buyer = make_user("Buyer")
    product_id = make_product(make_store())
    _buy(buyer, product_id, pay=False)

    with pytest.raises(Forbidden):
        orders.submit_review(buyer, product_id, 5)


def test_review_without_any_order_is_forbidden_over_http(client, login, make_user, make_store, make_product):
    buyer = make_user("Buyer")
    product_id = make_product(make_store())
    login(buyer)

    response = client.post(f"/buyer/products/{product_id}/reviews", json={"rating": 4})

    assert response.status_code == 403


@pytest.mark.parametrize("rating", [0, 6, 3.5, True])
def test_rating_range(make_user, make_store, make_product, rating):
    buyer = make_user("Buyer")
    product_id = make_product(make_store())
    _buy(buyer, product_id)

    with pytest.raises(ValidationError):
        orders.submit_review(buyer, product_id, rating)


def test_unknown_product(make_user):
    with pytest.raises(NotFound):
        orders.submit_review(make_user("Buyer"), 999, 4)


def test_second_review_replaces_first(make_user, make_store, make_product):
    buyer = make_user("Buyer")
    product_id = make_product(make_store())
    _buy(buyer, product_id)

    orders.submit_review(buyer, product_id, 2, comment="Kurang")
    orders.submit_review(buyer, product_id, 5, comment="Ternyata bagus")

    with database.session_scope() as session:
        count = session.scalar(
            select(func.count(database.ProductReview.id)).where(
                database.ProductReview.user_id == buyer, database.ProductReview.product_id == product_id
            )
        )
    assert count == 1
    product = _product(product_id)
    assert product.rating == pytest.approx(5)
    assert product.review_count == 1


def test_rating_is_mean_of_published_reviews(make_user, make_store, make_product):
    store = make_store()
    product_id = make_product(store)
    ratings = [5, 4, 2]
    for index, rating in enumerate(ratings):
        buyer = make_user(f"Buyer {index}")
        _buy(buyer, product_id)
        orders.submit_review(buyer, product_id, rating)

    product = _product(product_id)
    assert product.review_count == 3
    assert product.rating == pytest.approx(round(sum(ratings) / 3, 2))


def test_store_aggregates_over_reviewed_products(make_user, make_store, make_product):
    store = make_store()
    first = make_product(store, name="Satu")
    second = make_product(store, name="Dua")
    make_product(store, name="Belum diulas")
    buyer_one = make_user("Buyer 1")
    buyer_two = make_user("Buyer 2")
    for buyer in (buyer_one, buyer_two):
        _buy(buyer, first)
    _buy(buyer_one, second)

    orders.submit_review(buyer_one, first, 5)
    orders.submit_review(buyer_two, first, 3)
    orders.submit_review(buyer_one, second, 2)

    refreshed = _store(store["id"])
    assert refreshed.total_reviews == 3
    assert refreshed.average_rating == pytest.approx((4 + 2) / 2)


def _fail_store_rating(session, store_id):
    raise RuntimeError("store rating unavailable")


def test_failed_store_recompute_discards_review(monkeypatch, make_user, make_store, make_product):
    buyer = make_user("Buyer")
    store = make_store()
    product_id = make_product(store)
    _buy(buyer, product_id)
    monkeypatch.setattr(orders, "_recompute_store_rating", _fail_store_rating)

    with pytest.raises(RuntimeError):
        orders.submit_review(buyer, product_id, 5, comment="Mantap")

    with database.session_scope() as session:
        assert session.scalar(select(func.count(database.ProductReview.id))) == 0
    product = _product(product_id)
    assert product.rating == 0
    assert product.review_count == 0
    assert _store(store["id"]).total_reviews == 0


def test_failed_store_recompute_keeps_previous_review(monkeypatch, make_user, make_store, make_product):
    buyer = make_user("Buyer")
    product_id = make_product(make_store())
    _buy(buyer, product_id)
    orders.submit_review(buyer, product_id, 2, comment="Kurang")
    monkeypatch.setattr(orders, "_recompute_store_rating", _fail_store_rating)

    with pytest.raises(RuntimeError):
        orders.submit_review(buyer, product_id, 5, comment="Ternyata bagus")

    with database.session_scope() as session:
        review = session.execute(select(database.ProductReview)).scalar_one()
        assert (review.rating, review.comment) == (2, "Kurang")
    product = _product(product_id)
    assert product.rating == pytest.approx(2)
    assert product.review_count == 1


def test_shipped_orders_also_qualify(make_user, make_store, make_product):
    buyer = make_user("Buyer")
    store = make_store()
    product_id = make_product(store)
    order = _buy(buyer, product_id)
    orders.update_order_status(store["owner_id"], order["id"], "shipped")

    review = orders.submit_review(buyer, product_id, 4)

    assert review["order_id"] == order["id"]


def test_listing_hides_anonymous_reviewers(client, make_user, make_store, make_product):
    product_id = make_product(make_store())
    named = make_user("Ani")
    hidden = make_user("Rahasia")
    for buyer in (named, hidden):
        _buy(buyer, product_id)
    orders.submit_review(named, product_id, 5, comment="Mantap")
    orders.submit_review(hidden, product_id, 4, is_anonymous=True)

    response = client.get(f"/buyer/products/{product_id}/reviews")

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["review_count"] == 2
    names = sorted(review["reviewer_name"] for review in data["reviews"])
    assert names == ["Ani", "Anonymous"]
