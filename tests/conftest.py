from __future__ import annotations

import os
import sys
from pathlib import Path

from cryptography.fernet import Fernet

os.environ["MARKETPLACE_DATABASE_URL"] = "sqlite://"
os.environ["MARKETPLACE_SEED_DEMO"] = "0"
os.environ.setdefault("SENSITIVE_DATA_KEY", Fernet.generate_key().decode("utf-8"))
os.environ.pop("PAYMENT_WEBHOOK_TOKEN", None)

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest  # noqa: E402

import database  # noqa: E402
from app import app as flask_app  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_schema():
    database.Base.metadata.drop_all(bind=database.engine)
    database.Base.metadata.create_all(bind=database.engine)
    yield


@pytest.fixture
def client():
    flask_app.config.update(TESTING=True)
    with flask_app.test_client() as test_client:
        yield test_client


@pytest.fixture
def login(client):
    def _login(user_id: int) -> None:
        with client.session_transaction() as sess:
            sess["user_id"] = user_id

    return _login


@pytest.fixture
def make_user():
    counter = {"value": 0}

    def _make(full_name: str = "Test User", *, role: str = "buyer") -> int:
        counter["value"] += 1
        return database.create_user(f"user{counter['value']}@example.com", full_name, role=role)

    return _make


@pytest.fixture
def make_store(make_user):
    def _make(store_name: str = "Toko Uji", *, owner_id: int | None = None, city: str = "Bandung") -> dict:
        owner = owner_id or make_user(f"Owner of {store_name}")
        return database.create_store(owner, store_name, city=city)

    return _make


@pytest.fixture
def make_product():
    def _make(
        store: dict,
        *,
        name: str = "Produk",
        price: float = 10000,
        discount_price: float | None = None,
        stock: int = 10,
        status: str = "active",
        weight: float | None = None,
    ) -> int:
        with database.session_scope() as session:
            product = database.Product(
                seller_id=store["owner_id"],
                store_id=store["id"],
                name=name,
                slug=database._unique_slug(name),
                price=price,
                discount_price=discount_price,
                stock_quantity=stock,
                status=status,
                weight=weight,
                images=[f"https://img.example.com/{name}.png"],
            )
            session.add(product)
            session.flush()
            return product.id

    return _make


def stock_of(product_id: int) -> int:
    with database.session_scope() as session:
        return session.get(database.Product, product_id).stock_quantity


@pytest.fixture
def stock():
    return stock_of
