"""JSON API for the Pasarku marketplace."""

from __future__ import annotations

import hmac
import os
from functools import wraps
from typing import Any, Callable, Mapping, Optional, cast

from flask import Flask, g, jsonify, request, session
from werkzeug.exceptions import HTTPException

import database
import orders
from errors import MarketplaceError, Unauthorized, ValidationError

SEED_DEMO = os.getenv("MARKETPLACE_SEED_DEMO", "1") not in ("0", "false", "no")
PAYMENT_WEBHOOK_TOKEN = os.getenv("PAYMENT_WEBHOOK_TOKEN")

# Ensure the schema (and demo catalogue) exist before serving.
database.init_db(seed=SEED_DEMO)

app = Flask(__name__)
app.config["SECRET_KEY"] = os.getenv("MARKETPLACE_SECRET_KEY", "dev-secret-key-change-me")
app.json.sort_keys = False


# ----- Response envelope -----


def _respond(data: object = None, message: Optional[str] = None, status: int = 200):
    return jsonify({"error": False, "message": message, "data": data}), status


def _error_response(message: str, status: int):
    return jsonify({"error": True, "message": message, "data": None}), status


@app.errorhandler(MarketplaceError)
def handle_marketplace_error(exc: MarketplaceError):
    return _error_response(exc.message, exc.status_code)


@app.errorhandler(HTTPException)
def handle_http_error(exc: HTTPException):
    return _error_response(exc.description or exc.name, exc.code or 500)


@app.errorhandler(Exception)
def handle_unexpected_error(exc: Exception):
    app.logger.exception("Unhandled error on %s %s", request.method, request.path)
    return _error_response("Something went wrong. Please try again.", 500)


# ----- Request parsing -----


def _json_body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("The request body must be a JSON object.")
    return payload


def _text(payload: Mapping[str, Any], field: str, *, required: bool = False, max_length: int = 255) -> Optional[str]:
    """Trimmed string field, ``None`` when absent or blank."""
    raw = payload.get(field)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        if required:
            raise ValidationError(f"The {field} field is required.")
        return None
    if not isinstance(raw, str):
        raise ValidationError(f"The {field} field must be a string.")
    value = raw.strip()
    if max_length and len(value) > max_length:
        raise ValidationError(f"The {field} field may not be longer than {max_length} characters.")
    return value


def _integer(payload: Mapping[str, Any], field: str, *, required: bool = False) -> Optional[int]:
    raw = payload.get(field)
    if raw is None or raw == "":
        if required:
            raise ValidationError(f"The {field} field is required.")
        return None
    return database._whole_number(raw, field)


def _number(payload: Mapping[str, Any], field: str, *, required: bool = False) -> Optional[float]:
    raw = payload.get(field)
    if raw is None or raw == "":
        if required:
            raise ValidationError(f"The {field} field is required.")
        return None
    if isinstance(raw, bool):
        raise ValidationError(f"The {field} field must be a number.")
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"The {field} field must be a number.") from None


def _flag(payload: Mapping[str, Any], field: str) -> Optional[bool]:
    raw = payload.get(field)
    if raw is None:
        return None
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


def _string_list(payload: Mapping[str, Any], field: str) -> Optional[list[str]]:
    raw = payload.get(field)
    if raw is None:
        return None
    if not isinstance(raw, list) or not all(isinstance(entry, str) for entry in raw):
        raise ValidationError(f"The {field} field must be a list of strings.")
    return [entry.strip() for entry in raw if entry.strip()]


def _provided(**values: object) -> dict[str, object]:
    return {key: value for key, value in values.items() if value is not None}


# ----- Session helpers -----


def _current_user() -> Mapping[str, object] | None:
    """Return the signed-in user, clearing stale sessions if needed."""
    if "current_user" in g:
        return g.current_user

    user = None
    user_id = session.get("user_id")
    if user_id is not None:
        try:
            user = database.get_user(int(user_id))
        except (TypeError, ValueError):
            user = None
        if not user:
            session.pop("user_id", None)
    g.current_user = user
    return user


def _current_user_id() -> int | None:
    user = _current_user()
    if not user:
        return None
    return int(cast(int, user["id"]))


def login_required(view: Callable):
    """Reject the request with 401 unless a user id is in the session."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        if _current_user_id() is None:
            raise Unauthorized("Please sign in to continue.")
        return view(*args, **kwargs)

    return wrapped


# ----- Stores and profile -----


def _store_fields(payload: Mapping[str, Any]) -> dict[str, object]:
    return _provided(
        description=_text(payload, "description", max_length=5000),
        logo_url=_text(payload, "logo_url", max_length=2048),
        banner_url=_text(payload, "banner_url", max_length=2048),
        phone=_text(payload, "phone", max_length=32),
        email=_text(payload, "email"),
        address_line1=_text(payload, "address_line1", max_length=500),
        city=_text(payload, "city"),
        province=_text(payload, "province"),
        postal_code=_text(payload, "postal_code", max_length=16),
        is_open=_flag(payload, "is_open"),
    )


@app.post("/auth/store/create")
@login_required
def create_store():
    payload = _json_body()
    store = database.create_store(
        _current_user_id(), _text(payload, "store_name", required=True), **_store_fields(payload)
    )
    return _respond(store, "Store created.", 201)


@app.get("/auth/store/check")
@login_required
def check_store():
    return _respond(database.check_store(_current_user_id()))


@app.get("/seller/store")
@login_required
def seller_store():
    return _respond(database.get_store_for_owner(_current_user_id()))


@app.put("/seller/store")
@login_required
def update_seller_store():
    payload = _json_body()
    store = database.update_store(
        _current_user_id(), store_name=_text(payload, "store_name"), **_store_fields(payload)
    )
    return _respond(store, "Store updated.")


@app.get("/seller/dashboard/stats")
@login_required
def seller_dashboard_stats():
    return _respond(database.store_stats(_current_user_id()))


@app.get("/profile")
@login_required
def profile():
    return _respond(_current_user())


@app.put("/profile")
@login_required
def update_profile():
    payload = _json_body()
    user = database.update_profile(
        _current_user_id(),
        full_name=_text(payload, "full_name"),
        phone=_text(payload, "phone", max_length=32),
        bio=_text(payload, "bio", max_length=2000),
    )
    return _respond(user, "Profile updated.")


# ----- Addresses -----

ADDRESS_REQUIRED_FIELDS = ("recipient_name", "phone_number", "address_line1", "city", "province", "postal_code")


def _address_fields(payload: Mapping[str, Any], *, creating: bool) -> dict[str, object]:
    fields: dict[str, object] = {}
    for field in ADDRESS_REQUIRED_FIELDS:
        value = _text(payload, field, required=creating, max_length=500)
        if value is not None:
            fields[field] = value
    for field in ("country", "label"):
        value = _text(payload, field)
        if value is not None:
            fields[field] = value
    if "address_line2" in payload:
        fields["address_line2"] = _text(payload, "address_line2", max_length=500)
    return fields


@app.get("/addresses")
@login_required
def list_addresses():
    return _respond(database.fetch_addresses(_current_user_id()))


@app.post("/addresses")
@login_required
def create_address():
    payload = _json_body()
    address = database.create_address(
        _current_user_id(),
        is_primary=bool(_flag(payload, "is_primary")),
        **_address_fields(payload, creating=True),
    )
    return _respond(address, "Address saved.", 201)


@app.put("/addresses/<int:address_id>")
@login_required
def update_address(address_id: int):
    payload = _json_body()
    address = database.update_address(
        _current_user_id(),
        address_id,
        is_primary=_flag(payload, "is_primary"),
        **_address_fields(payload, creating=False),
    )
    return _respond(address, "Address updated.")


@app.delete("/addresses/<int:address_id>")
@login_required
def delete_address(address_id: int):
    database.delete_address(_current_user_id(), address_id)
    return _respond(None, "Address deleted.")


# ----- Catalog -----


@app.get("/buyer/products")
def list_products():
    products = database.fetch_products(
        search=request.args.get("search", "").strip() or None,
        min_price=request.args.get("min_price", type=float),
        max_price=request.args.get("max_price", type=float),
        min_rating=request.args.get("min_rating", type=float),
        city=request.args.get("city", "").strip() or None,
        promo=request.args.get("promo", "").lower() in ("1", "true", "yes"),
        sort_by=request.args.get("sort_by") or None,
    )
    return _respond(products)


@app.get("/buyer/products/<int:product_id>")
def product_detail(product_id: int):
    return _respond(database.get_product(product_id, viewer_id=_current_user_id()))


@app.get("/buyer/stores/<int:store_id>")
def store_detail(store_id: int):
    limit = max(1, min(request.args.get("limit", 60, type=int), 100))
    offset = max(0, request.args.get("offset", 0, type=int))
    return _respond(database.get_store_with_products(store_id, limit=limit, offset=offset))


@app.get("/categories")
def list_categories():
    categories = database.fetch_categories(
        level=request.args.get("level", type=int),
        parent_id=request.args.get("parent_id", type=int),
        include_children=request.args.get("include_children", "").lower() in ("1", "true", "yes"),
        limit=request.args.get("limit", 100, type=int),
    )
    return _respond(categories)


@app.get("/buyer/recommendations")
@login_required
def recommendations():
    return _respond(database.fetch_recommendations(_current_user_id()))


@app.get("/buyer/products/<int:product_id>/reviews")
def product_reviews(product_id: int):
    return _respond(orders.fetch_product_reviews(product_id))


@app.post("/buyer/products/<int:product_id>/reviews")
@login_required
def submit_product_review(product_id: int):
    payload = _json_body()
    review = orders.submit_review(
        _current_user_id(),
        product_id,
        rating=_integer(payload, "rating", required=True),
        comment=_text(payload, "comment", max_length=2000),
        media_urls=_string_list(payload, "media_urls"),
        is_anonymous=bool(_flag(payload, "is_anonymous")),
    )
    return _respond(review, "Review saved.", 201)


# ----- Seller products -----


def _product_fields(payload: Mapping[str, Any]) -> dict[str, object]:
    return _provided(
        description=_text(payload, "description", max_length=10000),
        discount_price=_number(payload, "discount_price"),
        category_id=_integer(payload, "category_id"),
        images=_string_list(payload, "images"),
        weight=_number(payload, "weight"),
        sku=_text(payload, "sku", max_length=64),
    )


@app.get("/seller/products")
@login_required
def seller_products():
    limit = max(1, min(request.args.get("limit", 20, type=int), 100))
    offset = max(0, request.args.get("offset", 0, type=int))
    result = database.fetch_seller_products(
        _current_user_id(), status=request.args.get("status") or None, limit=limit, offset=offset
    )
    return _respond(result)


@app.post("/seller/products")
@login_required
def create_seller_product():
    payload = _json_body()
    product = database.create_product(
        _current_user_id(),
        name=_text(payload, "name", required=True),
        price=_number(payload, "price", required=True),
        stock_quantity=_integer(payload, "stock_quantity", required=True),
        status=_text(payload, "status") or "draft",
        **_product_fields(payload),
    )
    return _respond(product, "Product created.", 201)


@app.put("/seller/products/<int:product_id>")
@login_required
def update_seller_product(product_id: int):
    payload = _json_body()
    fields = _product_fields(payload)
    fields.update(
        _provided(
            name=_text(payload, "name"),
            price=_number(payload, "price"),
            stock_quantity=_integer(payload, "stock_quantity"),
            status=_text(payload, "status"),
        )
    )
    product = database.update_product(_current_user_id(), product_id, **fields)
    return _respond(product, "Product updated.")


@app.delete("/seller/products/<int:product_id>")
@login_required
def delete_seller_product(product_id: int):
    database.delete_product(_current_user_id(), product_id)
    return _respond(None, "Product deleted.")


# ----- Cart -----


@app.get("/buyer/cart")
@login_required
def view_cart():
    return _respond(database.fetch_cart(_current_user_id()))


@app.post("/buyer/cart")
@login_required
def add_cart_item():
    payload = _json_body()
    item = database.add_to_cart(
        _current_user_id(),
        _integer(payload, "product_id", required=True),
        _integer(payload, "quantity", required=True),
        _text(payload, "variant"),
    )
    return _respond(item, "Added to cart.", 201)


@app.put("/buyer/cart/<int:item_id>")
@login_required
def update_cart_item(item_id: int):
    payload = _json_body()
    item = database.update_cart_item(_current_user_id(), item_id, _integer(payload, "quantity", required=True))
    return _respond(item, "Cart updated.")


@app.delete("/buyer/cart/<int:item_id>")
@login_required
def remove_cart_item(item_id: int):
    database.remove_cart_item(_current_user_id(), item_id)
    return _respond(None, "Item removed from cart.")


@app.delete("/buyer/cart")
@login_required
def clear_cart():
    database.clear_cart(_current_user_id())
    return _respond(None, "Cart cleared.")


# ----- Wishlist -----


@app.get("/buyer/wishlist/products")
@login_required
def wishlist_products():
    return _respond(database.fetch_wishlist_products(_current_user_id()))


@app.post("/buyer/wishlist/products")
@login_required
def add_wishlist_product():
    payload = _json_body()
    item = database.add_wishlist_product(_current_user_id(), _integer(payload, "product_id", required=True))
    return _respond(item, "Added to wishlist.", 201)


@app.delete("/buyer/wishlist/products/<int:product_id>")
@login_required
def remove_wishlist_product(product_id: int):
    database.remove_wishlist_product(_current_user_id(), product_id)
    return _respond(None, "Removed from wishlist.")


@app.get("/buyer/wishlist/stores")
@login_required
def favorite_stores():
    return _respond(database.fetch_favorite_stores(_current_user_id()))


@app.post("/buyer/wishlist/stores")
@login_required
def add_favorite_store():
    payload = _json_body()
    item = database.add_favorite_store(_current_user_id(), _integer(payload, "store_id", required=True))
    return _respond(item, "Store saved.", 201)


@app.delete("/buyer/wishlist/stores/<int:store_id>")
@login_required
def remove_favorite_store(store_id: int):
    database.remove_favorite_store(_current_user_id(), store_id)
    return _respond(None, "Store removed.")


# ----- Orders -----


@app.post("/orders/checkout")
@login_required
def checkout():
    payload = _json_body()
    created = orders.checkout(
        _current_user_id(),
        payload.get("items"),
        shipping_address=_text(payload, "shipping_address", required=True, max_length=1000),
        payment_method=_text(payload, "payment_method", required=True),
        notes=_text(payload, "notes", max_length=1000),
    )
    return _respond(created, "Order placed.", 201)


@app.get("/orders")
@login_required
def list_orders():
    return _respond(orders.fetch_orders_for_user(_current_user_id()))


@app.get("/orders/<int:order_id>")
@login_required
def order_detail(order_id: int):
    return _respond(orders.get_order_for_user(_current_user_id(), order_id))


@app.get("/orders/<int:order_id>/invoice")
@login_required
def order_invoice(order_id: int):
    return _respond(orders.build_invoice(_current_user_id(), order_id))


@app.get("/orders/<int:order_id>/shipment")
@login_required
def order_shipment(order_id: int):
    return _respond(orders.get_order_shipment(_current_user_id(), order_id))


@app.post("/orders/<int:order_id>/refund")
@login_required
def request_refund(order_id: int):
    payload = _json_body()
    refund = orders.request_refund(
        _current_user_id(),
        order_id,
        reason=_text(payload, "reason", required=True),
        description=_text(payload, "description", max_length=5000),
        refund_amount=_number(payload, "refund_amount"),
        evidence_urls=_string_list(payload, "evidence_urls"),
    )
    return _respond(refund, "Refund requested.", 201)


@app.get("/orders/refunds")
@login_required
def list_refunds():
    return _respond(orders.fetch_refunds(_current_user_id()))


@app.get("/orders/refunds/<int:refund_id>")
@login_required
def refund_detail(refund_id: int):
    return _respond(orders.get_refund(_current_user_id(), refund_id))


@app.post("/orders/<int:order_id>/dispute")
@login_required
def create_dispute(order_id: int):
    payload = _json_body()
    dispute = orders.create_dispute(
        _current_user_id(),
        order_id,
        title=_text(payload, "title", required=True),
        description=_text(payload, "description", required=True, max_length=5000),
        refund_request_id=_integer(payload, "refund_request_id"),
    )
    return _respond(dispute, "Dispute opened.", 201)


@app.get("/orders/disputes")
@login_required
def list_disputes():
    return _respond(orders.fetch_disputes(_current_user_id()))


@app.get("/seller/orders")
@login_required
def seller_orders():
    return _respond(orders.fetch_store_orders(_current_user_id(), status=request.args.get("status") or None))


@app.put("/seller/orders/<int:order_id>/status")
@login_required
def update_seller_order_status(order_id: int):
    payload = _json_body()
    order = orders.update_order_status(_current_user_id(), order_id, _text(payload, "status", required=True))
    return _respond(order, "Order status updated.")


@app.put("/seller/orders/<int:order_id>/shipment")
@login_required
def update_seller_order_shipment(order_id: int):
    payload = _json_body()
    fields = {name: _text(payload, name) for name in orders.SHIPMENT_TEXT_FIELDS + orders.SHIPMENT_TIME_FIELDS}
    shipment = orders.upsert_shipment(_current_user_id(), order_id, fields)
    return _respond(shipment, "Shipment saved.")


# ----- Payment and shipping -----


@app.post("/payment/webhook")
def payment_webhook():
    """Gateway callback keyed by order number."""

    if PAYMENT_WEBHOOK_TOKEN:
        supplied = request.headers.get("X-Webhook-Token", "")
        if not hmac.compare_digest(supplied, PAYMENT_WEBHOOK_TOKEN):
            app.logger.warning("Rejected payment webhook with a bad token from %s", request.remote_addr)
            return _error_response("Invalid webhook token.", 403)

    payload = _json_body()
    try:
        order = orders.apply_payment_status(
            _text(payload, "order_number", required=True),
            _text(payload, "status", required=True),
            payment_reference=_text(payload, "payment_reference"),
            paid_at=_text(payload, "paid_at"),
        )
    except MarketplaceError as exc:
        app.logger.warning("Payment webhook rejected: %s", exc.message)
        raise
    return _respond(order, "Payment status updated.")


@app.post("/shipping/estimate")
@login_required
def shipping_estimate():
    payload = _json_body()
    _text(payload, "destination_postal_code", required=True, max_length=16)
    items = payload.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("Provide at least one item to estimate.")
    parsed = []
    for entry in items:
        if not isinstance(entry, dict):
            raise ValidationError("Each item must be an object.")
        quantity = _integer(entry, "quantity", required=True)
        weight = _number(entry, "weight")
        if quantity is None or quantity < 1:
            raise ValidationError("Quantity must be at least 1.")
        if weight is not None and weight < 0:
            raise ValidationError("Weight must be zero or more.")
        parsed.append({"quantity": quantity, "weight": weight})
    return _respond({"options": orders.estimate_shipping(parsed)})


# ----- Notifications and chat -----


@app.get("/notifications")
@login_required
def list_notifications():
    unread_only = request.args.get("unread", "").lower() in ("1", "true", "yes")
    return _respond(database.fetch_notifications(_current_user_id(), unread_only=unread_only))


@app.post("/notifications/<int:notification_id>/read")
@login_required
def read_notification(notification_id: int):
    return _respond(database.mark_notification_read(_current_user_id(), notification_id))


@app.get("/chat/conversations")
@login_required
def list_conversations():
    return _respond(database.fetch_conversations(_current_user_id()))


@app.post("/chat/conversations/start")
@login_required
def start_conversation():
    payload = _json_body()
    conversation = database.start_conversation(
        _current_user_id(),
        store_id=_integer(payload, "store_id"),
        product_id=_integer(payload, "product_id"),
    )
    return _respond(conversation)


@app.get("/chat/conversations/<int:conversation_id>")
@login_required
def conversation_detail(conversation_id: int):
    return _respond(database.get_conversation(_current_user_id(), conversation_id))


@app.get("/chat/conversations/<int:conversation_id>/messages")
@login_required
def conversation_messages(conversation_id: int):
    return _respond(database.fetch_messages(_current_user_id(), conversation_id))


@app.post("/chat/conversations/<int:conversation_id>/messages")
@login_required
def send_conversation_message(conversation_id: int):
    payload = _json_body()
    message = database.send_message(
        _current_user_id(), conversation_id, _text(payload, "content", required=True, max_length=5000)
    )
    return _respond(message, None, 201)


if __name__ == "__main__":
    app.run(debug=True)
