"""Checkout and post-order workflows: payment, reviews, refunds, disputes, shipping."""

from __future__ import annotations

import logging
import random
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Mapping, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from database import (
    Dispute,
    Order,
    OrderItem,
    Product,
    ProductReview,
    RefundRequest,
    Shipment,
    Store,
    _as_float,
    _as_int,
    _iso,
    _money,
    _utcnow,
    _whole_number,
    notify_user,
    order_rows,
    record_activity,
    remove_purchased_cart_lines,
    require_store,
    session_scope,
)
from errors import (
    BusinessRuleViolation,
    Forbidden,
    InsufficientStock,
    MarketplaceError,
    NotFound,
    ValidationError,
)
from security import decrypt_sensitive_value, encrypt_sensitive_value

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "paid", "processing", "shipped", "delivered", "completed", "cancelled")
REVIEWABLE_ORDER_STATUSES = ("paid", "processing", "shipped", "delivered", "completed")
REFUND_IN_FLIGHT_STATUSES = ("pending", "approved", "processing")
# goods still in the seller's hands
STOCK_HOLDING_STATUSES = ("pending", "paid", "processing")
PAYMENT_SUCCESS_STATUSES = ("paid", "success")
PAYMENT_WEBHOOK_STATUSES = PAYMENT_SUCCESS_STATUSES + ("expired", "failed")

SHIPPING_BASE_COST = 10000
SHIPPING_COST_PER_KG = 2000
EXPRESS_SURCHARGE = 5000


# --------------------------------------------------------------------------------------
# Helpers
# --------------------------------------------------------------------------------------


@dataclass(frozen=True)
class CheckoutLine:
    product_id: int
    quantity: int
    variant: Optional[str] = None


def generate_order_number(issued: Optional[set[str]] = None) -> str:
    """Return an ``ORD-XXXX-<unix time>`` token not already in ``issued``."""

    alphabet = string.ascii_uppercase + string.digits
    while True:
        token = "".join(random.choices(alphabet, k=4))
        number = f"ORD-{token}-{int(time.time())}"
        if issued is None or number not in issued:
            if issued is not None:
                issued.add(number)
            return number


def _parse_timestamp(value: Optional[str], field: str) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError(f"{field} must be an ISO-8601 timestamp.") from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _parse_checkout_lines(items: object) -> list[CheckoutLine]:
    if not isinstance(items, list) or not items:
        raise ValidationError("Select at least one item to check out.")

    lines: list[CheckoutLine] = []
    for entry in items:
        if not isinstance(entry, Mapping):
            raise ValidationError("Each checkout item must be an object.")
        raw_product_id = entry.get("product_id")
        raw_quantity = entry.get("quantity")
        product_id = _whole_number(raw_product_id, "product_id") if raw_product_id is not None else 0
        quantity = _whole_number(raw_quantity, "quantity") if raw_quantity is not None else 0
        if product_id <= 0:
            raise ValidationError("Each checkout item needs a product_id.")
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1.")
        variant = entry.get("variant")
        if variant is not None:
            variant = str(variant).strip() or None
        lines.append(CheckoutLine(product_id=product_id, quantity=quantity, variant=variant))
    return lines


def _decrement_stock(session: Session, product: Product, quantity: int) -> None:
    """Atomically take ``quantity`` units, failing when stock would go negative."""

    result = session.execute(
        update(Product)
        .where(Product.id == product.id, Product.stock_quantity >= quantity)
        .values(stock_quantity=Product.stock_quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientStock(f"Not enough stock for {product.name}.")


def _release_stock(session: Session, order: Order) -> None:
    """Return an order's units to the shelf, at most once until they are reclaimed."""

    if order.stock_released_at is not None or order.status not in STOCK_HOLDING_STATUSES:
        return
    for item in order.items:
        if not item.product_id:
            continue
        session.execute(
            update(Product)
            .where(Product.id == item.product_id)
            .values(stock_quantity=Product.stock_quantity + item.quantity)
            .execution_options(synchronize_session=False)
        )
    order.stock_released_at = _utcnow()


def _reclaim_stock(session: Session, order: Order) -> None:
    """Take released units again when a cancelled order is reopened."""

    if order.stock_released_at is None:
        return
    for item in order.items:
        product = session.get(Product, item.product_id) if item.product_id else None
        if product is not None:
            _decrement_stock(session, product, item.quantity)
    order.stock_released_at = None


def _serialize_order_item(item: OrderItem) -> dict[str, object]:
    return {
        "id": item.id,
        "product_id": item.product_id,
        "product_name": item.product_name,
        "variant": item.variant,
        "quantity": item.quantity,
        "price": _money(item.price),
        "subtotal": _money(item.subtotal),
    }


def _serialize_shipment(shipment: Optional[Shipment]) -> Optional[dict[str, object]]:
    if not shipment:
        return None
    return {
        "id": shipment.id,
        "order_id": shipment.order_id,
        "courier_code": shipment.courier_code,
        "courier_name": shipment.courier_name,
        "service_name": shipment.service_name,
        "tracking_number": shipment.tracking_number,
        "status": shipment.status,
        "estimated_delivery_at": _iso(shipment.estimated_delivery_at),
        "shipped_at": _iso(shipment.shipped_at),
        "delivered_at": _iso(shipment.delivered_at),
        "updated_at": _iso(shipment.updated_at),
    }


def _serialize_order(order: Order, *, include_items: bool = True) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": order.id,
        "order_number": order.order_number,
        "user_id": order.user_id,
        "store_id": order.store_id,
        "store": {"id": order.store.id, "name": order.store.store_name} if order.store else None,
        "total_amount": _money(order.total_amount),
        "shipping_cost": _money(order.shipping_cost),
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "payment_reference": order.payment_reference,
        "shipping_address": decrypt_sensitive_value(order.shipping_address),
        "notes": order.notes,
        "refund_status": order.refund_status,
        "paid_at": _iso(order.paid_at),
        "payment_expired_at": _iso(order.payment_expired_at),
        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
    }
    if include_items:
        payload["items"] = [_serialize_order_item(item) for item in order.items]
    return payload


def _serialize_refund(refund: RefundRequest) -> dict[str, object]:
    return {
        "id": refund.id,
        "order_id": refund.order_id,
        "user_id": refund.user_id,
        "reason": refund.reason,
        "description": refund.description,
        "status": refund.status,
        "refund_amount": _money(refund.refund_amount) if refund.refund_amount is not None else None,
        "evidence_urls": list(refund.evidence_urls or []),
        "resolved_at": _iso(refund.resolved_at),
        "created_at": _iso(refund.created_at),
    }


def _serialize_dispute(dispute: Dispute) -> dict[str, object]:
    return {
        "id": dispute.id,
        "order_id": dispute.order_id,
        "buyer_id": dispute.buyer_id,
        "seller_id": dispute.seller_id,
        "refund_request_id": dispute.refund_request_id,
        "title": dispute.title,
        "description": dispute.description,
        "status": dispute.status,
        "resolution": dispute.resolution,
        "created_at": _iso(dispute.created_at),
    }


def _serialize_review(review: ProductReview) -> dict[str, object]:
    reviewer = "Anonymous" if review.is_anonymous or not review.user else review.user.full_name
    return {
        "id": review.id,
        "product_id": review.product_id,
        "order_id": review.order_id,
        "user_id": None if review.is_anonymous else review.user_id,
        "reviewer_name": reviewer,
        "rating": review.rating,
        "comment": review.comment,
        "media_urls": list(review.media_urls or []),
        "is_anonymous": review.is_anonymous,
        "status": review.status,
        "created_at": _iso(review.created_at),
        "updated_at": _iso(review.updated_at),
    }


def _buyer_order(session: Session, user_id: int, order_id: int) -> Order:
    order = session.execute(
        select(Order)
        .options(selectinload(Order.items), selectinload(Order.store), selectinload(Order.shipment))
        .where(Order.id == order_id, Order.user_id == user_id)
    ).scalar_one_or_none()
    if not order:
        raise NotFound("Order not found.")
    return order


def _seller_order(session: Session, seller_user_id: int, order_id: int) -> Order:
    store = require_store(session, seller_user_id)
    order = session.execute(
        select(Order)
        .options(selectinload(Order.items), selectinload(Order.store), selectinload(Order.shipment))
        .where(Order.id == order_id, Order.store_id == store.id)
    ).scalar_one_or_none()
    if not order:
        raise NotFound("Order not found.")
    return order


# --------------------------------------------------------------------------------------
# Checkout
# --------------------------------------------------------------------------------------


def checkout(
    user_id: int,
    items: object,
    shipping_address: str,
    payment_method: str,
    notes: Optional[str] = None,
) -> list[dict[str, object]]:
    """Turn the requested lines into one pending order per store.

    All orders, stock decrements and activity events are written in a single
    transaction. The first failure (unknown product, insufficient stock) rolls
    every write back and is re-raised to the caller.
    """

    lines = _parse_checkout_lines(items)
    if not shipping_address or not str(shipping_address).strip():
        raise ValidationError("A shipping address is required.")
    if not payment_method or not str(payment_method).strip():
        raise ValidationError("A payment method is required.")

    try:
        with session_scope() as session:
            resolved: list[tuple[CheckoutLine, Product]] = []
            for line in lines:
                product = session.get(Product, line.product_id)
                if not product:
                    raise ValidationError(f"Product {line.product_id} does not exist.")
                if product.stock_quantity < line.quantity:
                    raise InsufficientStock(f"Not enough stock for {product.name}.")
                resolved.append((line, product))

            partitions: dict[Optional[int], list[tuple[CheckoutLine, Product]]] = {}
            for line, product in resolved:
                partitions.setdefault(product.store_id, []).append((line, product))

            issued: set[str] = set()
            encrypted_address = encrypt_sensitive_value(str(shipping_address).strip())
            orders: list[Order] = []
            for store_id, store_lines in partitions.items():
                order = Order(
                    user_id=user_id,
                    store_id=store_id,
                    order_number=generate_order_number(issued),
                    status="pending",
                    payment_status="unpaid",
                    payment_method=str(payment_method).strip(),
                    shipping_address=encrypted_address,
                    notes=notes,
                )
                session.add(order)
                session.flush()

                total = 0.0
                for line, product in store_lines:
                    unit_price = _money(product.effective_price)
                    subtotal = round(unit_price * line.quantity, 2)
                    order.items.append(
                        OrderItem(
                            product_id=product.id,
                            product_name=product.name,
                            variant=line.variant,
                            quantity=line.quantity,
                            price=unit_price,
                            subtotal=subtotal,
                        )
                    )
                    _decrement_stock(session, product, line.quantity)
                    record_activity(
                        session, user_id, product.id, "order", {"order_id": order.id, "quantity": line.quantity}
                    )
                    total += subtotal
                order.total_amount = round(total, 2)
                orders.append(order)

            remove_purchased_cart_lines(session, user_id, ((line.product_id, line.variant) for line in lines))
            session.flush()
            payload = [_serialize_order(order) for order in orders]
    except MarketplaceError as exc:
        logger.warning("Checkout for user %s rolled back: %s", user_id, exc.message)
        raise

    logger.info(
        "User %s checked out %d order(s): %s",
        user_id,
        len(payload),
        ", ".join(str(order["order_number"]) for order in payload),
    )
    return payload


# --------------------------------------------------------------------------------------
# Order queries and seller fulfilment
# --------------------------------------------------------------------------------------


def fetch_orders_for_user(user_id: int) -> list[dict[str, object]]:
    """Return the buyer's orders, newest first."""

    with session_scope() as session:
        orders = order_rows(
            session, select(Order).where(Order.user_id == user_id).order_by(Order.created_at.desc(), Order.id.desc())
        )
        return [_serialize_order(order) for order in orders]


def get_order_for_user(user_id: int, order_id: int) -> dict[str, object]:
    """Return an order visible to its buyer or to the seller of its store."""

    with session_scope() as session:
        orders = order_rows(session, select(Order).where(Order.id == order_id))
        order = orders[0] if orders else None
        if not order:
            raise NotFound("Order not found.")
        owner_id = order.store.owner_id if order.store else None
        if user_id not in (order.user_id, owner_id):
            raise NotFound("Order not found.")
        payload = _serialize_order(order)
        payload["shipment"] = _serialize_shipment(order.shipment)
        return payload


def fetch_store_orders(seller_user_id: int, *, status: Optional[str] = None) -> list[dict[str, object]]:
    with session_scope() as session:
        store = require_store(session, seller_user_id)
        stmt = select(Order).where(Order.store_id == store.id)
        if status:
            stmt = stmt.where(Order.status == status)
        orders = order_rows(session, stmt.order_by(Order.created_at.desc(), Order.id.desc()))
        result = []
        for order in orders:
            payload = _serialize_order(order)
            payload["buyer"] = {"id": order.user.id, "full_name": order.user.full_name} if order.user else None
            result.append(payload)
        return result


def update_order_status(seller_user_id: int, order_id: int, status: str) -> dict[str, object]:
    """Move a store order to any allowed status and tell the buyer."""

    if status not in ORDER_STATUSES:
        raise ValidationError(f"Status must be one of: {', '.join(ORDER_STATUSES)}.")
    with session_scope() as session:
        order = _seller_order(session, seller_user_id, order_id)
        previous = order.status
        if status == "cancelled":
            _release_stock(session, order)
        elif previous == "cancelled":
            _reclaim_stock(session, order)
        order.status = status
        notify_user(
            session,
            order.user_id,
            "order",
            "Order status updated",
            f"Order {order.order_number} is now {status}.",
            {"order_id": order.id, "status": status},
        )
        session.flush()
        logger.info("Order %s moved from %s to %s", order.order_number, previous, status)
        return _serialize_order(order)


def build_invoice(user_id: int, order_id: int) -> dict[str, object]:
    with session_scope() as session:
        order = _buyer_order(session, user_id, order_id)
        buyer = order.user
        total = _money(order.total_amount)
        shipping = _money(order.shipping_cost)
        return {
            "order_number": order.order_number,
            "issued_at": _iso(order.created_at),
            "buyer": {"id": order.user_id, "name": buyer.full_name, "email": buyer.email},
            "store": (
                {"id": order.store.id, "name": order.store.store_name, "city": order.store.city}
                if order.store
                else None
            ),
            "items": [
                {
                    "product_id": item.product_id,
                    "name": item.product_name,
                    "variant": item.variant,
                    "quantity": item.quantity,
                    "price": _money(item.price),
                    "subtotal": _money(item.subtotal),
                }
                for item in order.items
            ],
            "total_amount": total,
            "shipping_cost": shipping,
            "grand_total": round(total + shipping, 2),
            "payment_status": order.payment_status,
            "payment_method": order.payment_method,
        }


# --------------------------------------------------------------------------------------
# Payment gateway webhook
# --------------------------------------------------------------------------------------


def apply_payment_status(
    order_number: str,
    status: str,
    payment_reference: Optional[str] = None,
    paid_at: Optional[str] = None,
) -> dict[str, object]:
    """Apply a gateway payment notification to the order it names.

    Repeating a notification leaves the order as it is. A successful payment
    never moves an order that has progressed past ``pending`` back to ``paid``.
    """

    status_key = (status or "").strip().lower()
    if status_key not in PAYMENT_WEBHOOK_STATUSES:
        raise ValidationError(f"Unrecognised payment status: {status!r}.")
    paid_timestamp = _parse_timestamp(paid_at, "paid_at")

    with session_scope() as session:
        order = session.execute(
            select(Order).options(selectinload(Order.items)).where(Order.order_number == order_number)
        ).scalar_one_or_none()
        if not order:
            raise NotFound("Order not found.")

        if payment_reference:
            order.payment_reference = payment_reference

        if status_key in PAYMENT_SUCCESS_STATUSES:
            order.payment_status = "paid"
            if order.status == "pending":
                order.status = "paid"
            order.paid_at = paid_timestamp or order.paid_at or _utcnow()
            title, body = "Payment received", f"Payment for order {order.order_number} was received."
        elif status_key == "expired":
            _release_stock(session, order)
            order.payment_status = "expired"
            order.status = "cancelled"
            order.payment_expired_at = order.payment_expired_at or _utcnow()
            title, body = "Payment expired", f"Payment for order {order.order_number} expired and it was cancelled."
        else:
            order.payment_status = "failed"
            title, body = "Payment failed", f"Payment for order {order.order_number} failed."

        notify_user(
            session,
            order.user_id,
            "payment",
            title,
            body,
            {"order_id": order.id, "payment_status": order.payment_status},
        )
        session.flush()
        logger.info("Order %s payment is now %s", order.order_number, order.payment_status)
        return _serialize_order(order, include_items=False)


# --------------------------------------------------------------------------------------
# Reviews
# --------------------------------------------------------------------------------------


def _recompute_product_rating(session: Session, product: Product) -> None:
    average, count = session.execute(
        select(func.avg(ProductReview.rating), func.count(ProductReview.id)).where(
            ProductReview.product_id == product.id, ProductReview.status == "published"
        )
    ).one()
    product.rating = round(float(average or 0), 2)
    product.review_count = int(count or 0)


def _recompute_store_rating(session: Session, store_id: int) -> None:
    total_reviews, average = session.execute(
        select(func.sum(Product.review_count), func.avg(Product.rating)).where(
            Product.store_id == store_id, Product.review_count > 0
        )
    ).one()
    store = session.get(Store, store_id)
    if store:
        store.total_reviews = int(total_reviews or 0)
        store.average_rating = round(float(average or 0), 2)


def submit_review(
    user_id: int,
    product_id: int,
    rating: int,
    comment: Optional[str] = None,
    media_urls: Optional[Sequence[str]] = None,
    is_anonymous: bool = False,
) -> dict[str, object]:
    """Create or replace the caller's review of a purchased product."""

    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("Rating must be a whole number from 1 to 5.")

    with session_scope() as session:
        product = session.get(Product, product_id)
        if not product:
            raise NotFound("Product not found.")

        order_id = session.execute(
            select(Order.id)
            .join(OrderItem, Order.items)
            .where(
                Order.user_id == user_id,
                OrderItem.product_id == product_id,
                Order.status.in_(REVIEWABLE_ORDER_STATUSES),
            )
            .order_by(Order.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        if order_id is None:
            raise Forbidden("You can only review products from your paid orders.")

        review = session.execute(
            select(ProductReview).where(ProductReview.user_id == user_id, ProductReview.product_id == product_id)
        ).scalars().first()
        if review is None:
            review = ProductReview(user_id=user_id, product_id=product_id, order_id=order_id)
            session.add(review)
        review.rating = rating
        review.comment = comment
        review.media_urls = list(media_urls or [])
        review.is_anonymous = bool(is_anonymous)
        review.status = "published"
        session.flush()

        _recompute_product_rating(session, product)
        session.flush()
        if product.store_id:
            _recompute_store_rating(session, product.store_id)
        session.flush()
        return _serialize_review(review)


def fetch_product_reviews(product_id: int) -> dict[str, object]:
    with session_scope() as session:
        product = session.get(Product, product_id)
        if not product:
            raise NotFound("Product not found.")
        reviews = session.execute(
            select(ProductReview)
            .options(selectinload(ProductReview.user))
            .where(ProductReview.product_id == product_id, ProductReview.status == "published")
            .order_by(ProductReview.created_at.desc(), ProductReview.id.desc())
        ).scalars().all()
        return {
            "product_id": product.id,
            "rating": round(float(product.rating or 0), 2),
            "review_count": int(product.review_count or 0),
            "reviews": [_serialize_review(review) for review in reviews],
        }


# --------------------------------------------------------------------------------------
# Refunds and disputes
# --------------------------------------------------------------------------------------


def request_refund(
    user_id: int,
    order_id: int,
    reason: str,
    description: Optional[str] = None,
    refund_amount: Optional[float] = None,
    evidence_urls: Optional[Sequence[str]] = None,
) -> dict[str, object]:
    """Open a refund request; only one may be in flight per order."""

    if not reason or not str(reason).strip():
        raise ValidationError("A refund reason is required.")

    with session_scope() as session:
        order = _buyer_order(session, user_id, order_id)
        if order.status == "cancelled":
            raise BusinessRuleViolation("Cancelled orders cannot be refunded.")
        if refund_amount is not None:
            amount = _as_float(refund_amount, -1)
            if amount < 0 or amount > _money(order.total_amount):
                raise ValidationError("Refund amount must be between 0 and the order total.")
            refund_amount = round(amount, 2)

        in_flight = session.execute(
            select(RefundRequest.id).where(
                RefundRequest.order_id == order.id,
                RefundRequest.user_id == user_id,
                RefundRequest.status.in_(REFUND_IN_FLIGHT_STATUSES),
            )
        ).first()
        if in_flight:
            raise BusinessRuleViolation("A refund for this order is already in progress.")

        refund = RefundRequest(
            order_id=order.id,
            user_id=user_id,
            reason=str(reason).strip(),
            description=description,
            refund_amount=refund_amount,
            evidence_urls=list(evidence_urls or []),
            status="pending",
        )
        session.add(refund)
        order.refund_status = "requested"
        if order.store:
            notify_user(
                session,
                order.store.owner_id,
                "refund",
                "Refund requested",
                f"The buyer of order {order.order_number} requested a refund.",
                {"order_id": order.id},
            )
        session.flush()
        return _serialize_refund(refund)


def fetch_refunds(user_id: int) -> list[dict[str, object]]:
    with session_scope() as session:
        refunds = session.execute(
            select(RefundRequest)
            .where(RefundRequest.user_id == user_id)
            .order_by(RefundRequest.created_at.desc(), RefundRequest.id.desc())
        ).scalars().all()
        return [_serialize_refund(refund) for refund in refunds]


def get_refund(user_id: int, refund_id: int) -> dict[str, object]:
    with session_scope() as session:
        refund = session.execute(
            select(RefundRequest).where(RefundRequest.id == refund_id, RefundRequest.user_id == user_id)
        ).scalar_one_or_none()
        if not refund:
            raise NotFound("Refund request not found.")
        payload = _serialize_refund(refund)
        payload["order"] = _serialize_order(refund.order, include_items=False)
        return payload


def create_dispute(
    user_id: int,
    order_id: int,
    title: str,
    description: str,
    refund_request_id: Optional[int] = None,
) -> dict[str, object]:
    if not title or not str(title).strip():
        raise ValidationError("A dispute title is required.")
    if not description or not str(description).strip():
        raise ValidationError("A dispute description is required.")

    with session_scope() as session:
        order = _buyer_order(session, user_id, order_id)
        if not order.store:
            raise ValidationError("This order has no store to raise a dispute with.")
        if refund_request_id is not None:
            refund = session.get(RefundRequest, refund_request_id)
            if not refund or refund.order_id != order.id:
                raise ValidationError("The refund request does not belong to this order.")

        dispute = Dispute(
            order_id=order.id,
            buyer_id=user_id,
            seller_id=order.store.owner_id,
            refund_request_id=refund_request_id,
            title=str(title).strip(),
            description=str(description).strip(),
            status="open",
        )
        session.add(dispute)
        notify_user(
            session,
            order.store.owner_id,
            "dispute",
            "Dispute opened",
            f"A dispute was opened for order {order.order_number}.",
            {"order_id": order.id},
        )
        session.flush()
        return _serialize_dispute(dispute)


def fetch_disputes(user_id: int) -> list[dict[str, object]]:
    with session_scope() as session:
        disputes = session.execute(
            select(Dispute)
            .where(Dispute.buyer_id == user_id)
            .order_by(Dispute.created_at.desc(), Dispute.id.desc())
        ).scalars().all()
        return [_serialize_dispute(dispute) for dispute in disputes]


# --------------------------------------------------------------------------------------
# Shipping
# --------------------------------------------------------------------------------------


def estimate_shipping(items: Iterable[Mapping[str, object]]) -> list[dict[str, object]]:
    """Flat-rate quote: a base fee plus a per-kilogram charge, at least one kilogram."""

    total_weight = 0.0
    for item in items:
        weight = item.get("weight")
        weight = 1.0 if weight is None else _as_float(weight, 1.0)
        total_weight += weight * _as_int(item.get("quantity"), 1)

    cost = SHIPPING_BASE_COST + SHIPPING_COST_PER_KG * max(1.0, total_weight)
    cost = round(cost, 2)
    return [
        {
            "courier_code": "REG",
            "courier_name": "Regular",
            "service_name": "Reguler",
            "cost": cost,
            "estimated_days": 3,
        },
        {
            "courier_code": "EXP",
            "courier_name": "Express",
            "service_name": "Express",
            "cost": round(cost + EXPRESS_SURCHARGE, 2),
            "estimated_days": 1,
        },
    ]


def get_order_shipment(user_id: int, order_id: int) -> dict[str, object]:
    with session_scope() as session:
        order = _buyer_order(session, user_id, order_id)
        return {
            "order": _serialize_order(order, include_items=False),
            "shipment": _serialize_shipment(order.shipment),
        }


SHIPMENT_TEXT_FIELDS = ("courier_code", "courier_name", "service_name", "tracking_number", "status")
SHIPMENT_TIME_FIELDS = ("estimated_delivery_at", "shipped_at", "delivered_at")


def upsert_shipment(seller_user_id: int, order_id: int, fields: Mapping[str, object]) -> dict[str, object]:
    """Record courier and tracking details for one of the seller's orders."""

    timestamps = {name: _parse_timestamp(fields.get(name), name) for name in SHIPMENT_TIME_FIELDS}  # type: ignore[arg-type]
    with session_scope() as session:
        order = _seller_order(session, seller_user_id, order_id)
        shipment = order.shipment
        if shipment is None:
            shipment = Shipment(order_id=order.id)
            session.add(shipment)
        for name in SHIPMENT_TEXT_FIELDS:
            if fields.get(name) is not None:
                setattr(shipment, name, str(fields[name]))
        for name, value in timestamps.items():
            if value is not None:
                setattr(shipment, name, value)
        session.flush()
        return _serialize_shipment(shipment) or {}
