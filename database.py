"""SQLAlchemy-powered data layer for the Pasarku marketplace."""

from __future__ import annotations

import logging
import os
import re
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Optional, Sequence
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    delete,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
    relationship,
    selectinload,
    sessionmaker,
)
from sqlalchemy.pool import StaticPool

from errors import BusinessRuleViolation, Forbidden, InsufficientStock, NotFound, ValidationError
from security import decrypt_fields, encrypt_fields, reencrypt_sensitive_value

logger = logging.getLogger(__name__)

# --------------------------------------------------------------------------------------
# Small coercion helpers
# --------------------------------------------------------------------------------------


def _as_int(value: object, default: int = 0) -> int:
    """Best-effort conversion to int with a fallback."""

    try:
        return int(str(value))
    except (TypeError, ValueError):
        return default


def _whole_number(value: object, field: str) -> int:
    """Strict int parsing for request input: accepts 3, 3.0 and "3" but not 3.5 or True."""

    message = f"The {field} field must be a whole number."
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(message)
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        raise ValidationError(message) from None


def _as_float(value: object, default: float = 0.0) -> float:
    """Best-effort conversion to float with a fallback."""

    try:
        return float(str(value))
    except (TypeError, ValueError):
        return default


def _money(value: object) -> float:
    return round(_as_float(value), 2)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-")
    return slug or "item"


def _unique_slug(text: str) -> str:
    return f"{_slugify(text)}-{uuid4().hex[:6]}"


def _clean_variant(variant: Optional[str]) -> Optional[str]:
    if variant is None:
        return None
    cleaned = str(variant).strip()
    return cleaned or None


# --------------------------------------------------------------------------------------
# SQLAlchemy setup
# --------------------------------------------------------------------------------------

DEFAULT_DB_PATH = Path(__file__).with_name("marketplace.db")
DATABASE_URL = os.getenv("MARKETPLACE_DATABASE_URL") or f"sqlite:///{DEFAULT_DB_PATH}"


def _build_engine(url: str) -> Engine:
    """Create the engine, sharing one connection when the database lives in memory."""

    if url.startswith("sqlite"):
        options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
        return create_engine(url, future=True, **options)
    return create_engine(url, future=True, pool_pre_ping=True)


engine = _build_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String, nullable=False, default="")
    phone: Mapped[Optional[str]] = mapped_column(String)
    role: Mapped[str] = mapped_column(String, nullable=False, default="buyer")
    bio: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    store: Mapped[Optional["Store"]] = relationship("Store", back_populates="owner", uselist=False)
    addresses: Mapped[list["Address"]] = relationship(
        "Address", back_populates="user", cascade="all, delete-orphan"
    )


class Store(Base):
    __tablename__ = "stores"

    id: Mapped[int] = mapped_column(primary_key=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    store_name: Mapped[str] = mapped_column(String, nullable=False)
    store_slug: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    logo_url: Mapped[Optional[str]] = mapped_column(String)
    banner_url: Mapped[Optional[str]] = mapped_column(String)
    phone: Mapped[Optional[str]] = mapped_column(String)
    email: Mapped[Optional[str]] = mapped_column(String)
    address_line1: Mapped[Optional[str]] = mapped_column(Text)
    city: Mapped[Optional[str]] = mapped_column(String)
    province: Mapped[Optional[str]] = mapped_column(String)
    postal_code: Mapped[Optional[str]] = mapped_column(String)
    is_open: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    total_products: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_reviews: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_rating: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    owner: Mapped[User] = relationship("User", back_populates="store")
    products: Mapped[list["Product"]] = relationship("Product", back_populates="store")


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    slug: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id", ondelete="SET NULL"))
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    children: Mapped[list["Category"]] = relationship("Category")


class Product(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(primary_key=True)
    seller_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    store_id: Mapped[Optional[int]] = mapped_column(ForeignKey("stores.id", ondelete="SET NULL"))
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id", ondelete="SET NULL"))
    name: Mapped[str] = mapped_column(String, nullable=False)
    slug: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    discount_price: Mapped[Optional[float]] = mapped_column(Float)
    stock_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sku: Mapped[Optional[str]] = mapped_column(String, unique=True)
    images: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    weight: Mapped[Optional[float]] = mapped_column(Float)
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    rating: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    review_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    seller: Mapped[User] = relationship("User")
    store: Mapped[Optional[Store]] = relationship("Store", back_populates="products")
    category: Mapped[Optional[Category]] = relationship("Category")

    @property
    def effective_price(self) -> float:
        """Discount price when one is set and positive, otherwise the list price."""

        if self.discount_price and self.discount_price > 0:
            return float(self.discount_price)
        return float(self.price)

    @property
    def main_image(self) -> Optional[str]:
        return self.images[0] if self.images else None


class Cart(Base):
    __tablename__ = "carts"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    items: Mapped[list["CartItem"]] = relationship("CartItem", back_populates="cart", cascade="all, delete-orphan")


class CartItem(Base):
    __tablename__ = "cart_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    cart_id: Mapped[int] = mapped_column(ForeignKey("carts.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    variant: Mapped[Optional[str]] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    cart: Mapped[Cart] = relationship("Cart", back_populates="items")
    product: Mapped[Optional[Product]] = relationship("Product")


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    store_id: Mapped[Optional[int]] = mapped_column(ForeignKey("stores.id", ondelete="SET NULL"))
    order_number: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    total_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    payment_status: Mapped[str] = mapped_column(String, nullable=False, default="unpaid")
    payment_method: Mapped[Optional[str]] = mapped_column(String)
    payment_reference: Mapped[Optional[str]] = mapped_column(String)
    shipping_address: Mapped[str] = mapped_column(Text, nullable=False, default="")
    shipping_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    refund_status: Mapped[Optional[str]] = mapped_column(String)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    payment_expired_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    stock_released_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    user: Mapped[User] = relationship("User")
    store: Mapped[Optional[Store]] = relationship("Store")
    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id"
    )
    shipment: Mapped[Optional["Shipment"]] = relationship(
        "Shipment", back_populates="order", uselist=False, cascade="all, delete-orphan"
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[Optional[int]] = mapped_column(ForeignKey("products.id", ondelete="SET NULL"))
    product_name: Mapped[str] = mapped_column(String, nullable=False)
    variant: Mapped[Optional[str]] = mapped_column(String)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    price: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    subtotal: Mapped[float] = mapped_column(Float, nullable=False, default=0)

    order: Mapped[Order] = relationship("Order", back_populates="items")


class RefundRequest(Base):
    __tablename__ = "refund_requests"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    reason: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    refund_amount: Mapped[Optional[float]] = mapped_column(Float)
    evidence_urls: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    order: Mapped[Order] = relationship("Order")


class Dispute(Base):
    __tablename__ = "disputes"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    buyer_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    seller_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    refund_request_id: Mapped[Optional[int]] = mapped_column(ForeignKey("refund_requests.id", ondelete="SET NULL"))
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="open")
    resolution: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    order: Mapped[Order] = relationship("Order")


class ProductReview(Base):
    __tablename__ = "product_reviews"
    __table_args__ = (UniqueConstraint("user_id", "product_id", "order_id", name="uq_review_user_product_order"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    order_id: Mapped[Optional[int]] = mapped_column(ForeignKey("orders.id", ondelete="SET NULL"))
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text)
    media_urls: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_anonymous: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="published")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    user: Mapped[User] = relationship("User")


class Shipment(Base):
    __tablename__ = "shipments"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), unique=True, nullable=False)
    courier_code: Mapped[Optional[str]] = mapped_column(String)
    courier_name: Mapped[Optional[str]] = mapped_column(String)
    service_name: Mapped[Optional[str]] = mapped_column(String)
    tracking_number: Mapped[Optional[str]] = mapped_column(String)
    status: Mapped[Optional[str]] = mapped_column(String)
    estimated_delivery_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    order: Mapped[Order] = relationship("Order", back_populates="shipment")


class Address(Base):
    __tablename__ = "addresses"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    recipient_name: Mapped[str] = mapped_column(Text, nullable=False)
    phone_number: Mapped[str] = mapped_column(Text, nullable=False)
    address_line1: Mapped[str] = mapped_column(Text, nullable=False)
    address_line2: Mapped[Optional[str]] = mapped_column(Text)
    city: Mapped[str] = mapped_column(String, nullable=False)
    province: Mapped[str] = mapped_column(String, nullable=False)
    postal_code: Mapped[str] = mapped_column(Text, nullable=False)
    country: Mapped[str] = mapped_column(String, nullable=False, default="Indonesia")
    label: Mapped[str] = mapped_column(String, nullable=False, default="Rumah")
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    user: Mapped[User] = relationship("User", back_populates="addresses")


class WishlistItem(Base):
    __tablename__ = "wishlist_items"
    __table_args__ = (UniqueConstraint("user_id", "product_id", name="uq_wishlist_user_product"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    product: Mapped[Product] = relationship("Product")


class FavoriteStore(Base):
    __tablename__ = "favorite_stores"
    __table_args__ = (UniqueConstraint("user_id", "store_id", name="uq_favorite_user_store"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    store_id: Mapped[int] = mapped_column(ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    store: Mapped[Store] = relationship("Store")


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[Optional[str]] = mapped_column(String)
    title: Mapped[str] = mapped_column(String, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSON)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


class ChatConversation(Base):
    __tablename__ = "chat_conversations"

    id: Mapped[int] = mapped_column(primary_key=True)
    buyer_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    seller_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    store_id: Mapped[int] = mapped_column(ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    buyer: Mapped[User] = relationship("User", foreign_keys=[buyer_id])
    seller: Mapped[User] = relationship("User", foreign_keys=[seller_id])
    store: Mapped[Store] = relationship("Store")
    messages: Mapped[list["ChatMessage"]] = relationship(
        "ChatMessage", back_populates="conversation", cascade="all, delete-orphan", order_by="ChatMessage.id"
    )


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(primary_key=True)
    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("chat_conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    sender_type: Mapped[str] = mapped_column(String, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    conversation: Mapped[ChatConversation] = relationship("ChatConversation", back_populates="messages")


class ProductActivity(Base):
    """Append-only log of user/product interactions feeding recommendations."""

    __tablename__ = "product_activities"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False)
    meta: Mapped[Optional[dict]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


# --------------------------------------------------------------------------------------
# Session helper
# --------------------------------------------------------------------------------------


@contextmanager
def session_scope() -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""

    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def record_activity(
    session: Session, user_id: int, product_id: int, kind: str, meta: Optional[Mapping[str, object]] = None
) -> None:
    session.add(ProductActivity(user_id=user_id, product_id=product_id, type=kind, meta=dict(meta or {})))


def notify_user(
    session: Session,
    user_id: int,
    kind: str,
    title: str,
    body: str,
    data: Optional[Mapping[str, object]] = None,
) -> None:
    """Persist an in-app notification; delivery happens outside this service."""

    session.add(Notification(user_id=user_id, type=kind, title=title, body=body, data=dict(data or {})))


# --------------------------------------------------------------------------------------
# Serialization helpers
# --------------------------------------------------------------------------------------


def _serialize_user(user: Optional[User]) -> Optional[dict[str, object]]:
    if not user:
        return None
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "phone": user.phone,
        "role": user.role,
        "bio": user.bio,
        "created_at": _iso(user.created_at),
    }


def _serialize_store(store: Optional[Store]) -> Optional[dict[str, object]]:
    if not store:
        return None
    return {
        "id": store.id,
        "owner_id": store.owner_id,
        "store_name": store.store_name,
        "store_slug": store.store_slug,
        "description": store.description,
        "logo_url": store.logo_url,
        "banner_url": store.banner_url,
        "phone": store.phone,
        "email": store.email,
        "address_line1": store.address_line1,
        "city": store.city,
        "province": store.province,
        "postal_code": store.postal_code,
        "is_open": store.is_open,
        "total_products": store.total_products,
        "total_reviews": store.total_reviews,
        "average_rating": round(float(store.average_rating or 0), 2),
        "status": store.status,
        "created_at": _iso(store.created_at),
    }


def _store_card(store: Optional[Store]) -> Optional[dict[str, object]]:
    if not store:
        return None
    return {"id": store.id, "name": store.store_name, "location": store.city}


def _serialize_product_card(product: Product) -> dict[str, object]:
    return {
        "id": product.id,
        "name": product.name,
        "price": _money(product.price),
        "discount_price": _money(product.discount_price) if product.discount_price else None,
        "effective_price": _money(product.effective_price),
        "rating": round(float(product.rating or 0), 2),
        "review_count": int(product.review_count or 0),
        "stock_quantity": int(product.stock_quantity),
        "status": product.status,
        "store": _store_card(product.store),
        "main_image": product.main_image,
        "images": list(product.images or []),
    }


def _serialize_product(product: Product) -> dict[str, object]:
    payload = _serialize_product_card(product)
    payload.update(
        {
            "seller_id": product.seller_id,
            "store_id": product.store_id,
            "category_id": product.category_id,
            "slug": product.slug,
            "description": product.description,
            "sku": product.sku,
            "additional_images": list(product.images or [])[1:],
            "weight": _as_float(product.weight) if product.weight is not None else None,
            "view_count": int(product.view_count or 0),
            "created_at": _iso(product.created_at),
            "updated_at": _iso(product.updated_at),
        }
    )
    return payload


def _serialize_category(category: Category, *, include_children: bool = False) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": category.id,
        "name": category.name,
        "slug": category.slug,
        "parent_id": category.parent_id,
        "level": category.level,
        "sort_order": category.sort_order,
    }
    if include_children:
        children = sorted(
            (child for child in category.children if child.is_active),
            key=lambda child: (child.sort_order, child.name),
        )
        payload["children"] = [_serialize_category(child) for child in children]
    return payload


def _serialize_address(address: Address) -> dict[str, object]:
    personal = decrypt_fields(address, ENCRYPTED_ADDRESS_FIELDS)
    return {
        "id": address.id,
        "recipient_name": personal["recipient_name"],
        "phone_number": personal["phone_number"],
        "address_line1": personal["address_line1"],
        "address_line2": personal["address_line2"],
        "city": address.city,
        "province": address.province,
        "postal_code": personal["postal_code"],
        "country": address.country,
        "label": address.label,
        "is_primary": address.is_primary,
        "created_at": _iso(address.created_at),
    }


def _serialize_notification(notification: Notification) -> dict[str, object]:
    return {
        "id": notification.id,
        "type": notification.type,
        "title": notification.title,
        "body": notification.body,
        "data": notification.data or {},
        "read_at": _iso(notification.read_at),
        "created_at": _iso(notification.created_at),
    }


def _serialize_conversation(conversation: ChatConversation) -> dict[str, object]:
    return {
        "id": conversation.id,
        "buyer_id": conversation.buyer_id,
        "seller_id": conversation.seller_id,
        "store_id": conversation.store_id,
        "buyer": {"id": conversation.buyer.id, "full_name": conversation.buyer.full_name},
        "seller": {"id": conversation.seller.id, "full_name": conversation.seller.full_name},
        "store": _store_card(conversation.store),
        "created_at": _iso(conversation.created_at),
        "updated_at": _iso(conversation.updated_at),
    }


def _serialize_message(message: ChatMessage) -> dict[str, object]:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "sender_id": message.sender_id,
        "sender_type": message.sender_type,
        "content": message.content,
        "is_read": message.is_read,
        "created_at": _iso(message.created_at),
    }


# --------------------------------------------------------------------------------------
# Initialization and seeding
# --------------------------------------------------------------------------------------


def init_db(*, seed: bool = True) -> None:
    """Create tables and optionally seed demo content."""

    Base.metadata.create_all(bind=engine)
    if seed:
        seed_data()


def seed_data() -> None:
    """Populate an empty marketplace with demo stores so the SPA has content."""

    from seed_data.demo_marketplace import DEMO_CATEGORIES, DEMO_PRODUCTS, DEMO_STORES, DEMO_USERS

    with session_scope() as session:
        product_count = session.scalar(select(func.count(Product.id))) or 0
        if product_count:
            return

        users: dict[str, User] = {}
        for entry in DEMO_USERS:
            user = session.execute(select(User).where(User.email == entry["email"])).scalar_one_or_none()
            if user is None:
                user = User(
                    email=entry["email"],
                    full_name=entry["full_name"],
                    phone=entry.get("phone"),
                    role=entry.get("role", "buyer"),
                )
                session.add(user)
            users[entry["email"]] = user
        session.flush()

        categories: dict[str, Category] = {}
        for index, entry in enumerate(DEMO_CATEGORIES):
            parent = categories.get(entry.get("parent") or "")
            category = Category(
                name=entry["name"],
                slug=entry["slug"],
                parent_id=parent.id if parent else None,
                level=parent.level + 1 if parent else 1,
                sort_order=index,
            )
            session.add(category)
            session.flush()
            categories[entry["slug"]] = category

        stores: dict[str, Store] = {}
        for entry in DEMO_STORES:
            owner = users[entry["owner_email"]]
            store = Store(
                owner_id=owner.id,
                store_name=entry["store_name"],
                store_slug=_unique_slug(entry["store_name"]),
                description=entry.get("description"),
                city=entry.get("city"),
                province=entry.get("province"),
            )
            session.add(store)
            stores[entry["owner_email"]] = store
        session.flush()

        for entry in DEMO_PRODUCTS:
            store = stores[entry["owner_email"]]
            category = categories.get(entry.get("category") or "")
            session.add(
                Product(
                    seller_id=store.owner_id,
                    store_id=store.id,
                    category_id=category.id if category else None,
                    name=entry["name"],
                    slug=_unique_slug(entry["name"]),
                    description=entry.get("description"),
                    price=_as_float(entry.get("price")),
                    discount_price=_as_float(entry["discount_price"]) if entry.get("discount_price") else None,
                    stock_quantity=_as_int(entry.get("stock")),
                    sku=entry.get("sku"),
                    images=list(entry.get("images") or []),
                    weight=_as_float(entry.get("weight"), 1.0),
                    status="active",
                )
            )
            store.total_products += 1
    logger.info("Seeded demo marketplace with %d products", len(DEMO_PRODUCTS))


# --------------------------------------------------------------------------------------
# Users and profile
# --------------------------------------------------------------------------------------


def create_user(email: str, full_name: str, *, phone: Optional[str] = None, role: str = "buyer") -> int:
    """Insert a marketplace user and return the id; credentials live with the auth service."""

    with session_scope() as session:
        existing = session.execute(select(User.id).where(User.email == email)).scalar_one_or_none()
        if existing is not None:
            raise BusinessRuleViolation("That email address is already registered.")
        user = User(email=email, full_name=full_name, phone=phone, role=role)
        session.add(user)
        session.flush()
        return int(user.id)


def get_user(user_id: int) -> Optional[dict[str, object]]:
    """Fetch a user by id."""

    with session_scope() as session:
        return _serialize_user(session.get(User, user_id))


def update_profile(
    user_id: int,
    *,
    full_name: Optional[str] = None,
    phone: Optional[str] = None,
    bio: Optional[str] = None,
) -> dict[str, object]:
    with session_scope() as session:
        user = session.get(User, user_id)
        if not user:
            raise NotFound("User not found.")
        if full_name is not None:
            user.full_name = full_name
        if phone is not None:
            user.phone = phone
        if bio is not None:
            user.bio = bio
        session.flush()
        return _serialize_user(user) or {}


# --------------------------------------------------------------------------------------
# Stores
# --------------------------------------------------------------------------------------

STORE_FIELDS = (
    "description",
    "logo_url",
    "banner_url",
    "phone",
    "email",
    "address_line1",
    "city",
    "province",
    "postal_code",
    "is_open",
)


def _store_for_owner(session: Session, owner_id: int) -> Optional[Store]:
    return session.execute(select(Store).where(Store.owner_id == owner_id)).scalars().first()


def require_store(session: Session, owner_id: int) -> Store:
    """Return the caller's store or raise ``NotFound``."""

    store = _store_for_owner(session, owner_id)
    if not store:
        raise NotFound("Store not found.")
    return store


def create_store(owner_id: int, store_name: str, **fields: object) -> dict[str, object]:
    """Open the owner's one and only store and flag them as a seller."""

    with session_scope() as session:
        owner = session.get(User, owner_id)
        if not owner:
            raise NotFound("User not found.")
        if _store_for_owner(session, owner_id):
            raise BusinessRuleViolation("You already have a store.")
        store = Store(owner_id=owner_id, store_name=store_name, store_slug=_unique_slug(store_name))
        for field in STORE_FIELDS:
            if fields.get(field) is not None:
                setattr(store, field, fields[field])
        session.add(store)
        owner.role = "seller"
        session.flush()
        logger.info("User %s opened store %s", owner_id, store.id)
        return _serialize_store(store) or {}


def check_store(owner_id: int) -> dict[str, object]:
    with session_scope() as session:
        store = _store_for_owner(session, owner_id)
        return {"has_store": store is not None, "store": _serialize_store(store)}


def get_store_for_owner(owner_id: int) -> dict[str, object]:
    with session_scope() as session:
        return _serialize_store(require_store(session, owner_id)) or {}


def update_store(owner_id: int, *, store_name: Optional[str] = None, **fields: object) -> dict[str, object]:
    """Update the caller's store; a new name also rotates the slug."""

    with session_scope() as session:
        store = require_store(session, owner_id)
        if store_name is not None and store_name != store.store_name:
            store.store_name = store_name
            store.store_slug = _unique_slug(store_name)
        for field in STORE_FIELDS:
            if fields.get(field) is not None:
                setattr(store, field, fields[field])
        session.flush()
        return _serialize_store(store) or {}


def get_store_with_products(store_id: int, *, limit: int = 60, offset: int = 0) -> dict[str, object]:
    with session_scope() as session:
        store = session.get(Store, store_id)
        if not store:
            raise NotFound("Store not found.")
        products = (
            session.execute(
                select(Product)
                .options(selectinload(Product.store))
                .where(Product.store_id == store_id)
                .order_by(Product.created_at.desc(), Product.id.desc())
                .offset(max(0, offset))
                .limit(max(0, limit))
            )
            .scalars()
            .all()
        )
        total = session.scalar(select(func.count(Product.id)).where(Product.store_id == store_id)) or 0
        return {
            "store": _serialize_store(store),
            "products": [_serialize_product_card(product) for product in products],
            "total": int(total),
        }


def store_stats(owner_id: int) -> dict[str, int]:
    """Product counters for the seller dashboard."""

    with session_scope() as session:
        store = require_store(session, owner_id)

        def _count(*criteria) -> int:
            stmt = select(func.count(Product.id)).where(Product.store_id == store.id, *criteria)
            return int(session.scalar(stmt) or 0)

        return {
            "total_products": _count(),
            "active_products": _count(Product.status == "active"),
            "out_of_stock_products": _count(or_(Product.status == "out_of_stock", Product.stock_quantity <= 0)),
            "draft_products": _count(Product.status == "draft"),
        }


# --------------------------------------------------------------------------------------
# Categories
# --------------------------------------------------------------------------------------


def create_category(name: str, *, parent_id: Optional[int] = None, sort_order: int = 0) -> int:
    with session_scope() as session:
        parent = session.get(Category, parent_id) if parent_id else None
        if parent_id and not parent:
            raise NotFound("Parent category not found.")
        slug = _slugify(f"{parent.slug}-{name}" if parent else name)
        category = Category(
            name=name,
            slug=slug,
            parent_id=parent.id if parent else None,
            level=parent.level + 1 if parent else 1,
            sort_order=sort_order,
        )
        session.add(category)
        session.flush()
        return int(category.id)


def fetch_categories(
    *,
    level: Optional[int] = None,
    parent_id: Optional[int] = None,
    include_children: bool = False,
    limit: int = 100,
) -> list[dict[str, object]]:
    """Return active categories ordered for display."""

    stmt = select(Category).where(Category.is_active.is_(True)).order_by(Category.sort_order, Category.name)
    if level is not None:
        stmt = stmt.where(Category.level == level)
    if parent_id:
        stmt = stmt.where(Category.parent_id == parent_id)
    if include_children:
        stmt = stmt.options(selectinload(Category.children))
    if limit > 0:
        stmt = stmt.limit(limit)
    with session_scope() as session:
        categories = session.execute(stmt).scalars().all()
        return [_serialize_category(category, include_children=include_children) for category in categories]


# --------------------------------------------------------------------------------------
# Product helpers
# --------------------------------------------------------------------------------------

PRODUCT_STATUSES = ("draft", "active", "inactive", "out_of_stock")
NEW_PRODUCT_STATUSES = ("draft", "active")


def fetch_products(
    *,
    search: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    min_rating: Optional[float] = None,
    city: Optional[str] = None,
    promo: bool = False,
    sort_by: Optional[str] = None,
) -> list[dict[str, object]]:
    """Return active products ordered according to the requested sort and filters."""

    stmt = select(Product).options(selectinload(Product.store)).where(Product.status == "active")
    filters = []

    if search:
        like_term = f"%{search.lower()}%"
        filters.append(
            or_(
                func.lower(Product.name).like(like_term),
                func.lower(func.coalesce(Product.description, "")).like(like_term),
            )
        )
    if min_price is not None:
        filters.append(Product.price >= min_price)
    if max_price is not None:
        filters.append(Product.price <= max_price)
    if min_rating is not None:
        filters.append(Product.rating >= min_rating)
    if city:
        stmt = stmt.join(Store, Product.store)
        filters.append(func.lower(func.coalesce(Store.city, "")).like(f"%{city.lower()}%"))
    if promo:
        filters.append(and_(Product.discount_price.is_not(None), Product.discount_price > 0))

    if filters:
        stmt = stmt.where(and_(*filters))

    order_map = {
        "price_asc": [Product.price.asc(), Product.id.desc()],
        "price_desc": [Product.price.desc(), Product.id.desc()],
        "rating": [Product.rating.desc(), Product.id.desc()],
        "popular": [Product.view_count.desc(), Product.id.desc()],
        "newest": [Product.created_at.desc(), Product.id.desc()],
    }
    stmt = stmt.order_by(*order_map.get(sort_by or "newest", order_map["newest"]))

    with session_scope() as session:
        products = session.execute(stmt).scalars().all()
        return [_serialize_product_card(product) for product in products]


def get_product(product_id: int, *, viewer_id: Optional[int] = None) -> dict[str, object]:
    """Return product detail, counting the view and logging it for signed-in viewers."""

    with session_scope() as session:
        product = session.execute(
            select(Product)
            .options(selectinload(Product.store), selectinload(Product.category), selectinload(Product.seller))
            .where(Product.id == product_id)
        ).scalar_one_or_none()
        if not product:
            raise NotFound("Product not found.")

        session.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(view_count=Product.view_count + 1)
            .execution_options(synchronize_session=False)
        )
        if viewer_id:
            record_activity(session, viewer_id, product.id, "view", {"source": "product_detail"})

        payload = _serialize_product(product)
        payload["view_count"] = int(product.view_count or 0) + 1
        store = product.store
        payload["edges"] = {
            "store": (
                {
                    "id": store.id,
                    "name": store.store_name,
                    "store_name": store.store_name,
                    "location": store.city,
                    "city": store.city,
                    "average_rating": round(float(store.average_rating or 0), 2),
                    "logo_url": store.logo_url,
                }
                if store
                else None
            ),
            "category": (
                {"id": product.category.id, "name": product.category.name, "slug": product.category.slug}
                if product.category
                else None
            ),
            "seller": {"id": product.seller.id, "full_name": product.seller.full_name},
        }
        return payload


def _validate_product_fields(session: Session, fields: Mapping[str, object], *, product_id: Optional[int] = None) -> None:
    for money_field in ("price", "discount_price"):
        value = fields.get(money_field)
        if value is not None and _as_float(value, -1) < 0:
            raise ValidationError(f"The {money_field.replace('_', ' ')} must be zero or more.")
    stock = fields.get("stock_quantity")
    if stock is not None and _as_int(stock, -1) < 0:
        raise ValidationError("The stock quantity must be zero or more.")
    category_id = fields.get("category_id")
    if category_id is not None and not session.get(Category, category_id):
        raise ValidationError("The selected category does not exist.")
    sku = fields.get("sku")
    if sku:
        clash = select(Product.id).where(Product.sku == sku)
        if product_id is not None:
            clash = clash.where(Product.id != product_id)
        if session.execute(clash).first():
            raise ValidationError("That SKU is already in use.")


PRODUCT_FIELDS = (
    "description",
    "price",
    "discount_price",
    "stock_quantity",
    "category_id",
    "images",
    "weight",
    "sku",
)


def create_product(
    owner_id: int,
    *,
    name: str,
    price: float,
    stock_quantity: int,
    status: str = "draft",
    **fields: object,
) -> dict[str, object]:
    """Create a product in the seller's store."""

    with session_scope() as session:
        store = _store_for_owner(session, owner_id)
        if not store:
            raise Forbidden("You must have a store to create products.")
        if status not in NEW_PRODUCT_STATUSES:
            raise ValidationError("The status must be draft or active.")
        values = dict(fields, price=price, stock_quantity=stock_quantity)
        _validate_product_fields(session, values)

        product = Product(
            seller_id=owner_id,
            store_id=store.id,
            name=name,
            slug=_unique_slug(name),
            status=status,
        )
        for field in PRODUCT_FIELDS:
            if values.get(field) is not None:
                setattr(product, field, values[field])
        session.add(product)
        store.total_products += 1
        session.flush()
        return _serialize_product(product)


def update_product(owner_id: int, product_id: int, **fields: object) -> dict[str, object]:
    """Update the seller's own product with the provided fields."""

    with session_scope() as session:
        product = session.execute(
            select(Product).where(Product.id == product_id, Product.seller_id == owner_id)
        ).scalar_one_or_none()
        if not product:
            raise NotFound("Product not found.")
        status = fields.get("status")
        if status is not None and status not in PRODUCT_STATUSES:
            raise ValidationError("Unknown product status.")
        _validate_product_fields(session, fields, product_id=product_id)

        name = fields.get("name")
        if name is not None and name != product.name:
            product.name = str(name)
            product.slug = _unique_slug(str(name))
        if status is not None:
            product.status = str(status)
        for field in PRODUCT_FIELDS:
            if fields.get(field) is not None:
                setattr(product, field, fields[field])
        session.flush()
        return _serialize_product(product)


def delete_product(owner_id: int, product_id: int) -> None:
    """Remove the seller's product and keep the store counter in step."""

    with session_scope() as session:
        product = session.execute(
            select(Product).where(Product.id == product_id, Product.seller_id == owner_id)
        ).scalar_one_or_none()
        if not product:
            raise NotFound("Product not found.")
        store_id = product.store_id
        session.delete(product)
        if store_id:
            session.execute(
                update(Store)
                .where(Store.id == store_id, Store.total_products > 0)
                .values(total_products=Store.total_products - 1)
                .execution_options(synchronize_session=False)
            )


def fetch_seller_products(
    owner_id: int, *, status: Optional[str] = None, limit: int = 20, offset: int = 0
) -> dict[str, object]:
    """Return one page of the seller's catalogue plus the total count."""

    criteria = [Product.seller_id == owner_id]
    if status:
        criteria.append(Product.status == status)
    with session_scope() as session:
        total = session.scalar(select(func.count(Product.id)).where(*criteria)) or 0
        products = (
            session.execute(
                select(Product)
                .options(selectinload(Product.store))
                .where(*criteria)
                .order_by(Product.created_at.desc(), Product.id.desc())
                .offset(max(0, offset))
                .limit(max(0, limit))
            )
            .scalars()
            .all()
        )
        return {
            "products": [_serialize_product(product) for product in products],
            "total": int(total),
            "limit": limit,
            "offset": offset,
        }


def fetch_recommendations(user_id: int, *, limit: int = 20) -> list[dict[str, object]]:
    """Products the user recently interacted with, else the best rated ones."""

    with session_scope() as session:
        recent_ids = session.execute(
            select(ProductActivity.product_id)
            .where(ProductActivity.user_id == user_id)
            .order_by(ProductActivity.created_at.desc(), ProductActivity.id.desc())
            .limit(100)
        ).scalars().all()

        stmt = select(Product).options(selectinload(Product.store)).where(Product.status == "active")
        if recent_ids:
            stmt = stmt.where(Product.id.in_(list(dict.fromkeys(recent_ids))))
        stmt = stmt.order_by(Product.rating.desc(), Product.id.desc()).limit(limit)
        products = session.execute(stmt).scalars().all()
        return [_serialize_product_card(product) for product in products]


# --------------------------------------------------------------------------------------
# Cart
# --------------------------------------------------------------------------------------


def _variant_clause(variant: Optional[str]):
    return CartItem.variant.is_(None) if variant is None else CartItem.variant == variant


def _cart_for_user(session: Session, user_id: int) -> Optional[Cart]:
    return session.execute(select(Cart).where(Cart.user_id == user_id)).scalar_one_or_none()


def _get_or_create_cart(session: Session, user_id: int) -> Cart:
    cart = _cart_for_user(session, user_id)
    if cart is None:
        cart = Cart(user_id=user_id)
        session.add(cart)
        session.flush()
    return cart


def get_or_create_cart(user_id: int) -> int:
    """Return the id of the user's cart, creating it on first access."""

    with session_scope() as session:
        return int(_get_or_create_cart(session, user_id).id)


def _seller_display_name(product: Product) -> str:
    if product.store and product.store.store_name:
        return product.store.store_name
    if product.seller and product.seller.full_name:
        return product.seller.full_name
    return "Unknown Seller"


def _serialize_cart_item(item: CartItem) -> Optional[dict[str, object]]:
    product = item.product
    if product is None:
        return None
    unit_price = _money(product.effective_price)
    return {
        "id": item.id,
        "product_id": product.id,
        "name": product.name,
        "price": unit_price,
        "original_price": _money(product.price),
        "image": product.main_image,
        "quantity": item.quantity,
        "variant": item.variant,
        "seller": _seller_display_name(product),
        "store_id": product.store_id,
        "stock": product.stock_quantity,
        "subtotal": round(unit_price * item.quantity, 2),
    }


def fetch_cart(user_id: int) -> dict[str, object]:
    """Return the cart view model with derived totals."""

    with session_scope() as session:
        cart = _get_or_create_cart(session, user_id)
        cart_items = (
            session.execute(
                select(CartItem)
                .options(
                    selectinload(CartItem.product).selectinload(Product.store),
                    selectinload(CartItem.product).selectinload(Product.seller),
                )
                .where(CartItem.cart_id == cart.id)
                .order_by(CartItem.created_at.desc(), CartItem.id.desc())
            )
            .scalars()
            .all()
        )
        items = [payload for payload in (_serialize_cart_item(item) for item in cart_items) if payload]
        return {
            "cart_id": cart.id,
            "items": items,
            "total_items": sum(int(item["quantity"]) for item in items),
            "total_price": round(sum(float(item["subtotal"]) for item in items), 2),
        }


def add_to_cart(user_id: int, product_id: int, quantity: int, variant: Optional[str] = None) -> dict[str, object]:
    """Add a product to the cart, merging with an existing (product, variant) line."""

    if quantity < 1:
        raise ValidationError("Quantity must be at least 1.")
    variant = _clean_variant(variant)

    with session_scope() as session:
        product = session.get(Product, product_id)
        if not product:
            raise ValidationError("The selected product does not exist.")
        cart = _get_or_create_cart(session, user_id)

        existing = session.execute(
            select(CartItem).where(
                CartItem.cart_id == cart.id,
                CartItem.product_id == product_id,
                _variant_clause(variant),
            )
        ).scalars().first()

        requested_total = quantity + (existing.quantity if existing else 0)
        if product.stock_quantity < requested_total:
            raise InsufficientStock(f"Not enough stock for {product.name}.")

        if existing:
            existing.quantity = requested_total
            item = existing
        else:
            item = CartItem(cart_id=cart.id, product_id=product_id, quantity=quantity, variant=variant)
            session.add(item)
        record_activity(session, user_id, product_id, "cart", {"quantity": quantity})
        session.flush()
        return _serialize_cart_item(item) or {}


def _owned_cart_item(session: Session, user_id: int, item_id: int) -> CartItem:
    item = session.execute(
        select(CartItem).join(Cart, CartItem.cart).where(CartItem.id == item_id, Cart.user_id == user_id)
    ).scalar_one_or_none()
    if not item:
        raise NotFound("Item not found in cart.")
    return item


def update_cart_item(user_id: int, item_id: int, quantity: int) -> dict[str, object]:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1.")
    with session_scope() as session:
        item = _owned_cart_item(session, user_id, item_id)
        product = item.product
        if product is None:
            raise NotFound("That product is no longer available.")
        if product.stock_quantity < quantity:
            raise InsufficientStock(f"Not enough stock for {product.name}.")
        item.quantity = quantity
        session.flush()
        return _serialize_cart_item(item) or {}


def remove_cart_item(user_id: int, item_id: int) -> None:
    with session_scope() as session:
        session.delete(_owned_cart_item(session, user_id, item_id))


def clear_cart(user_id: int) -> None:
    """Delete every line in the user's cart."""

    with session_scope() as session:
        cart = _cart_for_user(session, user_id)
        if cart:
            session.execute(delete(CartItem).where(CartItem.cart_id == cart.id))


def remove_purchased_cart_lines(session: Session, user_id: int, lines: Iterable[tuple[int, Optional[str]]]) -> None:
    """Drop cart lines matching purchased (product, variant) pairs."""

    cart = _cart_for_user(session, user_id)
    if not cart:
        return
    for product_id, variant in set(lines):
        session.execute(
            delete(CartItem).where(
                CartItem.cart_id == cart.id,
                CartItem.product_id == product_id,
                _variant_clause(variant),
            )
        )


# --------------------------------------------------------------------------------------
# Addresses
# --------------------------------------------------------------------------------------

MAX_ADDRESSES = 3
ENCRYPTED_ADDRESS_FIELDS = ("recipient_name", "phone_number", "address_line1", "address_line2", "postal_code")
PLAIN_ADDRESS_FIELDS = ("city", "province", "country", "label")


def fetch_addresses(user_id: int) -> list[dict[str, object]]:
    with session_scope() as session:
        addresses = session.execute(
            select(Address)
            .where(Address.user_id == user_id)
            .order_by(Address.is_primary.desc(), Address.id.asc())
        ).scalars().all()
        return [_serialize_address(address) for address in addresses]


def _apply_address_fields(address: Address, fields: Mapping[str, object]) -> None:
    encrypted = encrypt_fields(fields, ENCRYPTED_ADDRESS_FIELDS, nullable=("address_line2",))
    for field, value in encrypted.items():
        setattr(address, field, value)
    for field in PLAIN_ADDRESS_FIELDS:
        value = fields.get(field)
        if value is not None:
            setattr(address, field, value)


def create_address(user_id: int, *, is_primary: bool = False, **fields: object) -> dict[str, object]:
    """Add an address; the first one always becomes primary."""

    with session_scope() as session:
        count = session.scalar(select(func.count(Address.id)).where(Address.user_id == user_id)) or 0
        if count >= MAX_ADDRESSES:
            raise BusinessRuleViolation(f"You can save at most {MAX_ADDRESSES} addresses.")
        if count == 0:
            is_primary = True
        if is_primary:
            session.execute(
                update(Address)
                .where(Address.user_id == user_id)
                .values(is_primary=False)
                .execution_options(synchronize_session=False)
            )
        address = Address(user_id=user_id, is_primary=is_primary)
        _apply_address_fields(address, fields)
        session.add(address)
        session.flush()
        return _serialize_address(address)


def update_address(user_id: int, address_id: int, *, is_primary: Optional[bool] = None, **fields: object) -> dict[str, object]:
    with session_scope() as session:
        address = session.execute(
            select(Address).where(Address.id == address_id, Address.user_id == user_id)
        ).scalar_one_or_none()
        if not address:
            raise NotFound("Address not found.")
        if is_primary:
            session.execute(
                update(Address)
                .where(Address.user_id == user_id, Address.id != address_id)
                .values(is_primary=False)
                .execution_options(synchronize_session=False)
            )
            address.is_primary = True
        elif is_primary is False:
            address.is_primary = False
        _apply_address_fields(address, fields)
        session.flush()
        return _serialize_address(address)


def delete_address(user_id: int, address_id: int) -> None:
    with session_scope() as session:
        address = session.execute(
            select(Address).where(Address.id == address_id, Address.user_id == user_id)
        ).scalar_one_or_none()
        if not address:
            raise NotFound("Address not found.")
        session.delete(address)


def reencrypt_personal_data() -> int:
    """Move every encrypted address and shipping column onto the current key.

    Returns the number of rows rewritten.
    """

    rewritten = 0
    with session_scope() as session:
        for address in session.execute(select(Address)).scalars():
            for field in ENCRYPTED_ADDRESS_FIELDS:
                value = getattr(address, field)
                if value:
                    setattr(address, field, reencrypt_sensitive_value(value))
            rewritten += 1
        for order in session.execute(select(Order)).scalars():
            if order.shipping_address:
                order.shipping_address = reencrypt_sensitive_value(order.shipping_address) or ""
                rewritten += 1
    logger.info("Re-encrypted personal data on %s rows", rewritten)
    return rewritten


# --------------------------------------------------------------------------------------
# Wishlist and favourite stores
# --------------------------------------------------------------------------------------


def fetch_wishlist_products(user_id: int) -> list[dict[str, object]]:
    with session_scope() as session:
        items = session.execute(
            select(WishlistItem)
            .options(selectinload(WishlistItem.product).selectinload(Product.store))
            .where(WishlistItem.user_id == user_id)
            .order_by(WishlistItem.created_at.desc(), WishlistItem.id.desc())
        ).scalars().all()
        return [_serialize_product_card(item.product) for item in items if item.product]


def add_wishlist_product(user_id: int, product_id: int) -> dict[str, object]:
    with session_scope() as session:
        if not session.get(Product, product_id):
            raise NotFound("Product not found.")
        item = session.execute(
            select(WishlistItem).where(WishlistItem.user_id == user_id, WishlistItem.product_id == product_id)
        ).scalar_one_or_none()
        if item is None:
            item = WishlistItem(user_id=user_id, product_id=product_id)
            session.add(item)
            session.flush()
        return {"id": item.id, "user_id": user_id, "product_id": product_id, "created_at": _iso(item.created_at)}


def remove_wishlist_product(user_id: int, product_id: int) -> None:
    with session_scope() as session:
        session.execute(
            delete(WishlistItem).where(WishlistItem.user_id == user_id, WishlistItem.product_id == product_id)
        )


def fetch_favorite_stores(user_id: int) -> list[dict[str, object]]:
    with session_scope() as session:
        items = session.execute(
            select(FavoriteStore)
            .options(selectinload(FavoriteStore.store))
            .where(FavoriteStore.user_id == user_id)
            .order_by(FavoriteStore.created_at.desc(), FavoriteStore.id.desc())
        ).scalars().all()
        return [
            {
                "id": item.store.id,
                "store_name": item.store.store_name,
                "city": item.store.city,
                "province": item.store.province,
                "average_rating": round(float(item.store.average_rating or 0), 2),
                "logo_url": item.store.logo_url,
            }
            for item in items
            if item.store
        ]


def add_favorite_store(user_id: int, store_id: int) -> dict[str, object]:
    with session_scope() as session:
        if not session.get(Store, store_id):
            raise NotFound("Store not found.")
        item = session.execute(
            select(FavoriteStore).where(FavoriteStore.user_id == user_id, FavoriteStore.store_id == store_id)
        ).scalar_one_or_none()
        if item is None:
            item = FavoriteStore(user_id=user_id, store_id=store_id)
            session.add(item)
            session.flush()
        return {"id": item.id, "user_id": user_id, "store_id": store_id, "created_at": _iso(item.created_at)}


def remove_favorite_store(user_id: int, store_id: int) -> None:
    with session_scope() as session:
        session.execute(
            delete(FavoriteStore).where(FavoriteStore.user_id == user_id, FavoriteStore.store_id == store_id)
        )


# --------------------------------------------------------------------------------------
# Notifications
# --------------------------------------------------------------------------------------


def fetch_notifications(user_id: int, *, unread_only: bool = False) -> list[dict[str, object]]:
    stmt = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        stmt = stmt.where(Notification.read_at.is_(None))
    stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
    with session_scope() as session:
        return [_serialize_notification(row) for row in session.execute(stmt).scalars().all()]


def mark_notification_read(user_id: int, notification_id: int) -> dict[str, object]:
    with session_scope() as session:
        notification = session.execute(
            select(Notification).where(Notification.id == notification_id, Notification.user_id == user_id)
        ).scalar_one_or_none()
        if not notification:
            raise NotFound("Notification not found.")
        if notification.read_at is None:
            notification.read_at = _utcnow()
        session.flush()
        return _serialize_notification(notification)


# --------------------------------------------------------------------------------------
# Chat
# --------------------------------------------------------------------------------------


def _conversation_query():
    return select(ChatConversation).options(
        selectinload(ChatConversation.buyer),
        selectinload(ChatConversation.seller),
        selectinload(ChatConversation.store),
    )


def _participant_conversation(session: Session, user_id: int, conversation_id: int) -> ChatConversation:
    conversation = session.execute(
        _conversation_query().where(ChatConversation.id == conversation_id)
    ).scalar_one_or_none()
    if not conversation:
        raise NotFound("Conversation not found.")
    if user_id not in (conversation.buyer_id, conversation.seller_id):
        raise Forbidden("You are not part of this conversation.")
    return conversation


def start_conversation(
    user_id: int, *, store_id: Optional[int] = None, product_id: Optional[int] = None
) -> dict[str, object]:
    """Open (or reuse) the buyer's conversation with a store."""

    if store_id is None and product_id is None:
        raise ValidationError("Provide a store_id or a product_id.")

    with session_scope() as session:
        if product_id is not None:
            product = session.get(Product, product_id)
            if not product:
                raise NotFound("Product not found.")
            if product.store_id:
                store_id = product.store_id
            else:
                fallback = _store_for_owner(session, product.seller_id)
                if not fallback:
                    raise NotFound("Store not found for this product.")
                store_id = fallback.id

        store = session.get(Store, store_id)
        if not store:
            raise NotFound("Store not found.")
        if store.owner_id == user_id:
            raise BusinessRuleViolation("You cannot chat with your own store.")

        conversation = session.execute(
            _conversation_query().where(ChatConversation.buyer_id == user_id, ChatConversation.store_id == store.id)
        ).scalars().first()
        if conversation is None:
            conversation = ChatConversation(buyer_id=user_id, seller_id=store.owner_id, store_id=store.id)
            session.add(conversation)
            session.flush()
            session.refresh(conversation)
        return _serialize_conversation(conversation)


def fetch_conversations(user_id: int) -> list[dict[str, object]]:
    with session_scope() as session:
        conversations = session.execute(
            _conversation_query()
            .where(or_(ChatConversation.buyer_id == user_id, ChatConversation.seller_id == user_id))
            .order_by(ChatConversation.updated_at.desc(), ChatConversation.id.desc())
        ).scalars().all()
        return [_serialize_conversation(conversation) for conversation in conversations]


def get_conversation(user_id: int, conversation_id: int) -> dict[str, object]:
    with session_scope() as session:
        return _serialize_conversation(_participant_conversation(session, user_id, conversation_id))


def fetch_messages(user_id: int, conversation_id: int) -> list[dict[str, object]]:
    with session_scope() as session:
        conversation = _participant_conversation(session, user_id, conversation_id)
        return [_serialize_message(message) for message in conversation.messages]


def send_message(user_id: int, conversation_id: int, content: str) -> dict[str, object]:
    if not content or not content.strip():
        raise ValidationError("Message content is required.")
    with session_scope() as session:
        conversation = _participant_conversation(session, user_id, conversation_id)
        sender_type = "buyer" if user_id == conversation.buyer_id else "seller"
        message = ChatMessage(
            conversation_id=conversation.id,
            sender_id=user_id,
            sender_type=sender_type,
            content=content.strip(),
        )
        session.add(message)
        conversation.updated_at = _utcnow()
        session.flush()
        return _serialize_message(message)


def order_rows(session: Session, stmt) -> Sequence[Order]:
    """Run an order select with the relationships every order view needs."""

    stmt = stmt.options(
        selectinload(Order.items),
        selectinload(Order.store),
        selectinload(Order.user),
        selectinload(Order.shipment),
    )
    return session.execute(stmt).scalars().all()
