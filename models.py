"""
Storefront Fulfillment Engine - Database Schema
===============================================

Schema for the order fulfillment pipeline:
- Local inventory units claimed atomically per order
- Per-user balance with an append-only transaction ledger
- Orders and immutable order lines
- Provider-issued leased resources (phone numbers, proxy grants, boost orders)

Monetary columns use Numeric(12, 2); status columns store enum values as strings.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List
from sqlalchemy import (
    Integer, BigInteger, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


def utc_now() -> datetime:
    """Naive UTC timestamp, the storage convention for every DateTime column"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class UserRole(Enum):
    """Access role of a storefront user"""
    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"


class FulfillmentKind(Enum):
    """How a product is turned into delivered goods"""
    LOCAL_ITEM = "local_item"
    PROXY = "proxy"
    SMS_NUMBER = "sms_number"
    SOCIAL_BOOST = "social_boost"
    MANUAL_CREDIT = "manual_credit"


class OrderStatus(Enum):
    """Order lifecycle states"""
    PENDING = "pending"
    PAID = "paid"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentMethod(Enum):
    BALANCE = "balance"
    CRYPTO = "crypto"
    ADMIN_DELIVERY = "admin_delivery"


class TransactionKind(Enum):
    """Ledger entry kinds"""
    DEPOSIT = "deposit"
    PURCHASE = "purchase"
    REFUND = "refund"
    BONUS = "bonus"


class LeaseProvider(Enum):
    PX6 = "px6"
    TIGER_SMS = "tiger_sms"
    PROFI_LIKE = "profi_like"


class LeaseKind(Enum):
    PROXY = "proxy"
    SMS_NUMBER = "sms_number"
    SOCIAL_BOOST = "social_boost"


class LeaseStatus(Enum):
    """Union of the per-kind lease state machines"""
    # SMS number
    WAITING = "waiting"
    READY = "ready"
    RETRY = "retry"
    CODE_RECEIVED = "code_received"
    # Social boost
    PROCESSING = "processing"
    IN_PROGRESS = "in_progress"
    PARTIAL = "partial"
    # Proxy grant
    ACTIVE = "active"
    EXPIRED = "expired"
    # Shared terminal states
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# ============================================================================
# CORE MODELS
# ============================================================================

class User(Base):
    """Storefront user with a cached balance"""
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    telegram_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, unique=True)
    username: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # Cached balance; always equal to the sum of the user's balance_transactions
    balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    role: Mapped[str] = mapped_column(String(20), default=UserRole.USER.value, nullable=False)
    is_banned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint(
            f"role IN ('{UserRole.USER.value}', '{UserRole.MODERATOR.value}', '{UserRole.ADMIN.value}')",
            name='ck_user_role_valid'
        ),
    )


class Product(Base):
    """Catalog entry. Price is snapshotted onto order lines at order time."""
    __tablename__ = 'products'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fulfillment_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    max_per_user: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # 0 = unlimited
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Provider defaults merged under line options (proxy version, sms service code, boost service id)
    provider_options: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('price >= 0', name='ck_product_price_positive'),
        CheckConstraint('max_per_user >= 0', name='ck_product_max_per_user_positive'),
        CheckConstraint(
            "fulfillment_kind IN ('local_item', 'proxy', 'sms_number', 'social_boost', 'manual_credit')",
            name='ck_product_fulfillment_kind_valid'
        ),
    )

    @property
    def kind(self) -> FulfillmentKind:
        return FulfillmentKind(self.fulfillment_kind)


class InventoryItem(Base):
    """One sellable unit of a local-item product; flips unsold -> sold exactly once"""
    __tablename__ = 'inventory_items'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(Integer, ForeignKey('products.id'), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    file_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    is_sold: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sold_to: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('users.id'), nullable=True)
    order_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('orders.id'), nullable=True)
    order_line_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('order_lines.id'), nullable=True)
    sold_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        Index('ix_inventory_items_product_unsold', 'product_id', 'is_sold', 'id'),
    )


class Order(Base):
    """Purchase intent; status only moves forward"""
    __tablename__ = 'orders'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=OrderStatus.PENDING.value, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), default=PaymentMethod.BALANCE.value, nullable=False)
    payment_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)
    promo_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # Part of the order total settled from balance when paid externally
    balance_used: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)

    delivered_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    items_delivered: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Set once by the dispatcher that owns the (single) dispatch pass
    dispatch_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    lines: Mapped[List["OrderLine"]] = relationship(
        "OrderLine", back_populates="order", order_by="OrderLine.id", lazy="selectin"
    )

    __table_args__ = (
        CheckConstraint('total >= 0', name='ck_order_total_positive'),
        CheckConstraint(
            "status IN ('pending', 'paid', 'completed', 'cancelled', 'refunded')",
            name='ck_order_status_valid'
        ),
        Index('ix_orders_user_status', 'user_id', 'status'),
    )


class OrderLine(Base):
    """Immutable order line with product snapshot and per-kind options bag"""
    __tablename__ = 'order_lines'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, ForeignKey('orders.id'), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(Integer, ForeignKey('products.id'), nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    options: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    order: Mapped["Order"] = relationship("Order", back_populates="lines")

    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_order_line_quantity_positive'),
        CheckConstraint('unit_price >= 0', name='ck_order_line_price_positive'),
    )


class BalanceTransaction(Base):
    """Append-only ledger row; balance_after comes from the same UPDATE as the balance change"""
    __tablename__ = 'balance_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)  # signed
    balance_after: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    order_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('orders.id'), nullable=True)
    leased_resource_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey('leased_resources.id'), nullable=True
    )
    payment_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "kind IN ('deposit', 'purchase', 'refund', 'bonus')",
            name='ck_balance_transaction_kind_valid'
        ),
        Index('ix_balance_transactions_user_created', 'user_id', 'created_at'),
    )


class LeasedResource(Base):
    """Provider-issued resource resolved asynchronously (phone number, proxy grant, boost order)"""
    __tablename__ = 'leased_resources'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    order_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('orders.id'), nullable=True, index=True)
    product_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('products.id'), nullable=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    # Poll cursor
    poll_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_polled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    issued_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # phone + sms code / proxy credentials / boost counters
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint('provider', 'provider_ref', name='uq_leased_resource_provider_ref'),
        CheckConstraint('price >= 0', name='ck_leased_resource_price_positive'),
        Index('ix_leased_resources_kind_status', 'kind', 'status'),
    )


# ============================================================================
# PROMOTIONS
# ============================================================================

class PromoCode(Base):
    """Administrator-managed discount code"""
    __tablename__ = 'promo_codes'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    discount_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('discount_percent > 0 AND discount_percent <= 100', name='ck_promo_discount_range'),
    )


class PromoUse(Base):
    """One redemption of a promo code by a user; system codes are stored as 'system:CODE'"""
    __tablename__ = 'promo_uses'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    promo_code: Mapped[str] = mapped_column(String(80), nullable=False)
    order_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('orders.id'), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'promo_code', name='uq_promo_use_user_code'),
    )
