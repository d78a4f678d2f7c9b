"""
Order Models - the order aggregate, its line items and its timeline
"""
import enum
import secrets
from decimal import Decimal
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, ForeignKey, Text,
    Boolean, CheckConstraint, Index,
)
from sqlalchemy.orm import relationship

from app.db.database import Base


def generate_delivery_code() -> str:
    """4-digit code the customer hands the rider at the door"""
    return f"{secrets.randbelow(10000):04d}"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    ACCEPTED = "accepted"
    PICKED_UP = "picked_up"
    ON_THE_WAY = "on_the_way"
    ARRIVED = "arrived"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    WALLET = "wallet"


def _enum_column(enum_cls, name: str):
    return SQLEnum(
        enum_cls,
        name=name,
        values_callable=lambda x: [e.value for e in x]
    )


class Order(Base):
    """Single-vendor meal order. Pricing columns are fixed at creation."""

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(32), unique=True, nullable=False, index=True)

    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    vendor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    rider_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    address_id = Column(Integer, ForeignKey("customer_addresses.id"), nullable=True)
    delivery_address = Column(String(500), nullable=False)
    special_instructions = Column(Text, nullable=True)

    status = Column(
        _enum_column(OrderStatus, "order_status"),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True
    )
    payment_status = Column(
        _enum_column(PaymentStatus, "payment_status"),
        default=PaymentStatus.PENDING,
        nullable=False,
        index=True
    )
    payment_method = Column(
        _enum_column(PaymentMethod, "payment_method"),
        default=PaymentMethod.CARD,
        nullable=False
    )
    # ה-webhook מזהה הזמנה לפי ה-id של הספק בלבד
    payment_intent_id = Column(String(255), unique=True, nullable=True)
    payment_idempotency_key = Column(String(128), nullable=True)

    # Pricing snapshot
    subtotal = Column(Numeric(10, 2), nullable=False)
    delivery_fee = Column(Numeric(10, 2), nullable=False)
    service_fee = Column(Numeric(10, 2), nullable=False)
    tax = Column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)
    discount = Column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)
    total = Column(Numeric(10, 2), nullable=False)

    # Earnings split, computed once from the pricing snapshot
    platform_commission = Column(Numeric(10, 2), nullable=False)
    vendor_earning = Column(Numeric(10, 2), nullable=False)
    rider_earning = Column(Numeric(10, 2), nullable=False)

    # Delivery info
    delivery_date = Column(DateTime, nullable=True)
    estimated_arrival = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    delivery_code = Column(String(4), nullable=False, default=generate_delivery_code)

    # Cancellation
    cancellation_reason = Column(String(500), nullable=True)
    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    refund_amount = Column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, index=True)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.id",
    )
    timeline = relationship(
        "OrderTimelineEntry",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderTimelineEntry.id",
    )

    __table_args__ = (
        CheckConstraint("total >= 0", name="ck_orders_total_non_negative"),
        Index("ix_orders_status_rider", "status", "rider_id"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


class OrderItem(Base):
    """Line item with the unit price frozen at order time"""

    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    meal_id = Column(Integer, ForeignKey("meals.id"), nullable=False)
    meal_name = Column(String(150), nullable=True)

    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    line_total = Column(Numeric(10, 2), nullable=False)

    # דגלי סליקה נפרדים לספק ולשליח
    vendor_withdrawn = Column(Boolean, default=False, nullable=False)
    rider_withdrawn = Column(Boolean, default=False, nullable=False)

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),
    )


class OrderTimelineEntry(Base):
    """Append-only status log; rows are never updated"""

    __tablename__ = "order_timeline"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)

    status = Column(_enum_column(OrderStatus, "order_status"), nullable=False)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    actor_role = Column(String(20), nullable=False)
    note = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    order = relationship("Order", back_populates="timeline")
