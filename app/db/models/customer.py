"""
Customer Models - profile counters, saved addresses and cart
"""
from decimal import Decimal
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Float, Numeric, ForeignKey,
    CheckConstraint, Index,
)
from sqlalchemy.orm import relationship

from app.db.database import Base


class CustomerProfile(Base):
    """Lifetime counters per customer"""

    __tablename__ = "customer_profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)

    total_orders = Column(Integer, default=0, nullable=False)
    total_spent = Column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class CustomerAddress(Base):
    """Saved delivery address"""

    __tablename__ = "customer_addresses"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    label = Column(String(50), nullable=True)  # "Home", "Work"
    street = Column(String(255), nullable=False)
    city = Column(String(100), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    @property
    def coordinates(self) -> tuple[float, float]:
        """(lng, lat)"""
        return (self.longitude, self.latitude)

    @property
    def full_address(self) -> str:
        return f"{self.street}, {self.city}"


class CartItem(Base):
    """Meal waiting in a customer's cart; may mix vendors"""

    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    meal_id = Column(Integer, ForeignKey("meals.id"), nullable=False)
    quantity = Column(Integer, default=1, nullable=False)
    delivery_date = Column(DateTime, nullable=True)

    added_at = Column(DateTime, default=datetime.utcnow)

    meal = relationship("Meal", lazy="selectin")

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_cart_items_quantity_positive"),
        Index("ix_cart_items_customer_meal", "customer_id", "meal_id"),
    )
