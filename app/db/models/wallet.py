"""
Wallet Model - Balance Tracking
"""
from decimal import Decimal
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Boolean, Numeric, DateTime, ForeignKey, CheckConstraint,
)
from sqlalchemy.orm import relationship

from app.db.database import Base


class Wallet(Base):
    """
    One wallet per user.

    balance is withdrawable money; pending_balance holds delivered-order
    earnings until the settlement sweep releases them.
    """

    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)

    balance = Column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)
    pending_balance = Column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)
    total_earnings = Column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    pin_hash = Column(String(100), nullable=True)
    is_pin_set = Column(Boolean, default=False, nullable=False)

    # פרטי בנק למשיכות — כל עדכון מאפס את האימות
    bank_account_name = Column(String(150), nullable=True)
    bank_name = Column(String(100), nullable=True)
    bank_account_number = Column(String(20), nullable=True)
    bank_details_verified = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User")

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
        CheckConstraint("pending_balance >= 0", name="ck_wallets_pending_non_negative"),
    )

    @property
    def has_bank_details(self) -> bool:
        return bool(self.bank_account_name and self.bank_name and self.bank_account_number)
