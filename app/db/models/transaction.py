"""
Transaction Model - Immutable Ledger Entry

Every wallet mutation writes exactly one row. Only ``status`` (and the
processed_at / failure_reason that go with it) may change afterwards.
"""
import enum
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, ForeignKey, JSON,
    CheckConstraint, Index,
)

from app.db.database import Base


class TransactionType(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    WITHDRAWAL = "withdrawal"
    REFUND = "refund"
    EARNING = "earning"
    PAYMENT = "payment"
    TOP_UP = "top_up"

    @property
    def is_credit(self) -> bool:
        return self in CREDIT_TYPES


CREDIT_TYPES = frozenset({
    TransactionType.CREDIT,
    TransactionType.REFUND,
    TransactionType.EARNING,
    TransactionType.TOP_UP,
})

DEBIT_TYPES = frozenset({
    TransactionType.DEBIT,
    TransactionType.WITHDRAWAL,
    TransactionType.PAYMENT,
})


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Transaction(Base):
    """Wallet ledger row with before/after balance snapshots"""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)

    type = Column(
        SQLEnum(
            TransactionType,
            name="transaction_type",
            values_callable=lambda x: [e.value for e in x]
        ),
        nullable=False
    )
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    status = Column(
        SQLEnum(
            TransactionStatus,
            name="transaction_status",
            values_callable=lambda x: [e.value for e in x]
        ),
        default=TransactionStatus.COMPLETED,
        nullable=False,
        index=True
    )

    description = Column(String(500), nullable=True)
    # מזהה חיצוני (payment intent / refund id) — ייחודי כשקיים
    reference = Column(String(255), unique=True, nullable=True)
    # "metadata" שמור ב-declarative, לכן שם שונה בצד ה-Python
    extra_metadata = Column("metadata", JSON, nullable=True)

    balance_before = Column(Numeric(10, 2), nullable=False)
    balance_after = Column(Numeric(10, 2), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)
    failure_reason = Column(String(500), nullable=True)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_transactions_amount_non_negative"),
        Index("ix_transactions_user_created", "user_id", "created_at"),
    )
