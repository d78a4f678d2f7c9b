"""
User Model - Customers, Vendors, Riders and Admins
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Boolean

from app.db.database import Base


class UserRole(str, enum.Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"
    RIDER = "rider"
    ADMIN = "admin"


class User(Base):
    """Account shared by every marketplace role"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    phone = Column(String(20), nullable=True)
    role = Column(
        SQLEnum(
            UserRole,
            name="user_role",
            values_callable=lambda x: [e.value for e in x]
        ),
        default=UserRole.CUSTOMER,
        nullable=False
    )
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def can_withdraw(self) -> bool:
        """רק ספקים ושליחים מושכים כסף לבנק"""
        return self.role in (UserRole.VENDOR, UserRole.RIDER)
