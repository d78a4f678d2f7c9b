"""
Vendor Profile Model - kitchen location and delivery fee policy
"""
from decimal import Decimal
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Float, Numeric, ForeignKey
from sqlalchemy.orm import relationship

from app.db.database import Base


class VendorProfile(Base):
    """Vendor ("prepper") business details"""

    __tablename__ = "vendor_profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)

    business_name = Column(String(150), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)

    # מדיניות דמי משלוח: בסיס + תוספת לכל ק"מ (מעוגל למעלה)
    delivery_base_fee = Column(Numeric(10, 2), default=Decimal("5.00"), nullable=False)
    delivery_per_km_fee = Column(Numeric(10, 2), default=Decimal("2.00"), nullable=False)
    estimated_delivery_minutes = Column(Integer, default=30, nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)
    total_orders = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User")

    @property
    def coordinates(self) -> tuple[float, float]:
        """(lng, lat)"""
        return (self.longitude, self.latitude)
