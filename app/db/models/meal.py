"""
Meal Model - vendor catalog entry
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Numeric, ForeignKey, Text

from app.db.database import Base


class Meal(Base):
    __tablename__ = "meals"

    id = Column(Integer, primary_key=True, index=True)
    vendor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    name = Column(String(150), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)

    # מונה הזמנות לכל מנה — מתעדכן best-effort אחרי יצירת הזמנה
    total_orders = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
