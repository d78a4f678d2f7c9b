"""
Rider Profile Model
"""
from datetime import datetime
from sqlalchemy import Column, Integer, DateTime, Boolean, ForeignKey

from app.db.database import Base


class RiderProfile(Base):
    __tablename__ = "rider_profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)

    is_online = Column(Boolean, default=False, nullable=False)
    total_deliveries = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
