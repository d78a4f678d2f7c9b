"""
Webhook Event Model - טבלת idempotency למניעת עיבוד כפול של אירועי תשלום.

כל אירוע נכנס נרשם לפי event_id של הספק. רק אירועים עם status=completed
נחסמים מעיבוד חוזר; אירוע שנתקע ב-processing (קריסה באמצע) מותר ל-retry.
"""
from datetime import datetime

from sqlalchemy import Column, String, DateTime, Index

from app.db.database import Base


class WebhookEvent(Base):
    """Processor event that has been received"""

    __tablename__ = "webhook_events"

    event_id = Column(String(200), primary_key=True)
    source = Column(String(20), nullable=False)  # "stripe"
    event_type = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default="processing")
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_webhook_events_status_created", "status", "created_at"),
    )
