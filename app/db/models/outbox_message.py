"""
Outbox Message Model - Transactional Outbox Pattern
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON

from app.db.database import Base


class NotificationChannel(str, enum.Enum):
    EMAIL = "email"
    IN_APP = "in_app"
    SOCKET = "socket"


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class OutboxMessage(Base):
    """Queued notification with retry tracking"""

    __tablename__ = "outbox_messages"

    id = Column(Integer, primary_key=True, index=True)

    channel = Column(
        SQLEnum(
            NotificationChannel,
            name="notification_channel",
            values_callable=lambda x: [e.value for e in x]
        ),
        nullable=False
    )
    recipient_id = Column(String(50), nullable=False)  # users.id as string

    message_type = Column(String(50), nullable=False)  # e.g. "order_created", "order_status"
    message_content = Column(JSON, nullable=False)

    status = Column(
        SQLEnum(
            MessageStatus,
            name="message_status",
            values_callable=lambda x: [e.value for e in x]
        ),
        default=MessageStatus.PENDING,
        index=True
    )
    retry_count = Column(Integer, default=0)
    max_retries = Column(Integer, default=3)

    created_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)

    last_error = Column(String(1000), nullable=True)
