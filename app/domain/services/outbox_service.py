"""
Outbox Service - Transactional Outbox Pattern for Notifications

Notifications are written as rows in the caller's transaction and delivered
later by a Celery worker, so a slow or failing gateway never blocks or
fails an order operation.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, or_

from app.core.config import settings
from app.db.models.outbox_message import OutboxMessage, NotificationChannel, MessageStatus


def _calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Exponential backoff ``base_seconds * 2**retry_count`` capped at
    ``max_backoff_seconds``, without computing huge powers for large counts.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # 2**retry_count >= ceil(max/base) ⇔ retry_count >= threshold
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if retry_count >= threshold:
        return max_backoff_seconds

    return min(base_seconds * (1 << retry_count), max_backoff_seconds)


class OutboxService:
    """Service for managing outbox messages"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def queue_message(
        self,
        channel: NotificationChannel,
        recipient_id: str,
        message_type: str,
        message_content: dict
    ) -> OutboxMessage:
        """Queue a single message; the caller's commit makes it visible"""
        message = OutboxMessage(
            channel=channel,
            recipient_id=recipient_id,
            message_type=message_type,
            message_content=message_content,
            status=MessageStatus.PENDING
        )
        self.db.add(message)
        return message

    async def get_pending_messages(self, limit: int = 100) -> List[OutboxMessage]:
        """Pending messages whose backoff has elapsed, oldest first"""
        now = datetime.utcnow()
        result = await self.db.execute(
            select(OutboxMessage)
            .where(
                OutboxMessage.status == MessageStatus.PENDING,
                or_(
                    OutboxMessage.next_retry_at.is_(None),
                    OutboxMessage.next_retry_at <= now,
                ),
            )
            .order_by(OutboxMessage.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _get(self, message_id: int) -> OutboxMessage | None:
        result = await self.db.execute(
            select(OutboxMessage).where(OutboxMessage.id == message_id)
        )
        return result.scalar_one_or_none()

    async def mark_as_processing(self, message_id: int) -> None:
        message = await self._get(message_id)
        if message:
            message.status = MessageStatus.PROCESSING
            await self.db.commit()

    async def mark_as_sent(self, message_id: int) -> None:
        message = await self._get(message_id)
        if message:
            message.status = MessageStatus.SENT
            message.processed_at = datetime.utcnow()
            await self.db.commit()

    async def mark_as_failed(self, message_id: int, error: str) -> None:
        """Record a failed attempt; retry with backoff until max_retries"""
        message = await self._get(message_id)
        if message:
            message.retry_count += 1
            message.last_error = error[:1000]

            if message.retry_count >= message.max_retries:
                message.status = MessageStatus.FAILED
            else:
                message.status = MessageStatus.PENDING
                backoff_seconds = _calculate_backoff_seconds(
                    message.retry_count,
                    base_seconds=settings.OUTBOX_RETRY_BASE_SECONDS,
                    max_backoff_seconds=settings.OUTBOX_MAX_BACKOFF_SECONDS,
                )
                message.next_retry_at = datetime.utcnow() + timedelta(
                    seconds=backoff_seconds
                )

            await self.db.commit()

    async def delete_processed_before(self, cutoff: datetime) -> int:
        """Remove sent/failed messages older than cutoff"""
        result = await self.db.execute(
            delete(OutboxMessage).where(
                OutboxMessage.status.in_([MessageStatus.SENT, MessageStatus.FAILED]),
                OutboxMessage.created_at < cutoff,
            )
        )
        await self.db.commit()
        return result.rowcount or 0
