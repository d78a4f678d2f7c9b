"""
Notification Dispatcher - fire-and-forget notifications through the outbox
"""
from __future__ import annotations

from typing import Any, Iterable
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.models.order import Order
from app.db.models.outbox_message import NotificationChannel
from app.domain.services.outbox_service import OutboxService

logger = get_logger(__name__)


class NotificationDispatcher:
    """
    Queues notifications as outbox rows.

    notify() never raises: a failure to queue is logged and dropped so the
    calling order or payment operation is unaffected. The caller commits.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.outbox = OutboxService(db)

    async def notify(
        self,
        recipient_id: int,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
        channels: Iterable[NotificationChannel] = (NotificationChannel.IN_APP,),
        message_type: str = "notification",
    ) -> int:
        """
        Queue one message per channel.

        Returns:
            Number of messages queued
        """
        content = {"title": title, "body": body, "data": data or {}}
        queued = 0
        for channel in channels:
            try:
                await self.outbox.queue_message(
                    channel=channel,
                    recipient_id=str(recipient_id),
                    message_type=message_type,
                    message_content=content,
                )
                queued += 1
            except Exception as e:
                logger.warning(
                    "Failed to queue notification",
                    extra_data={
                        "recipient_id": recipient_id,
                        "channel": channel.value,
                        "message_type": message_type,
                        "error": str(e),
                    }
                )
        return queued

    async def notify_order_created(self, order: Order) -> None:
        data = {"order_id": order.id, "order_number": order.order_number}
        await self.notify(
            order.customer_id,
            "Order placed",
            f"Your order {order.order_number} for ${order.total} was placed.",
            data,
            channels=(NotificationChannel.EMAIL,),
            message_type="order_created",
        )
        await self.notify(
            order.vendor_id,
            "New order",
            f"You have a new order {order.order_number}.",
            data,
            channels=(NotificationChannel.IN_APP, NotificationChannel.SOCKET),
            message_type="order_received",
        )

    async def notify_status_change(self, order: Order) -> None:
        data = {
            "order_id": order.id,
            "order_number": order.order_number,
            "status": order.status.value,
        }
        body = f"Order {order.order_number} is now {order.status.value.replace('_', ' ')}."
        await self.notify(
            order.customer_id,
            "Order update",
            body,
            data,
            channels=(NotificationChannel.IN_APP, NotificationChannel.SOCKET),
            message_type="order_status",
        )
