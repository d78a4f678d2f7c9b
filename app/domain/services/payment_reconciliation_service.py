"""
Payment Reconciliation Service - processor events → order payment state

Events arrive at least once and in any order, so every handler first
checks the current state and does nothing when the event is already
reflected. Incoming event ids are recorded in webhook_events: a completed
event is acknowledged without reprocessing, a row stuck in 'processing'
(crash mid-way) may be retried once it goes stale.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import InvalidStateTransitionError
from app.core.logging import get_logger, log_async_operation
from app.db.models.order import Order, OrderStatus, PaymentStatus
from app.db.models.webhook_event import WebhookEvent
from app.domain.services.notification_service import NotificationDispatcher
from app.domain.services.payments.base_processor import BasePaymentProcessor
from app.state_machine import Actor, OrderStateMachine

logger = get_logger(__name__)

# אירוע ב-processing יותר מ-2 דקות = תקוע, מאפשרים retry
_STALE_PROCESSING_SECONDS = 120

EVENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_INTENT_FAILED = "payment_intent.payment_failed"


class EventResult:
    """What applying an event did"""
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REFUNDED = "refunded"
    NOOP = "noop"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNKNOWN_INTENT = "unknown_intent"


@dataclass
class EventOutcome:
    event_id: str | None
    event_type: str | None
    result: str


class PaymentReconciliationService:
    """Applies payment processor outcomes to orders"""

    def __init__(
        self,
        db: AsyncSession,
        processor: BasePaymentProcessor,
        notifier: NotificationDispatcher | None = None,
    ):
        self.db = db
        self.processor = processor
        self.notifier = notifier or NotificationDispatcher(db)
        self.state_machine = OrderStateMachine(db)

    # ==================== Event idempotency ====================

    async def _try_acquire_event(self, event_id: str, event_type: str | None) -> bool:
        """
        Claim an event for processing.

        Returns False for a completed duplicate or one still in progress.
        """
        try:
            async with self.db.begin_nested():
                self.db.add(WebhookEvent(
                    event_id=event_id,
                    source=self.processor.provider_name,
                    event_type=event_type,
                    status="processing",
                    created_at=datetime.utcnow(),
                ))
            # נשמר גם אם העיבוד ייכשל, כדי שלא יעובד במקביל
            await self.db.commit()
            return True
        except IntegrityError:
            pass

        result = await self.db.execute(
            select(WebhookEvent.status, WebhookEvent.created_at)
            .where(WebhookEvent.event_id == event_id)
        )
        row = result.one_or_none()
        if not row:
            return False

        if row.status == "completed":
            logger.info(
                "Skipping completed duplicate payment event",
                extra_data={"event_id": event_id, "event_type": event_type}
            )
            return False

        threshold = datetime.utcnow() - timedelta(seconds=_STALE_PROCESSING_SECONDS)
        retried = await self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.event_id == event_id,
                WebhookEvent.status == "processing",
                WebhookEvent.created_at < threshold,
            )
            .values(created_at=datetime.utcnow())
        )
        if retried.rowcount > 0:
            await self.db.commit()
            logger.warning(
                "Retrying stale payment event",
                extra_data={"event_id": event_id}
            )
            return True

        logger.info(
            "Skipping in-progress payment event",
            extra_data={"event_id": event_id}
        )
        return False

    async def _mark_event_completed(self, event_id: str) -> None:
        await self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .values(status="completed")
        )
        await self.db.commit()

    async def _release_event(self, event_id: str, error: Exception) -> None:
        """Drop the processing claim so the processor's retry is handled, not skipped"""
        await self.db.rollback()
        await self.db.execute(
            delete(WebhookEvent)
            .where(WebhookEvent.event_id == event_id, WebhookEvent.status == "processing")
            .execution_options(synchronize_session="fetch")
        )
        await self.db.commit()
        logger.warning(
            "Payment event failed, released for retry",
            extra_data={"event_id": event_id, "error": str(error)}
        )

    # ==================== Entry point ====================

    async def apply_payment_event(self, raw_body: bytes, signature_header: str | None) -> EventOutcome:
        """
        Verify and apply one processor webhook.

        The signature is checked before the body is parsed or the database
        touched; WebhookSignatureError propagates with nothing changed.
        """
        try:
            event = self.processor.verify_webhook_signature(raw_body, signature_header)
        except Exception as e:
            logger.warning(
                "Payment webhook signature rejected",
                extra_data={"error": str(e)}
            )
            raise

        event_id = event.get("id")
        event_type = event.get("type")

        if event_id and not await self._try_acquire_event(event_id, event_type):
            return EventOutcome(event_id, event_type, EventResult.DUPLICATE)

        intent = (event.get("data") or {}).get("object") or {}
        intent_id = intent.get("id")

        try:
            if event_type == EVENT_INTENT_SUCCEEDED and intent_id:
                result = await self.handle_intent_succeeded(intent_id)
            elif event_type == EVENT_INTENT_FAILED and intent_id:
                result = await self.handle_intent_failed(intent_id, _failure_message(intent))
            else:
                logger.info(
                    "Ignoring payment event",
                    extra_data={"event_id": event_id, "event_type": event_type}
                )
                result = EventResult.IGNORED
        except Exception as e:
            if event_id:
                await self._release_event(event_id, e)
            raise

        if event_id:
            await self._mark_event_completed(event_id)

        logger.info(
            "Payment event applied",
            extra_data={
                "event_id": event_id,
                "event_type": event_type,
                "payment_intent_id": intent_id,
                "result": result,
            }
        )
        return EventOutcome(event_id, event_type, result)

    # ==================== Outcome handlers ====================

    async def _load_by_intent(self, intent_id: str) -> Order | None:
        result = await self.db.execute(
            select(Order)
            .where(Order.payment_intent_id == intent_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def handle_intent_succeeded(self, intent_id: str) -> str:
        try:
            order = await self._load_by_intent(intent_id)
            if order is None:
                logger.warning(
                    "Payment succeeded for unknown intent",
                    extra_data={"payment_intent_id": intent_id}
                )
                await self.db.rollback()
                return EventResult.UNKNOWN_INTENT

            if order.payment_status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
                await self.db.rollback()
                return EventResult.NOOP

            if order.status == OrderStatus.CANCELLED:
                # התשלום הגיע אחרי ביטול — מחזירים אותו
                refund = await self.processor.refund(
                    payment_intent_id=intent_id,
                    amount=order.total,
                    idempotency_key=f"refund-{order.order_number}",
                )
                order.payment_status = PaymentStatus.REFUNDED
                order.refund_amount = order.total
                self.state_machine.record_event(
                    order, Actor.system(), "Late payment refunded after cancellation"
                )
                await self.db.commit()
                logger.warning(
                    "Payment succeeded on cancelled order, refunded",
                    extra_data={
                        "order_id": order.id,
                        "payment_intent_id": intent_id,
                        "refund_id": refund.id,
                        "amount": str(order.total),
                    }
                )
                return EventResult.REFUNDED

            order.payment_status = PaymentStatus.COMPLETED
            if order.status == OrderStatus.PENDING:
                self.state_machine.transition(
                    order,
                    OrderStatus.CONFIRMED,
                    Actor.system(),
                    note="Payment completed successfully",
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Order payment completed",
            extra_data={
                "order_id": order.id,
                "payment_intent_id": intent_id,
                "status": order.status.value,
            }
        )
        await self._notify(order)
        return EventResult.CONFIRMED

    async def handle_intent_failed(self, intent_id: str, reason: str | None = None) -> str:
        try:
            order = await self._load_by_intent(intent_id)
            if order is None:
                logger.warning(
                    "Payment failed for unknown intent",
                    extra_data={"payment_intent_id": intent_id}
                )
                await self.db.rollback()
                return EventResult.UNKNOWN_INTENT

            if order.payment_status in (
                PaymentStatus.FAILED,
                PaymentStatus.COMPLETED,
                PaymentStatus.REFUNDED,
            ):
                await self.db.rollback()
                return EventResult.NOOP

            order.payment_status = PaymentStatus.FAILED
            try:
                self.state_machine.check_transition(order, OrderStatus.CANCELLED, Actor.system())
            except InvalidStateTransitionError:
                logger.warning(
                    "Payment failed but order can no longer be cancelled",
                    extra_data={
                        "order_id": order.id,
                        "payment_intent_id": intent_id,
                        "status": order.status.value,
                    }
                )
            else:
                self.state_machine.transition(
                    order, OrderStatus.CANCELLED, Actor.system(), note="Payment failed"
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Order payment failed",
            extra_data={
                "order_id": order.id,
                "payment_intent_id": intent_id,
                "reason": reason,
                "status": order.status.value,
            }
        )
        await self._notify(order)
        return EventResult.FAILED

    # ==================== Sweep ====================

    @log_async_operation("payment reconciliation sweep")
    async def reconcile_processing_payments(self, limit: int = 100) -> dict[str, int]:
        """
        Re-query the processor for orders stuck in 'processing' (webhook lost)
        and apply the same succeeded/failed handling.
        """
        cutoff = datetime.utcnow() - timedelta(minutes=settings.PAYMENT_RECONCILE_AFTER_MINUTES)
        result = await self.db.execute(
            select(Order.id, Order.payment_intent_id)
            .where(
                Order.payment_status == PaymentStatus.PROCESSING,
                Order.payment_intent_id.is_not(None),
                Order.created_at < cutoff,
            )
            .order_by(Order.created_at)
            .limit(limit)
        )
        stuck = result.all()
        await self.db.rollback()

        counts = {"checked": 0, "confirmed": 0, "failed": 0, "pending": 0, "errors": 0}
        for order_id, intent_id in stuck:
            counts["checked"] += 1
            try:
                intent = await self.processor.retrieve_payment_intent(intent_id)
                if intent.succeeded:
                    await self.handle_intent_succeeded(intent_id)
                    counts["confirmed"] += 1
                elif intent.failed:
                    await self.handle_intent_failed(intent_id, f"intent status {intent.status}")
                    counts["failed"] += 1
                else:
                    counts["pending"] += 1
            except Exception as e:
                counts["errors"] += 1
                logger.error(
                    "Failed to reconcile payment",
                    extra_data={
                        "order_id": order_id,
                        "payment_intent_id": intent_id,
                        "error": str(e),
                    },
                    exc_info=True
                )

        if counts["checked"]:
            logger.info("Payment reconciliation sweep finished", extra_data=counts)
        return counts

    async def _notify(self, order: Order) -> None:
        order_id = order.id
        try:
            await self.notifier.notify_status_change(order)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.warning(
                "Failed to queue payment notification",
                extra_data={"order_id": order_id, "error": str(e)}
            )


def _failure_message(intent: dict[str, Any]) -> str | None:
    error = intent.get("last_payment_error") or {}
    return error.get("message")
