"""
Celery Tasks

- worker side of the transactional outbox: pending notifications are
  delivered to the notification gateway
- pending bank withdrawals are handed to the payout gateway
- periodic settlement, payment reconciliation and cleanup sweeps
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, TYPE_CHECKING

import httpx
from sqlalchemy import delete

from app.workers.celery_app import celery_app
from app.core.circuit_breaker import get_notifications_circuit_breaker, get_payouts_circuit_breaker
from app.core.config import settings
from app.core.exceptions import NotificationGatewayError, PayoutGatewayError
from app.core.logging import get_logger, set_correlation_id
from app.db.database import get_task_session
from app.db.models.outbox_message import OutboxMessage
from app.db.models.transaction import Transaction
from app.db.models.webhook_event import WebhookEvent
from app.domain.services.outbox_service import OutboxService
from app.domain.services.payment_reconciliation_service import PaymentReconciliationService
from app.domain.services.payments import get_payment_processor
from app.domain.services.settlement_service import SettlementService
from app.domain.services.wallet_service import WalletService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


# ==================== Notifications ====================

async def _send_notification(message: OutboxMessage) -> None:
    """POST one outbox message to the notification gateway (circuit breaker protected)"""
    if not settings.NOTIFICATION_GATEWAY_URL:
        # סביבת פיתוח — אין gateway, ההודעה רק נרשמת בלוג
        logger.info(
            "Notification gateway not configured, message logged only",
            extra_data={
                "message_id": message.id,
                "channel": message.channel.value,
                "recipient_id": message.recipient_id,
                "message_type": message.message_type,
            }
        )
        return

    circuit_breaker = get_notifications_circuit_breaker()

    async def _send():
        payload = {
            "id": message.id,
            "channel": message.channel.value,
            "recipient_id": message.recipient_id,
            "message_type": message.message_type,
            "content": message.message_content,
        }
        async with httpx.AsyncClient() as client:
            response = await client.post(
                settings.NOTIFICATION_GATEWAY_URL, json=payload, timeout=15.0
            )
            if response.status_code >= 300:
                raise NotificationGatewayError.from_response("send", response)

    await circuit_breaker.execute(_send)


async def deliver_message(db: "AsyncSession", message: OutboxMessage) -> tuple[bool, str]:
    """Deliver one outbox message and record the outcome"""
    outbox_service = OutboxService(db)
    await outbox_service.mark_as_processing(message.id)
    try:
        await _send_notification(message)
    except Exception as e:
        logger.warning(
            "Notification delivery failed",
            extra_data={"message_id": message.id, "error": str(e)}
        )
        await outbox_service.mark_as_failed(message.id, str(e))
        return False, str(e)

    await outbox_service.mark_as_sent(message.id)
    return True, "Message sent successfully"


async def dispatch_pending_messages(db: "AsyncSession", limit: int = 50) -> list[dict[str, Any]]:
    outbox_service = OutboxService(db)
    messages = await outbox_service.get_pending_messages(limit=limit)

    results = []
    for message in messages:
        success, result = await deliver_message(db, message)
        results.append({"message_id": message.id, "success": success, "result": result})
    return results


@celery_app.task(name="app.workers.tasks.process_outbox_messages")
def process_outbox_messages():
    """
    Process pending messages from the outbox.
    This task runs periodically to ensure reliable message delivery.
    """

    async def _process():
        async with get_task_session() as db:
            return await dispatch_pending_messages(db)

    return run_async(_process())


# ==================== Withdrawals ====================

async def _request_payout(transaction: Transaction) -> dict[str, Any]:
    """
    Ask the payout gateway to transfer a pending withdrawal.

    Returns the gateway's answer: {"status": completed|failed|pending, "reference", "reason"}.
    Without a configured gateway every withdrawal is approved immediately.
    """
    if not settings.PAYOUT_GATEWAY_URL:
        return {"status": "completed", "reference": None}

    circuit_breaker = get_payouts_circuit_breaker()
    metadata = transaction.extra_metadata or {}

    async def _send():
        payload = {
            "transaction_id": transaction.id,
            "user_id": transaction.user_id,
            "amount": str(transaction.amount),
            "currency": transaction.currency,
            "bank_account_name": metadata.get("bank_account_name"),
            "bank_name": metadata.get("bank_name"),
            "bank_account_number": metadata.get("bank_account_number"),
        }
        async with httpx.AsyncClient() as client:
            # אותו מפתח בכל ניסיון — השער לא יבצע העברה כפולה
            response = await client.post(
                settings.PAYOUT_GATEWAY_URL,
                json=payload,
                headers={"Idempotency-Key": f"payout-{transaction.id}"},
                timeout=30.0,
            )
            if response.status_code >= 300:
                raise PayoutGatewayError(
                    f"payout returned status {response.status_code}",
                    details={"transaction_id": transaction.id, "status_code": response.status_code},
                )
            return response.json()

    return await circuit_breaker.execute(_send)


async def process_withdrawal_batch(db: "AsyncSession", limit: int | None = None) -> dict[str, int]:
    wallet_service = WalletService(db)
    pending = await wallet_service.get_pending_withdrawals(limit=limit or settings.PAYOUT_BATCH_SIZE)
    # rollback בתוך complete/fail מבטל את תוקף האובייקטים — עובדים לפי id
    pending_ids = [transaction.id for transaction in pending]

    counts = {"completed": 0, "failed": 0, "pending": 0, "errors": 0}
    for transaction_id in pending_ids:
        try:
            transaction = await db.get(Transaction, transaction_id, populate_existing=True)
            answer = await _request_payout(transaction)
            status = answer.get("status")
            if status == "completed":
                await wallet_service.complete_withdrawal(transaction_id, answer.get("reference"))
                counts["completed"] += 1
            elif status == "failed":
                await wallet_service.fail_withdrawal(
                    transaction_id, answer.get("reason") or "Rejected by payout gateway"
                )
                counts["failed"] += 1
            else:
                counts["pending"] += 1
        except Exception as e:
            # נשאר pending וייבדק שוב בריצה הבאה
            counts["errors"] += 1
            logger.error(
                "Withdrawal payout failed",
                extra_data={"transaction_id": transaction_id, "error": str(e)},
                exc_info=True
            )

    if pending_ids:
        logger.info("Withdrawal batch processed", extra_data=counts)
    return counts


@celery_app.task(name="app.workers.tasks.process_pending_withdrawals")
def process_pending_withdrawals():
    """Hand pending bank withdrawals to the payout gateway"""

    async def _process():
        async with get_task_session() as db:
            return await process_withdrawal_batch(db)

    return run_async(_process())


# ==================== Settlement / reconciliation ====================

@celery_app.task(name="app.workers.tasks.settle_earnings_sweep")
def settle_earnings_sweep():
    """Release earnings of orders past the holding period for every vendor and rider"""

    async def _settle():
        async with get_task_session() as db:
            counts = await SettlementService(db).settle_all()
            logger.info("Settlement sweep finished", extra_data=counts)
            return counts

    return run_async(_settle())


@celery_app.task(name="app.workers.tasks.reconcile_processing_payments")
def reconcile_processing_payments():
    """Re-query the processor for orders whose payment webhook never arrived"""

    async def _reconcile():
        async with get_task_session() as db:
            service = PaymentReconciliationService(db, get_payment_processor())
            return await service.reconcile_processing_payments()

    return run_async(_reconcile())


# ==================== Cleanup ====================

@celery_app.task(name="app.workers.tasks.cleanup_old_messages")
def cleanup_old_messages(days: int = 30):
    """Clean up old processed messages from the outbox"""

    async def _cleanup():
        async with get_task_session() as db:
            cutoff = datetime.utcnow() - timedelta(days=days)
            deleted = await OutboxService(db).delete_processed_before(cutoff)
            return {"deleted": deleted}

    return run_async(_cleanup())


@celery_app.task(name="app.workers.tasks.cleanup_old_webhook_events")
def cleanup_old_webhook_events(days: int = 7):
    """ניקוי רשומות ישנות מטבלת webhook_events (idempotency)"""

    async def _cleanup():
        async with get_task_session() as db:
            cutoff = datetime.utcnow() - timedelta(days=days)

            result = await db.execute(
                delete(WebhookEvent).where(
                    WebhookEvent.status == "completed",
                    WebhookEvent.created_at < cutoff,
                )
            )
            deleted = result.rowcount

            await db.commit()
            logger.info(
                "Cleaned up old webhook events",
                extra_data={"deleted": deleted, "cutoff_days": days},
            )
            return {"deleted": deleted}

    return run_async(_cleanup())
