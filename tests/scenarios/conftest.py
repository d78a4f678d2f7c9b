"""
Fixtures ו-helpers לבדיקות תרחיש מקצה לקצה.

מספק:
- פונקציות קריאה תמציתיות ל-API (עגלה, הזמנה, מעבר סטטוס, webhook)
- "הזזת שעון" של הזמנה שנמסרה אחרי תקופת ההמתנה
- פונקציות אימות DB (סטטוס הזמנה, outbox, ארנק, תנועות)
"""
import json
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.models.order import Order
from app.db.models.outbox_message import OutboxMessage
from app.db.models.transaction import Transaction
from app.db.models.wallet import Wallet
from tests.conftest import auth_headers, sign_webhook


# ============================================================================
# קריאות API
# ============================================================================

async def add_to_cart(client, user, meal_id: int, quantity: int = 1) -> dict:
    response = await client.post(
        "/api/cart", json={"meal_id": meal_id, "quantity": quantity}, headers=auth_headers(user)
    )
    assert response.status_code == 201, response.text
    return response.json()


async def checkout(client, customer, vendor_id: int, **body) -> dict:
    """POST /api/orders — כרטיס כברירת מחדל"""
    payload = {"vendor_id": vendor_id, "payment_method": "card", "payment_method_ref": "pm_card_visa"}
    payload.update(body)
    response = await client.post("/api/orders", json=payload, headers=auth_headers(customer))
    assert response.status_code == 201, response.text
    return response.json()


async def move_to(client, user, order_id: int, status: str, **body) -> dict:
    response = await client.post(
        f"/api/orders/{order_id}/status",
        json={"status": status, **body},
        headers=auth_headers(user),
    )
    assert response.status_code == 200, response.text
    return response.json()


async def send_payment_event(client, event_id: str, event_type: str, intent_id: str) -> dict:
    """webhook חתום כמו שספק התשלומים שולח"""
    payload = json.dumps({
        "id": event_id,
        "type": event_type,
        "data": {"object": {"id": intent_id}},
    }).encode("utf-8")
    response = await client.post(
        "/api/webhooks/payments",
        content=payload,
        headers={"Stripe-Signature": sign_webhook(payload), "Content-Type": "application/json"},
    )
    assert response.status_code == 200, response.text
    return response.json()


async def age_past_holding_period(db_session: AsyncSession, order_id: int) -> None:
    """updated_at אחורה — כאילו ההזמנה נמסרה לפני תקופת ההמתנה"""
    await db_session.execute(
        update(Order)
        .where(Order.id == order_id)
        .values(updated_at=datetime.utcnow() - timedelta(hours=settings.SETTLEMENT_HOLDING_HOURS + 1))
    )
    await db_session.commit()


# ============================================================================
# פונקציות אימות DB
# ============================================================================

async def assert_order_status(db_session: AsyncSession, order_id: int, expected_status) -> Order:
    """אימות סטטוס הזמנה — שליפה טרייה מ-DB, מחזיר את ההזמנה"""
    result = await db_session.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )
    order = result.scalar_one()
    assert order.status == expected_status, (
        f"צפי: {expected_status}, בפועל: {order.status}"
    )
    return order


async def assert_outbox_count(
    db_session: AsyncSession,
    message_type: str,
    min_count: int = 1,
) -> None:
    """אימות שיש לפחות min_count הודעות outbox מסוג נתון"""
    result = await db_session.execute(
        select(func.count(OutboxMessage.id)).where(
            OutboxMessage.message_type == message_type
        )
    )
    count = result.scalar()
    assert count >= min_count, (
        f"צפי >= {min_count} הודעות outbox מסוג '{message_type}', נמצאו {count}"
    )


async def assert_wallet(
    db_session: AsyncSession,
    user_id: int,
    *,
    balance: Decimal | str | None = None,
    pending: Decimal | str | None = None,
) -> Wallet:
    """אימות יתרות ארנק — שליפה טרייה מ-DB"""
    result = await db_session.execute(
        select(Wallet).where(Wallet.user_id == user_id).execution_options(populate_existing=True)
    )
    wallet = result.scalar_one()
    if balance is not None:
        assert wallet.balance == Decimal(balance), f"צפי: {balance}, בפועל: {wallet.balance}"
    if pending is not None:
        assert wallet.pending_balance == Decimal(pending), (
            f"צפי pending: {pending}, בפועל: {wallet.pending_balance}"
        )
    return wallet


async def assert_transaction_count(db_session: AsyncSession, user_id: int, expected_count: int) -> None:
    """אימות מספר התנועות של משתמש"""
    result = await db_session.execute(
        select(func.count(Transaction.id)).where(Transaction.user_id == user_id)
    )
    count = result.scalar()
    assert count == expected_count, (
        f"צפי: {expected_count} תנועות, נמצאו {count}"
    )
