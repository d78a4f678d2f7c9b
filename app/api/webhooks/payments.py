"""
Payment Webhook Handler - Stripe events → order payment state
"""
from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.payment_reconciliation_service import PaymentReconciliationService
from app.domain.services.payments import BasePaymentProcessor, get_payment_processor

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "",
    summary="Webhook של ספק התשלומים",
    description=(
        "מקבל אירועי payment_intent.succeeded / payment_intent.payment_failed. "
        "החתימה נבדקת על הגוף הגולמי לפני כל עיבוד; אירוע כפול מאושר בלי עיבוד חוזר."
    ),
)
async def payment_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    processor: BasePaymentProcessor = Depends(get_payment_processor),
):
    # החתימה מחושבת על הבייטים המקוריים, לא על JSON מפוענח
    raw_body = await request.body()
    service = PaymentReconciliationService(db, processor)
    outcome = await service.apply_payment_event(raw_body, stripe_signature)
    return {"received": True, "event_id": outcome.event_id, "result": outcome.result}
