"""
Processor Factory — יצירת ספק התשלומים.

נחשף כ-dependency של FastAPI (get_payment_processor) כדי שבדיקות יוכלו
להחליף אותו ב-dependency_overrides.
"""
from __future__ import annotations

import threading

from app.core.circuit_breaker import get_payments_circuit_breaker
from app.core.logging import get_logger
from app.domain.services.payments.base_processor import BasePaymentProcessor

logger = get_logger(__name__)

_processor: BasePaymentProcessor | None = None
_lock = threading.Lock()


def get_payment_processor() -> BasePaymentProcessor:
    """ספק התשלומים של האפליקציה (singleton)."""
    global _processor
    if _processor is None:
        with _lock:
            if _processor is None:
                from app.domain.services.payments.stripe_processor import StripePaymentProcessor

                _processor = StripePaymentProcessor(circuit_breaker=get_payments_circuit_breaker())
                logger.info(
                    "ספק תשלומים אותחל",
                    extra_data={"provider": _processor.provider_name},
                )
    return _processor


def reset_processor() -> None:
    """איפוס הספק — לשימוש בבדיקות בלבד."""
    global _processor
    with _lock:
        _processor = None
