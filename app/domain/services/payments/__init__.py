"""
Payment processor collaborator
"""
from app.domain.services.payments.base_processor import (
    BasePaymentProcessor,
    IntentStatus,
    PaymentIntentResult,
    RefundResult,
)
from app.domain.services.payments.processor_factory import (
    get_payment_processor,
    reset_processor,
)

__all__ = [
    "BasePaymentProcessor",
    "IntentStatus",
    "PaymentIntentResult",
    "RefundResult",
    "get_payment_processor",
    "reset_processor",
]
