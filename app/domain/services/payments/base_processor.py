"""
ממשק בסיסי לספק תשלומים — Dependency Inversion.

שכבת הלוגיקה (יצירת הזמנה, ביטול, התאמת webhooks) תלויה רק בממשק הזה
ולא ב-SDK של ספק מסוים, כך שבבדיקות אפשר להזריק מימוש מזויף.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any


class IntentStatus:
    """Payment intent statuses the core acts on"""
    SUCCEEDED = "succeeded"
    PROCESSING = "processing"
    REQUIRES_ACTION = "requires_action"
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    CANCELED = "canceled"


@dataclass(frozen=True)
class PaymentIntentResult:
    id: str
    status: str
    client_secret: str | None = None
    amount: Decimal | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == IntentStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status in (IntentStatus.REQUIRES_PAYMENT_METHOD, IntentStatus.CANCELED)


@dataclass(frozen=True)
class RefundResult:
    id: str
    status: str


class BasePaymentProcessor(ABC):
    """
    ממשק אחיד לספק תשלומים.

    כל מימוש אחראי על:
    - המרת סכומים ליחידות הספק (סנטים)
    - מיפוי שגיאות הספק ל-PaymentDeclinedError / PaymentTimeoutError / PaymentProviderError
    - circuit breaker
    """

    @abstractmethod
    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        payment_method: str | None,
        metadata: dict[str, Any],
        idempotency_key: str,
    ) -> PaymentIntentResult:
        """
        יצירת payment intent ואישורו.

        קריאה חוזרת עם אותו idempotency_key מחזירה את אותו intent
        ולא יוצרת חיוב שני.

        Raises:
            PaymentDeclinedError: הכרטיס נדחה.
            PaymentTimeoutError: אין תשובה — התוצאה לא ידועה.
            PaymentProviderError: כשל ודאי אחר.
        """

    @abstractmethod
    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentResult:
        """שליפת המצב הנוכחי של intent מהספק."""

    @abstractmethod
    async def refund(
        self,
        payment_intent_id: str,
        amount: Decimal,
        idempotency_key: str,
    ) -> RefundResult:
        """החזר כספי (מלא או חלקי) על intent שהצליח."""

    @abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, signature_header: str | None) -> dict[str, Any]:
        """
        אימות חתימת webhook והחזרת האירוע כ-dict.

        חייב לרוץ לפני כל פענוח תוכן או גישה ל-DB.

        Raises:
            WebhookSignatureError: חתימה חסרה, שגויה או ישנה מדי.
        """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """שם הספק לצורכי לוגים."""
