"""
Stripe Payment Processor

The stripe SDK is synchronous; calls run in a worker thread so the event
loop is not blocked, and go through the payments circuit breaker.
"""
from __future__ import annotations

import asyncio
import json
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable

import stripe

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import (
    PaymentDeclinedError,
    PaymentProviderError,
    PaymentTimeoutError,
    WebhookSignatureError,
)
from app.core.logging import get_logger
from app.domain.services.payments.base_processor import (
    BasePaymentProcessor,
    PaymentIntentResult,
    RefundResult,
)

logger = get_logger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """12.34 → 1234"""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int | None) -> Decimal | None:
    if amount is None:
        return None
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


def _intent_result(intent: Any) -> PaymentIntentResult:
    metadata = intent.get("metadata") or {}
    return PaymentIntentResult(
        id=intent["id"],
        status=intent["status"],
        client_secret=intent.get("client_secret"),
        amount=from_minor_units(intent.get("amount")),
        metadata=dict(metadata),
    )


class StripePaymentProcessor(BasePaymentProcessor):
    """BasePaymentProcessor backed by the stripe SDK"""

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        webhook_tolerance: int | None = None,
    ) -> None:
        self._circuit_breaker = circuit_breaker
        self._api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self._webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        )
        self._webhook_tolerance = (
            webhook_tolerance
            if webhook_tolerance is not None
            else settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        )

    @property
    def provider_name(self) -> str:
        return "stripe"

    async def _call(self, operation: str, func: Callable[..., Any], **kwargs: Any) -> Any:
        """Run a stripe call in a thread and map its errors"""

        async def _invoke() -> Any:
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(func, api_key=self._api_key, **kwargs),
                    timeout=settings.PAYMENT_TIMEOUT_SECONDS,
                )
            except stripe.CardError as exc:
                raise PaymentDeclinedError(
                    exc.user_message or str(exc),
                    details={"decline_code": getattr(exc, "code", None)},
                ) from exc
            except (stripe.APIConnectionError, asyncio.TimeoutError) as exc:
                # התוצאה לא ידועה — לא כשל
                raise PaymentTimeoutError(operation) from exc
            except stripe.StripeError as exc:
                raise PaymentProviderError(
                    exc.user_message or str(exc),
                    details={"operation": operation, "http_status": getattr(exc, "http_status", None)},
                ) from exc

        return await self._circuit_breaker.execute(_invoke)

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        payment_method: str | None,
        metadata: dict[str, Any],
        idempotency_key: str,
    ) -> PaymentIntentResult:
        params: dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "metadata": {k: str(v) for k, v in metadata.items()},
            "idempotency_key": idempotency_key,
        }
        if payment_method:
            params.update(
                payment_method=payment_method,
                confirm=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
            )

        intent = await self._call("create_payment_intent", stripe.PaymentIntent.create, **params)
        result = _intent_result(intent)
        logger.info(
            "Payment intent created",
            extra_data={
                "payment_intent_id": result.id,
                "status": result.status,
                "amount": str(amount),
                "currency": currency,
            }
        )
        return result

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentResult:
        intent = await self._call(
            "retrieve_payment_intent", stripe.PaymentIntent.retrieve, id=payment_intent_id
        )
        return _intent_result(intent)

    async def refund(
        self,
        payment_intent_id: str,
        amount: Decimal,
        idempotency_key: str,
    ) -> RefundResult:
        refund = await self._call(
            "refund",
            stripe.Refund.create,
            payment_intent=payment_intent_id,
            amount=to_minor_units(amount),
            idempotency_key=idempotency_key,
        )
        logger.info(
            "Refund issued",
            extra_data={
                "payment_intent_id": payment_intent_id,
                "refund_id": refund["id"],
                "status": refund["status"],
                "amount": str(amount),
            }
        )
        return RefundResult(id=refund["id"], status=refund["status"])

    def verify_webhook_signature(self, raw_body: bytes, signature_header: str | None) -> dict[str, Any]:
        if not self._webhook_secret:
            raise WebhookSignatureError("webhook secret is not configured")
        if not signature_header:
            raise WebhookSignatureError("missing signature header")

        try:
            payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        except UnicodeDecodeError as exc:
            raise WebhookSignatureError("payload is not valid UTF-8") from exc
        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                self._webhook_secret,
                self._webhook_tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError(str(exc)) from exc

        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise WebhookSignatureError("payload is not valid JSON") from exc
        if not isinstance(event, dict):
            raise WebhookSignatureError("payload is not an event object")
        return event
