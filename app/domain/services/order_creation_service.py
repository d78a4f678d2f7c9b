"""
Order Creation Service - cart → priced, paid, persisted order

Steps, in order:
1. resolve vendor, cart lines for that vendor, delivery address
2. snapshot prices and compute pricing
3. authorize payment (timeouts are re-queried with the same idempotency key)
4. persist the order, regenerating the order number on collision
5. confirm immediately if the intent already succeeded
6. delete the ordered cart lines in the same transaction
7. best-effort counters and notifications after commit
"""
import hashlib
import json
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    NoItemsFromVendorError,
    NoDeliveryAddressError,
    VendorNotFoundError,
    OrderNumberExhaustedError,
    PaymentTimeoutError,
    PaymentOutcomeUnknownError,
    PaymentDeclinedError,
    ValidationException,
)
from app.core.logging import get_logger
from app.db.models.customer import CustomerAddress, CustomerProfile, CartItem
from app.db.models.meal import Meal
from app.db.models.order import Order, OrderItem, OrderStatus, PaymentStatus, PaymentMethod
from app.db.models.vendor import VendorProfile
from app.domain.money import round_money
from app.domain.services.cart_service import CartService
from app.domain.services.catalog_service import CatalogService, MealPrice
from app.domain.services.notification_service import NotificationDispatcher
from app.domain.services.payments.base_processor import BasePaymentProcessor, PaymentIntentResult
from app.domain.services.pricing_service import (
    PricingBreakdown,
    PricingLine,
    compute_delivery_fee,
    compute_earnings_split,
    compute_pricing,
    haversine_km,
)
from app.state_machine import Actor, ActorRole, OrderStateMachine

logger = get_logger(__name__)

_ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number(now: datetime | None = None) -> str:
    """MRA + YYYYMMDD + 6 random uppercase alphanumerics"""
    stamp = (now or datetime.utcnow()).strftime("%Y%m%d")
    suffix = "".join(secrets.choice(_ORDER_NUMBER_ALPHABET) for _ in range(6))
    return f"{settings.ORDER_NUMBER_PREFIX}{stamp}{suffix}"


@dataclass
class CreateOrderCommand:
    customer_id: int
    vendor_id: int
    delivery_date: datetime | None = None
    payment_method: PaymentMethod = PaymentMethod.CARD
    payment_method_ref: str | None = None
    address_id: int | None = None
    special_instructions: str | None = None
    idempotency_key: str | None = None


@dataclass
class PricedLine:
    cart_item: CartItem
    meal: MealPrice
    quantity: int

    @property
    def line_total(self) -> Decimal:
        return round_money(self.meal.price * self.quantity)


@dataclass
class OrderQuote:
    vendor: VendorProfile
    address: CustomerAddress
    lines: List[PricedLine]
    distance_km: float
    pricing: PricingBreakdown


@dataclass
class CreateOrderResult:
    order: Order
    payment_intent: PaymentIntentResult | None = None
    replayed: bool = False
    warnings: List[str] = field(default_factory=list)


class OrderCreationService:
    """Turns a customer's cart lines for one vendor into an order"""

    def __init__(
        self,
        db: AsyncSession,
        processor: BasePaymentProcessor,
        notifier: NotificationDispatcher | None = None,
    ):
        self.db = db
        self.processor = processor
        self.notifier = notifier or NotificationDispatcher(db)
        self.catalog = CatalogService(db)
        self.cart = CartService(db)
        self.state_machine = OrderStateMachine(db)

    # ==================== Resolution ====================

    async def _resolve_vendor(self, vendor_id: int) -> VendorProfile:
        result = await self.db.execute(
            select(VendorProfile).where(
                VendorProfile.user_id == vendor_id,
                VendorProfile.is_active.is_(True),
            )
        )
        vendor = result.scalar_one_or_none()
        if vendor is None:
            raise VendorNotFoundError(vendor_id)
        return vendor

    async def _resolve_address(self, customer_id: int, address_id: int | None) -> CustomerAddress:
        """Explicit address, else the default one, else the oldest one"""
        if address_id is not None:
            result = await self.db.execute(
                select(CustomerAddress).where(
                    CustomerAddress.id == address_id,
                    CustomerAddress.customer_id == customer_id,
                )
            )
            address = result.scalar_one_or_none()
            if address is None:
                raise NoDeliveryAddressError(customer_id, address_id)
            return address

        result = await self.db.execute(
            select(CustomerAddress)
            .where(CustomerAddress.customer_id == customer_id)
            .order_by(CustomerAddress.is_default.desc(), CustomerAddress.created_at, CustomerAddress.id)
            .limit(1)
        )
        address = result.scalar_one_or_none()
        if address is None:
            raise NoDeliveryAddressError(customer_id)
        return address

    async def quote(
        self,
        customer_id: int,
        vendor_id: int,
        address_id: int | None = None,
    ) -> OrderQuote:
        """Price the customer's cart lines for a vendor without persisting anything"""
        vendor = await self._resolve_vendor(vendor_id)

        cart_items = await self.cart.items_for_vendor(customer_id, vendor_id)
        if not cart_items:
            raise NoItemsFromVendorError(vendor_id)

        address = await self._resolve_address(customer_id, address_id)

        lines: List[PricedLine] = []
        for item in cart_items:
            meal = await self.catalog.get_meal_price(item.meal_id)
            if meal.vendor_id != vendor_id:
                raise NoItemsFromVendorError(vendor_id)
            lines.append(PricedLine(cart_item=item, meal=meal, quantity=item.quantity))

        distance = haversine_km(vendor.coordinates, address.coordinates)
        delivery_fee = compute_delivery_fee(
            distance, vendor.delivery_base_fee, vendor.delivery_per_km_fee
        )
        pricing = compute_pricing(
            [PricingLine(price=line.meal.price, quantity=line.quantity) for line in lines],
            delivery_fee,
            tax_percent=settings.ORDER_TAX_PERCENT,
        )
        return OrderQuote(
            vendor=vendor,
            address=address,
            lines=lines,
            distance_km=distance,
            pricing=pricing,
        )

    # ==================== Payment ====================

    @staticmethod
    def derive_idempotency_key(customer_id: int, vendor_id: int, quote: OrderQuote) -> str:
        """
        Stable key for one checkout attempt.

        Cart line ids are part of it, so a later identical cart (new lines)
        gets a new key while a retried request gets the same one.
        """
        payload = {
            "customer_id": customer_id,
            "vendor_id": vendor_id,
            "lines": [
                [line.cart_item.id, line.meal.meal_id, line.quantity, str(line.meal.price)]
                for line in quote.lines
            ],
            "total": str(quote.pricing.total),
        }
        digest = hashlib.sha256(
            json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
        ).hexdigest()
        return f"order-{digest[:48]}"

    async def _authorize_payment(
        self,
        cmd: CreateOrderCommand,
        amount: Decimal,
        idempotency_key: str,
    ) -> PaymentIntentResult:
        """
        Create the payment intent.

        A timeout means the outcome is unknown, so the same call is repeated
        with the same idempotency key, which returns the original intent
        instead of charging twice.
        """
        metadata = {
            "customer_id": cmd.customer_id,
            "vendor_id": cmd.vendor_id,
            "order_type": "meal_order",
        }
        attempts = settings.PAYMENT_MAX_ATTEMPTS
        for attempt in range(1, attempts + 1):
            try:
                return await self.processor.create_payment_intent(
                    amount=amount,
                    currency=settings.PAYMENT_CURRENCY,
                    payment_method=cmd.payment_method_ref,
                    metadata=metadata,
                    idempotency_key=idempotency_key,
                )
            except PaymentTimeoutError:
                logger.warning(
                    "Payment intent outcome unknown, re-querying",
                    extra_data={
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "idempotency_key": idempotency_key,
                    }
                )
        raise PaymentOutcomeUnknownError(idempotency_key, attempts)

    # ==================== Persistence ====================

    async def _find_existing(self, customer_id: int, idempotency_key: str | None, intent_id: str | None) -> Order | None:
        if intent_id:
            result = await self.db.execute(
                select(Order).where(Order.payment_intent_id == intent_id)
            )
            order = result.scalar_one_or_none()
            if order is not None:
                return order
        if idempotency_key:
            result = await self.db.execute(
                select(Order).where(
                    Order.customer_id == customer_id,
                    Order.payment_idempotency_key == idempotency_key,
                )
            )
            return result.scalar_one_or_none()
        return None

    def _build_order(
        self,
        cmd: CreateOrderCommand,
        quote: OrderQuote,
        order_number: str,
        idempotency_key: str | None,
        intent: PaymentIntentResult | None,
    ) -> Order:
        pricing = quote.pricing
        split = compute_earnings_split(pricing)
        now = datetime.utcnow()

        order = Order(
            order_number=order_number,
            customer_id=cmd.customer_id,
            vendor_id=cmd.vendor_id,
            address_id=quote.address.id,
            delivery_address=quote.address.full_address,
            special_instructions=cmd.special_instructions,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            payment_method=cmd.payment_method,
            payment_intent_id=intent.id if intent else None,
            payment_idempotency_key=idempotency_key,
            subtotal=pricing.subtotal,
            delivery_fee=pricing.delivery_fee,
            service_fee=pricing.service_fee,
            tax=pricing.tax,
            discount=pricing.discount,
            total=pricing.total,
            platform_commission=split.platform_commission,
            vendor_earning=split.vendor_earning,
            rider_earning=split.rider_earning,
            delivery_date=cmd.delivery_date,
            estimated_arrival=now + timedelta(minutes=quote.vendor.estimated_delivery_minutes),
            refund_amount=Decimal("0.00"),
            created_at=now,
            updated_at=now,
        )
        order.items = [
            OrderItem(
                meal_id=line.meal.meal_id,
                meal_name=line.meal.name,
                quantity=line.quantity,
                unit_price=line.meal.price,
                line_total=line.line_total,
            )
            for line in quote.lines
        ]
        order.timeline = []
        self.state_machine.record_event(
            order,
            Actor(user_id=cmd.customer_id, role=ActorRole.CUSTOMER),
            "Order created",
        )
        return order

    async def _persist_with_unique_number(self, build) -> Order:
        """
        Insert the order inside a savepoint; on an order-number collision
        roll the savepoint back and try a fresh number.
        """
        max_attempts = settings.ORDER_NUMBER_MAX_ATTEMPTS
        for attempt in range(1, max_attempts + 1):
            order_number = generate_order_number()
            try:
                async with self.db.begin_nested():
                    order = build(order_number)
                    self.db.add(order)
                    await self.db.flush()
                return order
            except IntegrityError:
                taken = await self.db.execute(
                    select(Order.id).where(Order.order_number == order_number)
                )
                if taken.scalar_one_or_none() is None:
                    raise
                logger.warning(
                    "Order number collision, regenerating",
                    extra_data={"order_number": order_number, "attempt": attempt}
                )
        raise OrderNumberExhaustedError(max_attempts)

    # ==================== Entry point ====================

    async def create_order(self, cmd: CreateOrderCommand) -> CreateOrderResult:
        """
        Create an order from the customer's cart lines for ``cmd.vendor_id``.

        Raises:
            VendorNotFoundError, NoItemsFromVendorError, NoDeliveryAddressError,
            MealUnavailableError: nothing was charged or persisted
            PaymentDeclinedError: the card was declined; nothing persisted
            PaymentOutcomeUnknownError: every attempt timed out
        """
        if cmd.payment_method == PaymentMethod.CARD and not cmd.payment_method_ref:
            raise ValidationException("payment_method_ref is required for card payments", field="payment_method_ref")

        if cmd.idempotency_key:
            existing = await self._find_existing(cmd.customer_id, cmd.idempotency_key, None)
            if existing is not None:
                return CreateOrderResult(order=existing, replayed=True)

        quote = await self.quote(cmd.customer_id, cmd.vendor_id, cmd.address_id)

        intent: PaymentIntentResult | None = None
        idempotency_key = cmd.idempotency_key
        if cmd.payment_method == PaymentMethod.CARD:
            idempotency_key = idempotency_key or self.derive_idempotency_key(
                cmd.customer_id, cmd.vendor_id, quote
            )
            try:
                intent = await self._authorize_payment(cmd, quote.pricing.total, idempotency_key)
            except PaymentDeclinedError as e:
                logger.info(
                    "Order payment declined",
                    extra_data={
                        "customer_id": cmd.customer_id,
                        "vendor_id": cmd.vendor_id,
                        "reason": e.message,
                    }
                )
                raise
            if intent.failed:
                raise PaymentDeclinedError(
                    f"payment was not completed (status: {intent.status})",
                    details={"payment_intent_id": intent.id},
                )

            # webhook / retry שכבר יצרו הזמנה עבור אותו intent
            existing = await self._find_existing(cmd.customer_id, None, intent.id)
            if existing is not None:
                return CreateOrderResult(order=existing, payment_intent=intent, replayed=True)

        try:
            order = await self._persist_with_unique_number(
                lambda number: self._build_order(cmd, quote, number, idempotency_key, intent)
            )

            if intent is not None:
                if intent.succeeded:
                    order.payment_status = PaymentStatus.COMPLETED
                    self.state_machine.transition(
                        order,
                        OrderStatus.CONFIRMED,
                        Actor.system(),
                        note="Payment completed, order confirmed",
                    )
                else:
                    order.payment_status = PaymentStatus.PROCESSING

            ordered_ids = [line.cart_item.id for line in quote.lines]
            await self.db.execute(
                delete(CartItem)
                .where(CartItem.id.in_(ordered_ids))
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            # ה-intent כבר קיים אצל הספק; ניסיון חוזר עם אותו מפתח לא יחייב שוב
            logger.error(
                "Order persistence failed after payment authorization",
                extra_data={
                    "customer_id": cmd.customer_id,
                    "vendor_id": cmd.vendor_id,
                    "payment_intent_id": intent.id if intent else None,
                    "idempotency_key": idempotency_key,
                },
                exc_info=True
            )
            raise

        logger.info(
            "Order created",
            extra_data={
                "order_id": order.id,
                "order_number": order.order_number,
                "customer_id": order.customer_id,
                "vendor_id": order.vendor_id,
                "total": str(order.total),
                "status": order.status.value,
                "payment_status": order.payment_status.value,
            }
        )

        result = CreateOrderResult(order=order, payment_intent=intent)
        await self._update_counters(order, result)
        await self._send_notifications(order, result)
        return result

    # ==================== Best-effort side effects ====================

    async def _recover(self, order: Order) -> None:
        # rollback מבטל טעינה של כל האובייקטים בסשן
        await self.db.refresh(order)

    async def _update_counters(self, order: Order, result: CreateOrderResult) -> None:
        """Denormalized counters; a failure is logged and never fails the order"""
        order_id = order.id
        try:
            updated = await self.db.execute(
                update(CustomerProfile)
                .where(CustomerProfile.user_id == order.customer_id)
                .values(
                    total_orders=CustomerProfile.total_orders + 1,
                    total_spent=CustomerProfile.total_spent + order.total,
                )
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount == 0:
                self.db.add(CustomerProfile(
                    user_id=order.customer_id,
                    total_orders=1,
                    total_spent=order.total,
                ))

            await self.db.execute(
                update(VendorProfile)
                .where(VendorProfile.user_id == order.vendor_id)
                .values(total_orders=VendorProfile.total_orders + 1)
                .execution_options(synchronize_session=False)
            )

            for item in order.items:
                await self.db.execute(
                    update(Meal)
                    .where(Meal.id == item.meal_id)
                    .values(total_orders=Meal.total_orders + item.quantity)
                    .execution_options(synchronize_session=False)
                )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            result.warnings.append("counters")
            logger.warning(
                "Failed to update order counters",
                extra_data={"order_id": order_id, "error": str(e)}
            )
            await self._recover(order)

    async def _send_notifications(self, order: Order, result: CreateOrderResult) -> None:
        order_id = order.id
        try:
            await self.notifier.notify_order_created(order)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            result.warnings.append("notifications")
            logger.warning(
                "Failed to queue order notifications",
                extra_data={"order_id": order_id, "error": str(e)}
            )
            await self._recover(order)
