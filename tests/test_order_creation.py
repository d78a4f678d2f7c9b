"""
בדיקות ליצירת הזמנה — app/domain/services/order_creation_service.py

מכסה:
- סל של ספק אחד → הזמנה מתומחרת, intent שהצליח → confirmed
- intent ב-processing → pending עם payment processing
- דחיית כרטיס / timeout: ניסיון חוזר עם אותו idempotency key
- idempotency: אותו מפתח לא יוצר הזמנה שנייה
- שגיאות: אין פריטים, אין כתובת, ספק לא פעיל, מנה לא זמינה
- שורות סל של ספק אחר נשארות
- מונים והתראות (outbox) אחרי commit
"""
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.core.exceptions import (
    MealUnavailableError,
    NoDeliveryAddressError,
    NoItemsFromVendorError,
    PaymentDeclinedError,
    PaymentOutcomeUnknownError,
    ValidationException,
    VendorNotFoundError,
)
from app.db.models.customer import CartItem, CustomerProfile
from app.db.models.order import Order, OrderStatus, PaymentMethod, PaymentStatus
from app.db.models.outbox_message import NotificationChannel, OutboxMessage
from app.db.models.user import UserRole
from app.db.models.vendor import VendorProfile
from app.domain.services.order_creation_service import (
    CreateOrderCommand,
    OrderCreationService,
    generate_order_number,
)
from app.domain.services.payments import IntentStatus


def _command(marketplace, **overrides) -> CreateOrderCommand:
    values = dict(
        customer_id=marketplace["customer"].id,
        vendor_id=marketplace["vendor"].id,
        payment_method=PaymentMethod.CARD,
        payment_method_ref="pm_card_visa",
    )
    values.update(overrides)
    return CreateOrderCommand(**values)


async def _fill_cart(cart_factory, marketplace):
    customer = marketplace["customer"]
    rice, stew = marketplace["meals"]
    await cart_factory(customer.id, rice.id)
    await cart_factory(customer.id, stew.id)


async def _order_count(db_session) -> int:
    result = await db_session.execute(select(Order))
    return len(result.scalars().all())


class TestOrderNumber:

    @pytest.mark.unit
    def test_format(self):
        number = generate_order_number()
        assert number.startswith("MRA")
        assert len(number) == 3 + 8 + 6
        assert number[11:].isalnum() and number[11:].upper() == number[11:]


class TestQuote:

    @pytest.mark.unit
    async def test_quote_prices_cart(self, db_session, fake_processor, marketplace, cart_factory):
        await _fill_cart(cart_factory, marketplace)
        service = OrderCreationService(db_session, fake_processor)

        quote = await service.quote(marketplace["customer"].id, marketplace["vendor"].id)

        assert quote.distance_km == pytest.approx(2.78, abs=0.01)
        assert quote.pricing.subtotal == Decimal("30.00")
        assert quote.pricing.delivery_fee == Decimal("11.00")
        assert quote.pricing.service_fee == Decimal("0.90")
        assert quote.pricing.total == Decimal("41.90")
        assert fake_processor.create_calls == []


class TestCreateOrderSuccess:

    @pytest.mark.unit
    async def test_succeeded_intent_confirms_order(self, db_session, fake_processor, marketplace, cart_factory):
        await _fill_cart(cart_factory, marketplace)
        service = OrderCreationService(db_session, fake_processor)

        result = await service.create_order(_command(marketplace))
        order = result.order

        assert result.replayed is False
        assert result.warnings == []
        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_status == PaymentStatus.COMPLETED
        assert order.payment_intent_id == result.payment_intent.id
        assert order.total == Decimal("41.90")
        assert order.vendor_earning == Decimal("28.74")
        assert order.rider_earning == Decimal("11.00")
        assert order.platform_commission == Decimal("1.26")
        assert len(order.delivery_code) == 4 and order.delivery_code.isdigit()
        assert order.order_number.startswith("MRA")
        assert [entry.status for entry in order.timeline] == [OrderStatus.PENDING, OrderStatus.CONFIRMED]
        assert sorted(item.meal_name for item in order.items) == ["Egusi Stew", "Jollof Rice"]
        assert fake_processor.intents[order.payment_intent_id].amount == Decimal("41.90")

    @pytest.mark.unit
    async def test_ordered_cart_lines_are_removed(self, db_session, fake_processor, marketplace, cart_factory):
        await _fill_cart(cart_factory, marketplace)
        await OrderCreationService(db_session, fake_processor).create_order(_command(marketplace))

        result = await db_session.execute(
            select(CartItem).where(CartItem.customer_id == marketplace["customer"].id)
        )
        assert result.scalars().all() == []

    @pytest.mark.unit
    async def test_other_vendor_lines_stay_in_cart(
        self, db_session, fake_processor, marketplace, cart_factory, vendor_factory, meal_factory
    ):
        await _fill_cart(cart_factory, marketplace)
        other_vendor = await vendor_factory(business_name="Other Kitchen")
        other_meal = await meal_factory(other_vendor.id, name="Suya")
        kept = await cart_factory(marketplace["customer"].id, other_meal.id, quantity=2)

        await OrderCreationService(db_session, fake_processor).create_order(_command(marketplace))

        result = await db_session.execute(
            select(CartItem).where(CartItem.customer_id == marketplace["customer"].id)
        )
        remaining = result.scalars().all()
        assert [item.id for item in remaining] == [kept.id]

    @pytest.mark.unit
    async def test_processing_intent_leaves_order_pending(self, db_session, fake_processor, marketplace, cart_factory):
        await _fill_cart(cart_factory, marketplace)
        fake_processor.intent_status = IntentStatus.PROCESSING

        result = await OrderCreationService(db_session, fake_processor).create_order(_command(marketplace))

        assert result.order.status == OrderStatus.PENDING
        assert result.order.payment_status == PaymentStatus.PROCESSING
        assert len(result.order.timeline) == 1

    @pytest.mark.unit
    async def test_wallet_order_is_created_unpaid(self, db_session, fake_processor, marketplace, cart_factory):
        await _fill_cart(cart_factory, marketplace)

        result = await OrderCreationService(db_session, fake_processor).create_order(
            _command(marketplace, payment_method=PaymentMethod.WALLET, payment_method_ref=None)
        )

        assert result.payment_intent is None
        assert result.order.status == OrderStatus.PENDING
        assert result.order.payment_status == PaymentStatus.PENDING
        assert fake_processor.create_calls == []

    @pytest.mark.unit
    async def test_card_requires_payment_method_ref(self, db_session, fake_processor, marketplace, cart_factory):
        await _fill_cart(cart_factory, marketplace)
        with pytest.raises(ValidationException):
            await OrderCreationService(db_session, fake_processor).create_order(
                _command(marketplace, payment_method_ref=None)
            )


class TestPaymentFailures:

    @pytest.mark.unit
    async def test_declined_card_persists_nothing(self, db_session, fake_processor, marketplace, cart_factory):
        await _fill_cart(cart_factory, marketplace)
        fake_processor.decline_message = "Your card was declined."

        with pytest.raises(PaymentDeclinedError):
            await OrderCreationService(db_session, fake_processor).create_order(_command(marketplace))

        assert await _order_count(db_session) == 0
        cart = await db_session.execute(select(CartItem))
        assert len(cart.scalars().all()) == 2

    @pytest.mark.unit
    async def test_failed_intent_status_is_a_decline(self, db_session, fake_processor, marketplace, cart_factory):
        await _fill_cart(cart_factory, marketplace)
        fake_processor.intent_status = IntentStatus.REQUIRES_PAYMENT_METHOD

        with pytest.raises(PaymentDeclinedError):
            await OrderCreationService(db_session, fake_processor).create_order(_command(marketplace))
        assert await _order_count(db_session) == 0

    @pytest.mark.unit
    async def test_timeout_is_retried_with_same_key(self, db_session, fake_processor, marketplace, cart_factory):
        await _fill_cart(cart_factory, marketplace)
        fake_processor.timeouts_before_success = 2

        result = await OrderCreationService(db_session, fake_processor).create_order(_command(marketplace))

        assert result.order.status == OrderStatus.CONFIRMED
        assert len(fake_processor.create_calls) == 3
        assert len(set(fake_processor.create_calls)) == 1
        assert len(fake_processor.intents) == 1

    @pytest.mark.unit
    async def test_outcome_unknown_after_all_attempts(self, db_session, fake_processor, marketplace, cart_factory):
        await _fill_cart(cart_factory, marketplace)
        fake_processor.timeouts_before_success = 3

        with pytest.raises(PaymentOutcomeUnknownError):
            await OrderCreationService(db_session, fake_processor).create_order(_command(marketplace))

        assert len(fake_processor.create_calls) == 3
        assert await _order_count(db_session) == 0


class TestIdempotency:

    @pytest.mark.unit
    async def test_same_client_key_replays_order(self, db_session, fake_processor, marketplace, cart_factory):
        await _fill_cart(cart_factory, marketplace)
        service = OrderCreationService(db_session, fake_processor)

        first = await service.create_order(_command(marketplace, idempotency_key="checkout-abc"))
        second = await service.create_order(_command(marketplace, idempotency_key="checkout-abc"))

        assert second.replayed is True
        assert second.order.id == first.order.id
        assert await _order_count(db_session) == 1
        assert len(fake_processor.create_calls) == 1

    @pytest.mark.unit
    async def test_derived_key_is_stable_for_same_cart(self, db_session, fake_processor, marketplace, cart_factory):
        await _fill_cart(cart_factory, marketplace)
        service = OrderCreationService(db_session, fake_processor)
        customer_id, vendor_id = marketplace["customer"].id, marketplace["vendor"].id

        quote_a = await service.quote(customer_id, vendor_id)
        quote_b = await service.quote(customer_id, vendor_id)

        key = service.derive_idempotency_key(customer_id, vendor_id, quote_a)
        assert key == service.derive_idempotency_key(customer_id, vendor_id, quote_b)
        assert key.startswith("order-")

    @pytest.mark.unit
    async def test_new_cart_lines_get_new_key(
        self, db_session, fake_processor, marketplace, cart_factory, vendor_factory, meal_factory
    ):
        customer_id = marketplace["customer"].id
        rice = marketplace["meals"][0]
        service = OrderCreationService(db_session, fake_processor)
        other_vendor = await vendor_factory(business_name="Other Kitchen")
        other_meal = await meal_factory(other_vendor.id, name="Suya")

        await cart_factory(customer_id, rice.id)
        # שורה שנשארת בסל — SQLite לא ימחזר את ה-id של השורה שנמחקה
        await cart_factory(customer_id, other_meal.id)
        first = await service.create_order(_command(marketplace))
        await cart_factory(customer_id, rice.id)
        second = await service.create_order(_command(marketplace))

        assert second.replayed is False
        assert second.order.id != first.order.id
        assert first.order.payment_idempotency_key != second.order.payment_idempotency_key


class TestValidationErrors:

    @pytest.mark.unit
    async def test_empty_cart(self, db_session, fake_processor, marketplace):
        with pytest.raises(NoItemsFromVendorError):
            await OrderCreationService(db_session, fake_processor).create_order(_command(marketplace))
        assert fake_processor.create_calls == []

    @pytest.mark.unit
    async def test_no_address(self, db_session, fake_processor, user_factory, vendor_factory, meal_factory, cart_factory):
        customer = await user_factory(role=UserRole.CUSTOMER)
        vendor = await vendor_factory()
        meal = await meal_factory(vendor.id)
        await cart_factory(customer.id, meal.id)

        with pytest.raises(NoDeliveryAddressError):
            await OrderCreationService(db_session, fake_processor).create_order(CreateOrderCommand(
                customer_id=customer.id,
                vendor_id=vendor.id,
                payment_method_ref="pm_card_visa",
            ))

    @pytest.mark.unit
    async def test_foreign_address_rejected(
        self, db_session, fake_processor, marketplace, cart_factory, user_factory, address_factory
    ):
        await _fill_cart(cart_factory, marketplace)
        stranger = await user_factory(role=UserRole.CUSTOMER)
        foreign = await address_factory(stranger.id)

        with pytest.raises(NoDeliveryAddressError):
            await OrderCreationService(db_session, fake_processor).create_order(
                _command(marketplace, address_id=foreign.id)
            )

    @pytest.mark.unit
    async def test_inactive_vendor(self, db_session, fake_processor, marketplace, cart_factory):
        await _fill_cart(cart_factory, marketplace)
        profile = (await db_session.execute(
            select(VendorProfile).where(VendorProfile.user_id == marketplace["vendor"].id)
        )).scalar_one()
        profile.is_active = False
        await db_session.commit()

        with pytest.raises(VendorNotFoundError):
            await OrderCreationService(db_session, fake_processor).create_order(_command(marketplace))

    @pytest.mark.unit
    async def test_unavailable_meal(self, db_session, fake_processor, marketplace, cart_factory):
        await _fill_cart(cart_factory, marketplace)
        stew = marketplace["meals"][1]
        stew.is_available = False
        await db_session.commit()

        with pytest.raises(MealUnavailableError):
            await OrderCreationService(db_session, fake_processor).create_order(_command(marketplace))
        assert fake_processor.create_calls == []


class TestSideEffects:

    @pytest.mark.unit
    async def test_counters_updated(self, db_session, fake_processor, marketplace, cart_factory):
        customer = marketplace["customer"]
        rice = marketplace["meals"][0]
        await cart_factory(customer.id, rice.id, quantity=3)

        await OrderCreationService(db_session, fake_processor).create_order(_command(marketplace))

        profile = (await db_session.execute(
            select(CustomerProfile).where(CustomerProfile.user_id == customer.id)
        )).scalar_one()
        assert profile.total_orders == 1

        vendor_profile = (await db_session.execute(
            select(VendorProfile)
            .where(VendorProfile.user_id == marketplace["vendor"].id)
            .execution_options(populate_existing=True)
        )).scalar_one()
        assert vendor_profile.total_orders == 1

        await db_session.refresh(rice)
        assert rice.total_orders == 3

    @pytest.mark.unit
    async def test_notifications_queued(self, db_session, fake_processor, marketplace, cart_factory):
        await _fill_cart(cart_factory, marketplace)

        await OrderCreationService(db_session, fake_processor).create_order(_command(marketplace))

        messages = (await db_session.execute(select(OutboxMessage).order_by(OutboxMessage.id))).scalars().all()
        by_type = {(m.message_type, m.channel) for m in messages}
        assert ("order_created", NotificationChannel.EMAIL) in by_type
        assert ("order_received", NotificationChannel.IN_APP) in by_type
        assert ("order_received", NotificationChannel.SOCKET) in by_type
        customer_messages = [m for m in messages if m.recipient_id == str(marketplace["customer"].id)]
        assert len(customer_messages) == 1

    @pytest.mark.unit
    async def test_notification_failure_does_not_fail_order(
        self, db_session, fake_processor, marketplace, cart_factory
    ):
        await _fill_cart(cart_factory, marketplace)

        class BrokenNotifier:
            async def notify_order_created(self, order):
                raise RuntimeError("outbox unavailable")

        result = await OrderCreationService(
            db_session, fake_processor, notifier=BrokenNotifier()
        ).create_order(_command(marketplace))

        assert result.warnings == ["notifications"]
        assert result.order.status == OrderStatus.CONFIRMED
        assert await _order_count(db_session) == 1
