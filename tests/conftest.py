"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- A fake payment processor with real webhook signature checks
- Test data factories (users, vendors, meals, carts, wallets, orders)
"""
# הגדרות סביבה לפני ייבוא app — ה-validator דורש webhook secret כש-DEBUG=False
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret_for_tests_only")

import dataclasses
import hashlib
import hmac
import itertools
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import PaymentDeclinedError, PaymentTimeoutError
from app.db.database import Base, get_db
from app.db.models.customer import CustomerAddress, CartItem
from app.db.models.meal import Meal
from app.db.models.order import (
    Order,
    OrderItem,
    OrderStatus,
    OrderTimelineEntry,
    PaymentMethod,
    PaymentStatus,
)
from app.db.models.rider import RiderProfile
from app.db.models.user import User, UserRole
from app.db.models.vendor import VendorProfile
from app.db.models.wallet import Wallet
from app.domain.services.payments import (
    BasePaymentProcessor,
    IntentStatus,
    PaymentIntentResult,
    RefundResult,
    get_payment_processor,
    reset_processor,
)
from app.domain.services.payments.stripe_processor import StripePaymentProcessor
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_WEBHOOK_SECRET = settings.STRIPE_WEBHOOK_SECRET

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    # pysqlite/aiosqlite לא פותחים טרנזקציה לפני SAVEPOINT — BEGIN מפורש
    # כדי ש-begin_nested (מספר הזמנה, webhook_events) יתנהג כמו ב-PostgreSQL
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


# ============================================================================
# Payment processor fake
# ============================================================================

def sign_webhook(payload: bytes, secret: str = TEST_WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Stripe-Signature header value for a raw payload"""
    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


class FakePaymentProcessor(BasePaymentProcessor):
    """
    In-memory processor.

    - intent_status: status every new intent gets
    - timeouts_before_success: number of create calls that raise PaymentTimeoutError first
    - decline_message: when set, create raises PaymentDeclinedError
    Intents are idempotent per key, refunds per key. Webhook signatures are
    checked by the real Stripe verifier with the test secret.
    """

    def __init__(self) -> None:
        self.intent_status = IntentStatus.SUCCEEDED
        self.timeouts_before_success = 0
        self.decline_message: str | None = None
        self.intents: dict[str, PaymentIntentResult] = {}
        self.intents_by_key: dict[str, str] = {}
        self.create_calls: list[str] = []
        self.refunds: dict[str, RefundResult] = {}
        self.refund_calls: list[tuple[str, Decimal]] = []
        self._verifier = StripePaymentProcessor(
            circuit_breaker=CircuitBreaker("fake-stripe"),
            api_key="sk_test_fake",
            webhook_secret=TEST_WEBHOOK_SECRET,
            webhook_tolerance=300,
        )
        self._ids = itertools.count(1)

    @property
    def provider_name(self) -> str:
        return "stripe"

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        payment_method: str | None,
        metadata: dict[str, Any],
        idempotency_key: str,
    ) -> PaymentIntentResult:
        self.create_calls.append(idempotency_key)
        if self.timeouts_before_success > 0:
            self.timeouts_before_success -= 1
            raise PaymentTimeoutError("create_payment_intent")
        if self.decline_message:
            raise PaymentDeclinedError(self.decline_message)

        if idempotency_key in self.intents_by_key:
            return self.intents[self.intents_by_key[idempotency_key]]

        intent_id = f"pi_test_{next(self._ids)}"
        intent = PaymentIntentResult(
            id=intent_id,
            status=self.intent_status,
            client_secret=f"{intent_id}_secret",
            amount=amount,
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        self.intents_by_key[idempotency_key] = intent_id
        return intent

    def set_status(self, intent_id: str, status: str) -> None:
        self.intents[intent_id] = dataclasses.replace(self.intents[intent_id], status=status)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentResult:
        return self.intents[payment_intent_id]

    async def refund(self, payment_intent_id: str, amount: Decimal, idempotency_key: str) -> RefundResult:
        if idempotency_key in self.refunds:
            return self.refunds[idempotency_key]
        self.refund_calls.append((payment_intent_id, amount))
        refund = RefundResult(id=f"re_test_{len(self.refunds) + 1}", status="succeeded")
        self.refunds[idempotency_key] = refund
        return refund

    def verify_webhook_signature(self, raw_body: bytes, signature_header: str | None) -> dict[str, Any]:
        return self._verifier.verify_webhook_signature(raw_body, signature_header)


@pytest.fixture
def fake_processor() -> FakePaymentProcessor:
    return FakePaymentProcessor()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, fake_processor: FakePaymentProcessor):
    """Create test client with database and payment processor overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_processor] = lambda: fake_processor

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def auth_headers(user: User, **extra: str) -> dict[str, str]:
    return {"X-User-Id": str(user.id), **extra}


# ============================================================================
# Test Data Factories
# ============================================================================

_email_counter = itertools.count(1)


@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating test users"""
    async def _create_user(
        role: UserRole = UserRole.CUSTOMER,
        name: str = "Test User",
        email: str | None = None,
        is_active: bool = True,
    ) -> User:
        user = User(
            name=name,
            email=email or f"user{next(_email_counter)}@example.com",
            role=role,
            is_active=is_active,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def vendor_factory(db_session: AsyncSession, user_factory):
    """Vendor user plus an active VendorProfile; returns the user"""
    async def _create_vendor(
        latitude: float = 0.0,
        longitude: float = 0.0,
        delivery_base_fee: Decimal = Decimal("5.00"),
        delivery_per_km_fee: Decimal = Decimal("2.00"),
        estimated_delivery_minutes: int = 30,
        is_active: bool = True,
        business_name: str = "Test Kitchen",
    ) -> User:
        user = await user_factory(role=UserRole.VENDOR, name=business_name)
        db_session.add(VendorProfile(
            user_id=user.id,
            business_name=business_name,
            latitude=latitude,
            longitude=longitude,
            delivery_base_fee=delivery_base_fee,
            delivery_per_km_fee=delivery_per_km_fee,
            estimated_delivery_minutes=estimated_delivery_minutes,
            is_active=is_active,
        ))
        await db_session.commit()
        return user

    return _create_vendor


@pytest.fixture
def meal_factory(db_session: AsyncSession):
    async def _create_meal(
        vendor_id: int,
        price: Decimal = Decimal("10.00"),
        name: str = "Jollof Rice",
        is_available: bool = True,
    ) -> Meal:
        meal = Meal(vendor_id=vendor_id, name=name, price=price, is_available=is_available)
        db_session.add(meal)
        await db_session.commit()
        await db_session.refresh(meal)
        return meal

    return _create_meal


@pytest.fixture
def address_factory(db_session: AsyncSession):
    async def _create_address(
        customer_id: int,
        latitude: float = 0.025,
        longitude: float = 0.0,
        is_default: bool = False,
        street: str = "12 Market Street",
        city: str = "Lagos",
    ) -> CustomerAddress:
        address = CustomerAddress(
            customer_id=customer_id,
            street=street,
            city=city,
            latitude=latitude,
            longitude=longitude,
            is_default=is_default,
        )
        db_session.add(address)
        await db_session.commit()
        await db_session.refresh(address)
        return address

    return _create_address


@pytest.fixture
def cart_factory(db_session: AsyncSession):
    async def _add_to_cart(customer_id: int, meal_id: int, quantity: int = 1) -> CartItem:
        item = CartItem(customer_id=customer_id, meal_id=meal_id, quantity=quantity)
        db_session.add(item)
        await db_session.commit()
        await db_session.refresh(item)
        return item

    return _add_to_cart


@pytest.fixture
def rider_factory(db_session: AsyncSession, user_factory):
    """Rider user plus RiderProfile; returns the user"""
    async def _create_rider(is_online: bool = True, name: str = "Test Rider") -> User:
        user = await user_factory(role=UserRole.RIDER, name=name)
        db_session.add(RiderProfile(user_id=user.id, is_online=is_online, total_deliveries=0))
        await db_session.commit()
        return user

    return _create_rider


@pytest.fixture
def wallet_factory(db_session: AsyncSession):
    """Factory for creating test wallets"""
    async def _create_wallet(
        user_id: int,
        balance: Decimal = Decimal("0.00"),
        pending_balance: Decimal = Decimal("0.00"),
        pin: str | None = None,
        bank_verified: bool = False,
    ) -> Wallet:
        import bcrypt

        wallet = Wallet(
            user_id=user_id,
            balance=balance,
            pending_balance=pending_balance,
            total_earnings=pending_balance,
            currency="USD",
        )
        if pin:
            wallet.pin_hash = bcrypt.hashpw(pin.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
            wallet.is_pin_set = True
        if bank_verified:
            wallet.bank_account_name = "Test Account"
            wallet.bank_name = "First Bank"
            wallet.bank_account_number = "0123456789"
            wallet.bank_details_verified = True
        db_session.add(wallet)
        await db_session.commit()
        await db_session.refresh(wallet)
        return wallet

    return _create_wallet


_order_counter = itertools.count(1)


@pytest.fixture
def order_factory(db_session: AsyncSession):
    """
    Persist an order directly, bypassing checkout.

    Pricing defaults: subtotal 30, delivery 11, service 0.90, total 41.90.
    """
    async def _create_order(
        customer_id: int,
        vendor_id: int,
        meal_id: int,
        status: OrderStatus = OrderStatus.PENDING,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        payment_method: PaymentMethod = PaymentMethod.CARD,
        rider_id: int | None = None,
        payment_intent_id: str | None = None,
        subtotal: Decimal = Decimal("30.00"),
        delivery_fee: Decimal = Decimal("11.00"),
        service_fee: Decimal = Decimal("0.90"),
        total: Decimal = Decimal("41.90"),
        vendor_earning: Decimal = Decimal("28.74"),
        rider_earning: Decimal = Decimal("11.00"),
        delivery_code: str = "4321",
        created_at: datetime | None = None,
    ) -> Order:
        now = created_at or datetime.utcnow()
        order = Order(
            order_number=f"MRATEST{next(_order_counter):06d}",
            customer_id=customer_id,
            vendor_id=vendor_id,
            rider_id=rider_id,
            delivery_address="12 Market Street, Lagos",
            status=status,
            payment_status=payment_status,
            payment_method=payment_method,
            payment_intent_id=payment_intent_id,
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            service_fee=service_fee,
            tax=Decimal("0.00"),
            discount=Decimal("0.00"),
            total=total,
            platform_commission=round(total * Decimal("0.03"), 2),
            vendor_earning=vendor_earning,
            rider_earning=rider_earning,
            delivery_code=delivery_code,
            estimated_arrival=now + timedelta(minutes=30),
            refund_amount=Decimal("0.00"),
            created_at=now,
            updated_at=now,
        )
        order.items = [
            OrderItem(
                meal_id=meal_id,
                meal_name="Jollof Rice",
                quantity=1,
                unit_price=subtotal,
                line_total=subtotal,
            )
        ]
        order.timeline = [
            OrderTimelineEntry(
                status=status,
                actor_id=customer_id,
                actor_role="customer",
                note="Order created",
                created_at=now,
            )
        ]
        db_session.add(order)
        await db_session.commit()
        await db_session.refresh(order)
        return order

    return _create_order


@pytest.fixture
async def marketplace(user_factory, vendor_factory, meal_factory, address_factory):
    """
    Customer with a default address about 2.8 km north of a vendor with two
    meals ($10 and $20). Delivery fee there: 5 + ceil(2.78) × 2 = 11.
    """
    customer = await user_factory(role=UserRole.CUSTOMER, name="Ada Customer")
    vendor = await vendor_factory()
    rice = await meal_factory(vendor.id, price=Decimal("10.00"), name="Jollof Rice")
    stew = await meal_factory(vendor.id, price=Decimal("20.00"), name="Egusi Stew")
    address = await address_factory(customer.id, is_default=True)
    return {
        "customer": customer,
        "vendor": vendor,
        "meals": [rice, stew],
        "address": address,
    }


# ============================================================================
# Global state resets
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture(autouse=True)
def reset_payment_processor():
    reset_processor()
    yield
    reset_processor()
