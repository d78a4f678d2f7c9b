"""
בדיקות מקביליות — שני sessions אמיתיים על אותו engine, במקביל

מכסה:
- שני שליחים תופסים את אותה הזמנה: אחד מנצח, השני מקבל ALREADY_CLAIMED
- שתי סליקות במקביל לאותו ספק: זיכוי אחד בלבד

ה-DB כאן הוא קובץ SQLite (לא :memory:) כדי שלכל session יהיה חיבור משלו.
BEGIN IMMEDIATE לוקח את נעילת הכתיבה בתחילת הטרנזקציה, כך שהכותבים
מסודרים בתור דרך ה-busy timeout כמו שורות נעולות ב-PostgreSQL.
"""
import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import event, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.exceptions import DeliveryAlreadyClaimedError, NothingEligibleError
from app.db.database import Base
from app.db.models.order import Order, OrderStatus, PaymentStatus
from app.db.models.transaction import Transaction, TransactionType
from app.db.models.wallet import Wallet
from app.domain.services.order_service import OrderService
from app.domain.services.settlement_service import SettlementService
from app.state_machine import Actor


@pytest.fixture
async def async_engine(tmp_path):
    """File-backed engine: one connection per session, writers serialized"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 15},
        poolclass=NullPool,
        echo=False,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_maker(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


class TestConcurrentClaim:

    @pytest.mark.integration
    async def test_two_riders_race_for_one_order(
        self, db_session, session_maker, marketplace, order_factory, rider_factory
    ):
        order = await order_factory(
            marketplace["customer"].id,
            marketplace["vendor"].id,
            marketplace["meals"][0].id,
            status=OrderStatus.READY,
            payment_status=PaymentStatus.COMPLETED,
            payment_intent_id="pi_race",
        )
        first = await rider_factory(name="First Rider")
        second = await rider_factory(name="Second Rider")
        order_id = order.id
        riders = {first.id, second.id}
        # ה-session של ה-fixtures לא מחזיק נעילה בזמן המרוץ
        await db_session.commit()

        async def claim(rider) -> Order:
            async with session_maker() as session:
                return await OrderService(session).accept_delivery(order_id, Actor.from_user(rider))

        outcomes = await asyncio.gather(claim(first), claim(second), return_exceptions=True)

        winners = [o for o in outcomes if isinstance(o, Order)]
        losers = [o for o in outcomes if isinstance(o, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], DeliveryAlreadyClaimedError)

        stored = (await db_session.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )).scalar_one()
        assert stored.status == OrderStatus.ACCEPTED
        assert stored.rider_id == winners[0].rider_id
        assert stored.rider_id in riders
        assert [e.status for e in stored.timeline].count(OrderStatus.ACCEPTED) == 1


class TestConcurrentSettlement:

    @pytest.mark.integration
    async def test_two_sweeps_credit_once(
        self, db_session, session_maker, marketplace, order_factory, rider_factory, wallet_factory
    ):
        vendor = marketplace["vendor"]
        rider = await rider_factory()
        await wallet_factory(vendor.id, pending_balance=Decimal("28.74"))
        order = await order_factory(
            marketplace["customer"].id,
            vendor.id,
            marketplace["meals"][0].id,
            status=OrderStatus.DELIVERED,
            payment_status=PaymentStatus.COMPLETED,
            rider_id=rider.id,
        )
        await db_session.execute(
            update(Order)
            .where(Order.id == order.id)
            .values(updated_at=datetime.utcnow() - timedelta(hours=72))
        )
        await db_session.commit()
        vendor_id = vendor.id

        async def settle():
            async with session_maker() as session:
                return await SettlementService(session).settle_earnings(vendor_id, "vendor")

        outcomes = await asyncio.gather(settle(), settle(), return_exceptions=True)

        settled = [o for o in outcomes if not isinstance(o, Exception)]
        failed = [o for o in outcomes if isinstance(o, Exception)]
        assert len(settled) == 1
        assert settled[0].amount == Decimal("28.74")
        assert len(failed) == 1
        assert isinstance(failed[0], NothingEligibleError)

        wallet = (await db_session.execute(
            select(Wallet).where(Wallet.user_id == vendor_id).execution_options(populate_existing=True)
        )).scalar_one()
        assert wallet.balance == Decimal("28.74")
        assert wallet.pending_balance == Decimal("0.00")

        earnings = (await db_session.execute(
            select(Transaction).where(Transaction.type == TransactionType.EARNING)
        )).scalars().all()
        assert len(earnings) == 1
