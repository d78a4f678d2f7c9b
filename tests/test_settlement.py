"""
בדיקות לסליקת רווחים — app/domain/services/settlement_service.py

מכסה:
- שחרור רווחים מ-pending ל-balance אחרי תקופת ההמתנה
- idempotency: הזמנה נסלקת פעם אחת לכל צד (ספק / שליח בנפרד)
- NothingEligible כשאין הזמנות מתאימות
- LedgerInconsistency כש-pending נמוך מהסכום, בלי שינוי חלקי
- sweep לכל הספקים והשליחים
"""
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import select, update

from app.core.exceptions import LedgerInconsistencyError, NothingEligibleError, ValidationException
from app.db.models.order import Order, OrderItem, OrderStatus, PaymentStatus
from app.db.models.transaction import Transaction, TransactionType
from app.db.models.wallet import Wallet
from app.domain.services.settlement_service import SettlementService


async def _age(db_session, order, hours: int = 72) -> None:
    """updated_at אחורה בזמן — כאילו נמסרה לפני `hours` שעות"""
    await db_session.execute(
        update(Order)
        .where(Order.id == order.id)
        .values(updated_at=datetime.utcnow() - timedelta(hours=hours))
    )
    await db_session.commit()


async def _wallet(db_session, user_id: int) -> Wallet:
    result = await db_session.execute(
        select(Wallet)
        .where(Wallet.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


@pytest.fixture
async def delivered(marketplace, order_factory, rider_factory):
    """Factory: delivered + paid order for the marketplace vendor and one rider"""
    rider = await rider_factory()

    async def _create(status: OrderStatus = OrderStatus.DELIVERED) -> Order:
        return await order_factory(
            marketplace["customer"].id,
            marketplace["vendor"].id,
            marketplace["meals"][0].id,
            status=status,
            payment_status=PaymentStatus.COMPLETED,
            rider_id=rider.id,
        )

    _create.rider = rider
    return _create


class TestSettleEarnings:

    @pytest.mark.unit
    async def test_vendor_settlement_moves_pending_to_balance(
        self, db_session, marketplace, delivered, wallet_factory
    ):
        vendor = marketplace["vendor"]
        await wallet_factory(vendor.id, pending_balance=Decimal("86.22"))
        first = await delivered()
        second = await delivered()
        recent = await delivered()
        await _age(db_session, first)
        await _age(db_session, second)

        result = await SettlementService(db_session).settle_earnings(vendor.id, "vendor")

        assert result.amount == Decimal("57.48")
        assert result.order_count == 2
        assert sorted(result.order_ids) == sorted([first.id, second.id])
        assert recent.id not in result.order_ids

        wallet = await _wallet(db_session, vendor.id)
        assert wallet.balance == Decimal("57.48")
        assert wallet.pending_balance == Decimal("28.74")

        entry = await db_session.get(Transaction, result.transaction_id)
        assert entry.type == TransactionType.EARNING
        assert entry.amount == Decimal("57.48")
        assert entry.balance_before == Decimal("0.00")
        assert entry.balance_after == Decimal("57.48")

    @pytest.mark.unit
    async def test_second_settlement_finds_nothing(self, db_session, marketplace, delivered, wallet_factory):
        vendor = marketplace["vendor"]
        await wallet_factory(vendor.id, pending_balance=Decimal("28.74"))
        order = await delivered()
        await _age(db_session, order)
        service = SettlementService(db_session)

        await service.settle_earnings(vendor.id, "vendor")
        with pytest.raises(NothingEligibleError):
            await service.settle_earnings(vendor.id, "vendor")

        wallet = await _wallet(db_session, vendor.id)
        assert wallet.balance == Decimal("28.74")
        earnings = (await db_session.execute(
            select(Transaction).where(Transaction.type == TransactionType.EARNING)
        )).scalars().all()
        assert len(earnings) == 1

    @pytest.mark.unit
    async def test_vendor_and_rider_settle_independently(
        self, db_session, marketplace, delivered, wallet_factory
    ):
        vendor = marketplace["vendor"]
        rider = delivered.rider
        await wallet_factory(vendor.id, pending_balance=Decimal("28.74"))
        await wallet_factory(rider.id, pending_balance=Decimal("11.00"))
        order = await delivered()
        await _age(db_session, order)
        service = SettlementService(db_session)

        vendor_result = await service.settle_earnings(vendor.id, "vendor")
        rider_result = await service.settle_earnings(rider.id, "rider")

        assert vendor_result.amount == Decimal("28.74")
        assert rider_result.amount == Decimal("11.00")
        assert (await _wallet(db_session, rider.id)).balance == Decimal("11.00")

        items = (await db_session.execute(
            select(OrderItem)
            .where(OrderItem.order_id == order.id)
            .execution_options(populate_existing=True)
        )).scalars().all()
        assert all(item.vendor_withdrawn and item.rider_withdrawn for item in items)

    @pytest.mark.unit
    async def test_holding_period_not_over(self, db_session, marketplace, delivered, wallet_factory):
        vendor = marketplace["vendor"]
        await wallet_factory(vendor.id, pending_balance=Decimal("28.74"))
        order = await delivered()
        await _age(db_session, order, hours=47)

        with pytest.raises(NothingEligibleError):
            await SettlementService(db_session).settle_earnings(vendor.id, "vendor")

    @pytest.mark.unit
    async def test_undelivered_orders_not_settled(self, db_session, marketplace, delivered, wallet_factory):
        vendor = marketplace["vendor"]
        await wallet_factory(vendor.id, pending_balance=Decimal("28.74"))
        order = await delivered(status=OrderStatus.ON_THE_WAY)
        await _age(db_session, order)

        with pytest.raises(NothingEligibleError):
            await SettlementService(db_session).settle_earnings(vendor.id, "vendor")

    @pytest.mark.unit
    async def test_pending_balance_too_low_rolls_back(self, db_session, marketplace, delivered, wallet_factory):
        vendor = marketplace["vendor"]
        await wallet_factory(vendor.id, pending_balance=Decimal("10.00"))
        order = await delivered()
        await _age(db_session, order)

        with pytest.raises(LedgerInconsistencyError):
            await SettlementService(db_session).settle_earnings(vendor.id, "vendor")

        wallet = await _wallet(db_session, vendor.id)
        assert wallet.balance == Decimal("0.00")
        assert wallet.pending_balance == Decimal("10.00")
        items = (await db_session.execute(
            select(OrderItem)
            .where(OrderItem.order_id == order.id)
            .execution_options(populate_existing=True)
        )).scalars().all()
        assert not any(item.vendor_withdrawn for item in items)

    @pytest.mark.unit
    async def test_unknown_actor_type(self, db_session, marketplace):
        with pytest.raises(ValidationException):
            await SettlementService(db_session).settle_earnings(marketplace["vendor"].id, "customer")


class TestSettleAll:

    @pytest.mark.unit
    async def test_sweep_settles_vendor_and_rider(self, db_session, marketplace, delivered, wallet_factory):
        vendor = marketplace["vendor"]
        rider = delivered.rider
        await wallet_factory(vendor.id, pending_balance=Decimal("28.74"))
        await wallet_factory(rider.id, pending_balance=Decimal("11.00"))
        order = await delivered()
        await _age(db_session, order)
        service = SettlementService(db_session)

        actors = await service.find_settleable_actors()
        assert sorted(actors, key=lambda a: a[1]) == [(rider.id, "rider"), (vendor.id, "vendor")]

        counts = await service.settle_all()
        assert counts == {"settled": 2, "skipped": 0, "errors": 0}
        assert await service.find_settleable_actors() == []

    @pytest.mark.unit
    async def test_sweep_counts_errors(self, db_session, marketplace, delivered, wallet_factory):
        vendor = marketplace["vendor"]
        rider = delivered.rider
        await wallet_factory(vendor.id, pending_balance=Decimal("0.00"))
        await wallet_factory(rider.id, pending_balance=Decimal("11.00"))
        order = await delivered()
        await _age(db_session, order)

        counts = await SettlementService(db_session).settle_all()

        assert counts == {"settled": 1, "skipped": 0, "errors": 1}

    @pytest.mark.unit
    async def test_sweep_logs_operation_timing(self, db_session):
        with patch("app.core.logging.get_logger") as mock_get_logger:
            counts = await SettlementService(db_session).settle_all()

        assert counts == {"settled": 0, "skipped": 0, "errors": 0}
        mock_get_logger.assert_called_with("app.domain.services.settlement_service")
        completed = mock_get_logger.return_value.info.call_args
        assert completed.args[0] == "Completed earnings settlement sweep"
        assert completed.kwargs["extra_data"]["status"] == "completed"
        assert "duration_seconds" in completed.kwargs["extra_data"]
