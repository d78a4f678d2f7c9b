"""
Settlement Service - releases delivered-order earnings from pending to
available balance.

Runs in one DB transaction: lock the wallet row, claim each eligible order
by flipping its per-actor withdrawn flag with a conditional UPDATE, move the
claimed amount from pending_balance to balance and write one earning entry.
An order already claimed by a concurrent or retried sweep is skipped.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from app.core.config import settings
from app.core.exceptions import (
    NothingEligibleError,
    LedgerInconsistencyError,
    ValidationException,
)
from app.core.logging import get_logger, log_async_operation
from app.db.models.order import Order, OrderItem, OrderStatus, PaymentStatus
from app.db.models.transaction import TransactionType
from app.db.models.wallet import Wallet
from app.domain.money import ZERO, round_money
from app.domain.services.wallet_service import WalletService

logger = get_logger(__name__)

SETTLEMENT_ACTOR_TYPES = ("vendor", "rider")


@dataclass
class SettlementResult:
    amount: Decimal
    order_count: int
    transaction_id: int
    order_ids: List[int] = field(default_factory=list)


def _actor_columns(actor_type: str):
    """(order owner column, earning column, withdrawn flag) per actor type"""
    if actor_type == "vendor":
        return Order.vendor_id, Order.vendor_earning, OrderItem.vendor_withdrawn
    if actor_type == "rider":
        return Order.rider_id, Order.rider_earning, OrderItem.rider_withdrawn
    raise ValidationException(
        f"actor_type must be one of {', '.join(SETTLEMENT_ACTOR_TYPES)}",
        field="actor_type",
    )


class SettlementService:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.wallets = WalletService(db)

    async def _eligible_orders(self, user_id: int, actor_type: str) -> List[Tuple[int, Decimal]]:
        owner_col, earning_col, flag_col = _actor_columns(actor_type)
        cutoff = datetime.utcnow() - timedelta(hours=settings.SETTLEMENT_HOLDING_HOURS)
        unclaimed = (
            select(OrderItem.id)
            .where(OrderItem.order_id == Order.id, flag_col.is_(False))
            .exists()
        )
        result = await self.db.execute(
            select(Order.id, earning_col)
            .where(
                owner_col == user_id,
                Order.status == OrderStatus.DELIVERED,
                Order.payment_status == PaymentStatus.COMPLETED,
                Order.updated_at < cutoff,
                unclaimed,
            )
            .order_by(Order.id)
        )
        return [(order_id, round_money(earning)) for order_id, earning in result.all()]

    async def settle_earnings(self, user_id: int, actor_type: str) -> SettlementResult:
        """
        Settle every eligible delivered order for a vendor or rider.

        Raises:
            NothingEligibleError: no order qualified (or all were claimed concurrently)
            LedgerInconsistencyError: pending balance would go negative
        """
        _, _, flag_col = _actor_columns(actor_type)
        flag_name = flag_col.key

        try:
            wallet = await self.wallets.get_or_create_wallet(user_id, for_update=True)
            candidates = await self._eligible_orders(user_id, actor_type)

            claimed: List[int] = []
            amount = ZERO
            for order_id, earning in candidates:
                result = await self.db.execute(
                    update(OrderItem)
                    .where(OrderItem.order_id == order_id, flag_col.is_(False))
                    .values({flag_name: True})
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount > 0:
                    claimed.append(order_id)
                    amount += earning

            if not claimed:
                raise NothingEligibleError(user_id, actor_type)

            amount = round_money(amount)
            moved = await self.db.execute(
                update(Wallet)
                .where(Wallet.id == wallet.id, Wallet.pending_balance >= amount)
                .values(pending_balance=Wallet.pending_balance - amount)
                .returning(Wallet.pending_balance)
                .execution_options(synchronize_session=False)
            )
            pending_after = moved.scalar_one_or_none()
            if pending_after is None:
                await self.db.refresh(wallet)
                raise LedgerInconsistencyError(
                    user_id,
                    "Pending balance is lower than the earnings being settled",
                    details={
                        "pending_balance": str(wallet.pending_balance),
                        "settle_amount": str(amount),
                        "order_ids": claimed,
                    },
                )
            set_committed_value(wallet, "pending_balance", round_money(pending_after))

            transaction = await self.wallets.credit(
                wallet,
                amount,
                TransactionType.EARNING,
                f"Settlement of {len(claimed)} delivered order(s)",
                metadata={"actor_type": actor_type, "order_ids": claimed},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Earnings settled",
            extra_data={
                "user_id": user_id,
                "actor_type": actor_type,
                "amount": str(amount),
                "order_count": len(claimed),
                "transaction_id": transaction.id,
            }
        )
        return SettlementResult(
            amount=amount,
            order_count=len(claimed),
            transaction_id=transaction.id,
            order_ids=claimed,
        )

    async def find_settleable_actors(self) -> List[Tuple[int, str]]:
        """(user_id, actor_type) pairs with at least one eligible order"""
        cutoff = datetime.utcnow() - timedelta(hours=settings.SETTLEMENT_HOLDING_HOURS)
        actors: List[Tuple[int, str]] = []
        for actor_type in SETTLEMENT_ACTOR_TYPES:
            owner_col, _, flag_col = _actor_columns(actor_type)
            unclaimed = (
                select(OrderItem.id)
                .where(OrderItem.order_id == Order.id, flag_col.is_(False))
                .exists()
            )
            result = await self.db.execute(
                select(owner_col)
                .where(
                    owner_col.is_not(None),
                    Order.status == OrderStatus.DELIVERED,
                    Order.payment_status == PaymentStatus.COMPLETED,
                    Order.updated_at < cutoff,
                    unclaimed,
                )
                .distinct()
            )
            actors.extend((user_id, actor_type) for user_id in result.scalars().all())
        return actors

    @log_async_operation("earnings settlement sweep")
    async def settle_all(self) -> dict[str, int]:
        """Sweep: settle every actor with eligible orders"""
        actors = await self.find_settleable_actors()
        await self.db.rollback()

        counts = {"settled": 0, "skipped": 0, "errors": 0}
        for user_id, actor_type in actors:
            try:
                await self.settle_earnings(user_id, actor_type)
                counts["settled"] += 1
            except NothingEligibleError:
                counts["skipped"] += 1
            except Exception as e:
                counts["errors"] += 1
                logger.error(
                    "Settlement failed",
                    extra_data={"user_id": user_id, "actor_type": actor_type, "error": str(e)},
                    exc_info=True
                )
        return counts
