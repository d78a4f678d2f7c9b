"""
Order Service - reads and status changes on existing orders

All status changes go through OrderStateMachine. Accepting a delivery is a
test-and-set on the order row; cancelling a paid order refunds first.
"""
from datetime import datetime
from typing import Any, List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    OrderNotFoundError,
    NotAuthorizedError,
    RiderOfflineError,
    DeliveryAlreadyClaimedError,
    DeliveryNotReadyError,
    InvalidStateTransitionError,
    InvalidUserRoleError,
    PaymentProviderError,
)
from app.core.logging import get_logger
from app.db.models.order import Order, OrderStatus, PaymentStatus, PaymentMethod
from app.db.models.rider import RiderProfile
from app.domain.services.notification_service import NotificationDispatcher
from app.domain.services.payments.base_processor import BasePaymentProcessor
from app.domain.services.wallet_service import WalletService
from app.state_machine import Actor, ActorRole, OrderStateMachine

# הזמנות שעוד לא הגיעו לשלב האיסוף
_PRE_PICKUP_STATES = frozenset({
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
})

logger = get_logger(__name__)


class OrderService:
    """Order reads, status transitions, rider claims and cancellation"""

    def __init__(
        self,
        db: AsyncSession,
        processor: BasePaymentProcessor | None = None,
        notifier: NotificationDispatcher | None = None,
    ):
        self.db = db
        self.processor = processor
        self.notifier = notifier or NotificationDispatcher(db)
        self.state_machine = OrderStateMachine(db)
        self.wallets = WalletService(db, processor)

    # ==================== Reads ====================

    async def _load(self, order_id: int, for_update: bool = False) -> Order:
        query = (
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    @staticmethod
    def _can_view(order: Order, actor: Actor) -> bool:
        if actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
            return True
        if actor.role == ActorRole.CUSTOMER:
            return order.customer_id == actor.user_id
        if actor.role == ActorRole.VENDOR:
            return order.vendor_id == actor.user_id
        # שליח רואה הזמנה פנויה או הזמנה שהוקצתה לו
        return order.rider_id == actor.user_id or (
            order.rider_id is None and order.status == OrderStatus.READY
        )

    async def get_order(self, order_id: int, actor: Actor) -> Order:
        order = await self._load(order_id)
        if not self._can_view(order, actor):
            raise NotAuthorizedError(
                "Order does not belong to the acting user",
                details={"order_id": order_id},
            )
        return order

    async def track_order(self, order_id: int, actor: Actor) -> dict[str, Any]:
        """Status, timeline and ETA for the tracking screen"""
        order = await self.get_order(order_id, actor)
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "status": order.status,
            "payment_status": order.payment_status,
            "rider_id": order.rider_id,
            "estimated_arrival": order.estimated_arrival,
            "delivered_at": order.delivered_at,
            "timeline": list(order.timeline),
        }

    async def list_available_deliveries(self, limit: int = 50) -> List[Order]:
        """Ready, paid orders no rider has claimed yet, oldest first"""
        result = await self.db.execute(
            select(Order)
            .where(
                Order.status == OrderStatus.READY,
                Order.rider_id.is_(None),
                Order.payment_status == PaymentStatus.COMPLETED,
            )
            .order_by(Order.updated_at, Order.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_orders(
        self,
        actor: Actor,
        status: OrderStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Order]:
        """
        Order history of the acting user, newest first.

        Customers see what they ordered, vendors what they sell, riders what
        they delivered or are delivering. Admins see everything.
        """
        query = select(Order)
        if actor.role == ActorRole.CUSTOMER:
            query = query.where(Order.customer_id == actor.user_id)
        elif actor.role == ActorRole.VENDOR:
            query = query.where(Order.vendor_id == actor.user_id)
        elif actor.role == ActorRole.RIDER:
            query = query.where(Order.rider_id == actor.user_id)
        elif actor.role != ActorRole.ADMIN:
            raise NotAuthorizedError(
                "Order history is not available for this role",
                details={"actor_role": actor.role.value},
            )

        if status is not None:
            query = query.where(Order.status == status)

        result = await self.db.execute(
            query.order_by(Order.created_at.desc(), Order.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    # ==================== Transitions ====================

    async def transition_order_status(
        self,
        order_id: int,
        target: OrderStatus,
        actor: Actor,
        note: str | None = None,
        delivery_code: str | None = None,
    ) -> Order:
        """
        Move an order to ``target`` on behalf of ``actor``.

        accepted is routed to accept_delivery and cancelled to cancel_order,
        so the claim race and the refund are handled in one place.
        """
        if target == OrderStatus.ACCEPTED:
            return await self.accept_delivery(order_id, actor)
        if target == OrderStatus.CANCELLED:
            return await self.cancel_order(order_id, actor, note)

        try:
            order = await self._load(order_id, for_update=True)
            self.state_machine.transition(
                order, target, actor, note=note, delivery_code=delivery_code
            )

            if target == OrderStatus.DELIVERED:
                await self._accrue_earnings(order)

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self._notify_status(order)
        return order

    async def _accrue_earnings(self, order: Order) -> None:
        """Delivered order: earnings go to pending balances until settlement"""
        if order.payment_status != PaymentStatus.COMPLETED:
            # settlement only releases paid orders; accruing here would strand pending_balance
            logger.warning(
                "Delivered order is not paid, earnings not accrued",
                extra_data={
                    "order_id": order.id,
                    "payment_status": order.payment_status.value,
                }
            )
            return

        await self.wallets.accrue_pending_earnings(order.vendor_id, order.vendor_earning)
        if order.rider_id is not None:
            await self.wallets.accrue_pending_earnings(order.rider_id, order.rider_earning)
            await self.db.execute(
                update(RiderProfile)
                .where(RiderProfile.user_id == order.rider_id)
                .values(total_deliveries=RiderProfile.total_deliveries + 1)
                .execution_options(synchronize_session=False)
            )

        logger.info(
            "Order earnings accrued",
            extra_data={
                "order_id": order.id,
                "vendor_id": order.vendor_id,
                "vendor_earning": str(order.vendor_earning),
                "rider_id": order.rider_id,
                "rider_earning": str(order.rider_earning),
            }
        )

    async def accept_delivery(self, order_id: int, actor: Actor) -> Order:
        """
        Claim a ready order for the acting rider.

        Raises:
            RiderOfflineError: rider is not online
            DeliveryAlreadyClaimedError: another rider won the race
            DeliveryNotReadyError: order is still being prepared or is unpaid
            InvalidStateTransitionError: order is past pickup or terminal
        """
        if actor.role != ActorRole.RIDER:
            raise NotAuthorizedError(
                "Only riders can accept deliveries",
                details={"order_id": order_id, "actor_role": actor.role.value},
            )

        current = await self._load(order_id)
        if current.status != OrderStatus.READY:
            raise self._claim_error(current)

        result = await self.db.execute(
            select(RiderProfile).where(RiderProfile.user_id == actor.user_id)
        )
        rider = result.scalar_one_or_none()
        if rider is None or not rider.is_online:
            raise RiderOfflineError(actor.user_id)

        try:
            order = await self.state_machine.claim_for_rider(order_id, actor)
            if order is None:
                raise self._claim_error(await self._load(order_id))
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self._notify_status(order)
        return order

    @staticmethod
    def _claim_error(order: Order) -> Exception:
        """Why a rider cannot claim ``order``, judged from its current row"""
        if order.status == OrderStatus.READY:
            if order.rider_id is not None:
                return DeliveryAlreadyClaimedError(order.id)
            return DeliveryNotReadyError(order.id, order.status.value, order.payment_status.value)
        if order.status == OrderStatus.ACCEPTED and order.rider_id is not None:
            return DeliveryAlreadyClaimedError(order.id)
        if order.status in _PRE_PICKUP_STATES:
            return DeliveryNotReadyError(order.id, order.status.value)
        return InvalidStateTransitionError(order.status.value, OrderStatus.ACCEPTED.value, order.id)

    async def cancel_order(self, order_id: int, actor: Actor, reason: str | None = None) -> Order:
        """
        Cancel an order, refunding a completed payment first.

        The refund is idempotent (processor key / ledger reference), so a
        retried cancel after a failed commit never refunds twice. If the
        refund fails the order stays as it was and the error propagates.
        """
        try:
            order = await self._load(order_id, for_update=True)
            self.state_machine.check_transition(order, OrderStatus.CANCELLED, actor)
            self.state_machine.authorize(order, OrderStatus.CANCELLED, actor)

            if order.payment_status == PaymentStatus.COMPLETED:
                await self._refund(order)

            self.state_machine.transition(order, OrderStatus.CANCELLED, actor, note=reason)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Order cancelled",
            extra_data={
                "order_id": order.id,
                "actor_role": actor.role.value,
                "refund_amount": str(order.refund_amount),
            }
        )
        await self._notify_status(order)
        return order

    async def _refund(self, order: Order) -> None:
        """Return the full payment to its source; caller commits"""
        if order.payment_method == PaymentMethod.WALLET:
            await self.wallets.refund_order_to_wallet(order)
        else:
            if self.processor is None:
                raise PaymentProviderError("no payment processor configured for refunds")
            refund = await self.processor.refund(
                payment_intent_id=order.payment_intent_id,
                amount=order.total,
                idempotency_key=f"refund-{order.order_number}",
            )
            logger.info(
                "Card payment refunded",
                extra_data={
                    "order_id": order.id,
                    "refund_id": refund.id,
                    "refund_status": refund.status,
                    "amount": str(order.total),
                }
            )

        order.refund_amount = order.total
        order.payment_status = PaymentStatus.REFUNDED

    # ==================== Riders ====================

    async def set_rider_availability(self, actor: Actor, is_online: bool) -> RiderProfile:
        if actor.role != ActorRole.RIDER:
            raise InvalidUserRoleError(actor.user_id, actor.role.value, ActorRole.RIDER.value)

        result = await self.db.execute(
            select(RiderProfile).where(RiderProfile.user_id == actor.user_id)
        )
        rider = result.scalar_one_or_none()
        if rider is None:
            rider = RiderProfile(user_id=actor.user_id, total_deliveries=0)
            self.db.add(rider)
        rider.is_online = is_online
        rider.updated_at = datetime.utcnow()
        await self.db.commit()
        await self.db.refresh(rider)

        logger.info(
            "Rider availability changed",
            extra_data={"rider_id": actor.user_id, "is_online": is_online}
        )
        return rider

    # ==================== Notifications ====================

    async def _notify_status(self, order: Order) -> None:
        order_id = order.id
        try:
            await self.notifier.notify_status_change(order)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.warning(
                "Failed to queue status notification",
                extra_data={"order_id": order_id, "error": str(e)}
            )
            await self.db.refresh(order)

