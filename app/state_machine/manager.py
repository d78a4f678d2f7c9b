"""
Order State Machine - the single gate for order status changes

Every path that moves an order (customer cancel, vendor progress, rider
progress, admin override, payment reconciliation) goes through
OrderStateMachine so the whitelist in states.py stays authoritative.
The machine mutates the Order in the caller's session and never commits.
"""
import secrets
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    InvalidStateTransitionError,
    NotAuthorizedError,
    DeliveryCodeMismatchError,
)
from app.core.logging import get_logger
from app.db.models.order import Order, OrderStatus, OrderTimelineEntry, PaymentStatus
from app.state_machine.states import (
    Actor,
    ActorRole,
    TERMINAL_STATES,
    CUSTOMER_CANCELLABLE_STATES,
    ADMIN_NON_CANCELLABLE_STATES,
    ROLE_PERMITTED_TARGETS,
    DEFAULT_NOTES,
    is_valid_transition,
)

logger = get_logger(__name__)


class OrderStateMachine:
    """Validates and applies order status transitions"""

    def __init__(self, db: AsyncSession):
        self.db = db

    def check_transition(self, order: Order, target: OrderStatus, actor: Actor) -> None:
        """
        Raise InvalidStateTransitionError unless ``target`` is reachable from
        the order's current status for this actor.
        """
        current = order.status

        if current in TERMINAL_STATES:
            raise InvalidStateTransitionError(current.value, target.value, order.id)

        if target == OrderStatus.CANCELLED and actor.role == ActorRole.ADMIN:
            # ביטול כפוי: מותר גם מחוץ ל-whitelist, חוץ מ-arrived
            if current in ADMIN_NON_CANCELLABLE_STATES:
                raise InvalidStateTransitionError(current.value, target.value, order.id)
            return

        if not is_valid_transition(current, target):
            raise InvalidStateTransitionError(current.value, target.value, order.id)

        if (
            target == OrderStatus.CANCELLED
            and actor.role in (ActorRole.CUSTOMER, ActorRole.VENDOR)
            and current not in CUSTOMER_CANCELLABLE_STATES
        ):
            raise InvalidStateTransitionError(current.value, target.value, order.id)

    def authorize(self, order: Order, target: OrderStatus, actor: Actor) -> None:
        """Raise NotAuthorizedError if the actor may not request ``target`` on this order"""
        if target not in ROLE_PERMITTED_TARGETS.get(actor.role, frozenset()):
            raise NotAuthorizedError(
                f"A {actor.role.value} may not move an order to '{target.value}'",
                details={"order_id": order.id, "target_state": target.value},
            )

        if actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
            return

        if actor.role == ActorRole.CUSTOMER:
            owns = order.customer_id == actor.user_id
        elif actor.role == ActorRole.VENDOR:
            owns = order.vendor_id == actor.user_id
        elif target == OrderStatus.ACCEPTED:
            # כל שליח רשאי לתפוס הזמנה פנויה
            owns = True
        else:
            owns = order.rider_id is not None and order.rider_id == actor.user_id

        if not owns:
            raise NotAuthorizedError(
                "Order does not belong to the acting user",
                details={"order_id": order.id, "actor_role": actor.role.value},
            )

    def record_event(
        self,
        order: Order,
        actor: Actor,
        note: str | None = None,
        status: OrderStatus | None = None,
    ) -> OrderTimelineEntry:
        """Append a timeline entry without changing status"""
        entry_status = status or order.status
        entry = OrderTimelineEntry(
            status=entry_status,
            actor_id=actor.user_id,
            actor_role=actor.role.value,
            note=note or DEFAULT_NOTES.get(entry_status),
            created_at=datetime.utcnow(),
        )
        order.timeline.append(entry)
        return entry

    def transition(
        self,
        order: Order,
        target: OrderStatus,
        actor: Actor,
        note: str | None = None,
        delivery_code: str | None = None,
    ) -> Order:
        """
        Move ``order`` to ``target``.

        Raises:
            InvalidStateTransitionError: target not allowed from current status
            NotAuthorizedError: actor may not request target on this order
            DeliveryCodeMismatchError: delivered without the matching code
        """
        self.check_transition(order, target, actor)
        self.authorize(order, target, actor)

        if target == OrderStatus.DELIVERED:
            if not delivery_code or not secrets.compare_digest(
                str(delivery_code), str(order.delivery_code)
            ):
                raise DeliveryCodeMismatchError(order.id)

        previous = order.status
        now = datetime.utcnow()
        order.status = target

        if target == OrderStatus.DELIVERED and order.delivered_at is None:
            order.delivered_at = now

        if target == OrderStatus.CANCELLED:
            order.cancelled_by = actor.user_id
            order.cancelled_at = now
            order.cancellation_reason = note

        self.record_event(order, actor, note)

        logger.info(
            "Order status transitioned",
            extra_data={
                "order_id": order.id,
                "order_number": order.order_number,
                "from_status": previous.value,
                "to_status": target.value,
                "actor_role": actor.role.value,
                "actor_id": actor.user_id,
            }
        )
        return order

    async def claim_for_rider(self, order_id: int, actor: Actor) -> Order | None:
        """
        Atomically assign a ready, paid, unassigned order to a rider.

        One conditional UPDATE (status='ready' AND rider_id IS NULL AND
        payment_status='completed'), so two riders racing for the same order
        cannot both win and an unpaid order is never picked up.

        Returns:
            The refreshed order, or None if the update matched no row
        """
        result = await self.db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == OrderStatus.READY,
                Order.rider_id.is_(None),
                Order.payment_status == PaymentStatus.COMPLETED,
            )
            .values(
                status=OrderStatus.ACCEPTED,
                rider_id=actor.user_id,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None

        refreshed = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        order = refreshed.scalar_one()
        self.record_event(order, actor, DEFAULT_NOTES[OrderStatus.ACCEPTED])

        logger.info(
            "Order claimed by rider",
            extra_data={
                "order_id": order.id,
                "order_number": order.order_number,
                "rider_id": actor.user_id,
            }
        )
        return order
