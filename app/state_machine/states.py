"""
State Definitions for the Order Lifecycle
"""
from dataclasses import dataclass
from enum import Enum

from app.db.models.order import OrderStatus
from app.db.models.user import User


class ActorRole(str, Enum):
    """Who is asking for a transition"""
    CUSTOMER = "customer"
    VENDOR = "vendor"
    RIDER = "rider"
    ADMIN = "admin"
    # Payment reconciliation (webhooks, sweeps)
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    user_id: int | None
    role: ActorRole

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(user_id=user.id, role=ActorRole(user.role.value))

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id=None, role=ActorRole.SYSTEM)


# Allowed transitions (whitelist)
ORDER_TRANSITIONS: dict[OrderStatus, list[OrderStatus]] = {
    OrderStatus.PENDING: [OrderStatus.CONFIRMED, OrderStatus.CANCELLED],
    OrderStatus.CONFIRMED: [OrderStatus.PREPARING, OrderStatus.CANCELLED],
    OrderStatus.PREPARING: [OrderStatus.READY, OrderStatus.CANCELLED],
    # rider claims
    OrderStatus.READY: [OrderStatus.ACCEPTED, OrderStatus.CANCELLED],
    OrderStatus.ACCEPTED: [OrderStatus.PICKED_UP],
    OrderStatus.PICKED_UP: [OrderStatus.ON_THE_WAY],
    OrderStatus.ON_THE_WAY: [OrderStatus.ARRIVED],
    # requires matching delivery code
    OrderStatus.ARRIVED: [OrderStatus.DELIVERED],
    OrderStatus.DELIVERED: [],
    OrderStatus.CANCELLED: [],
}

TERMINAL_STATES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

# ביטול ע"י לקוח/ספק — רק לפני שהמנה מוכנה
CUSTOMER_CANCELLABLE_STATES = frozenset({
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
})

# ביטול כפוי ע"י אדמין — מכל מצב לא סופי, חוץ מ-arrived
ADMIN_NON_CANCELLABLE_STATES = frozenset({OrderStatus.ARRIVED})

# Targets each role may request (ownership is checked separately)
ROLE_PERMITTED_TARGETS: dict[ActorRole, frozenset[OrderStatus]] = {
    ActorRole.CUSTOMER: frozenset({OrderStatus.CANCELLED}),
    ActorRole.VENDOR: frozenset({
        OrderStatus.CONFIRMED,
        OrderStatus.PREPARING,
        OrderStatus.READY,
        OrderStatus.CANCELLED,
    }),
    ActorRole.RIDER: frozenset({
        OrderStatus.ACCEPTED,
        OrderStatus.PICKED_UP,
        OrderStatus.ON_THE_WAY,
        OrderStatus.ARRIVED,
        OrderStatus.DELIVERED,
    }),
    ActorRole.ADMIN: frozenset(OrderStatus),
    ActorRole.SYSTEM: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
}

# Human-readable timeline notes used when the caller gives none
DEFAULT_NOTES: dict[OrderStatus, str] = {
    OrderStatus.PENDING: "Order created",
    OrderStatus.CONFIRMED: "Order confirmed",
    OrderStatus.PREPARING: "Vendor started preparing the order",
    OrderStatus.READY: "Order is ready for pickup",
    OrderStatus.ACCEPTED: "Rider accepted the delivery",
    OrderStatus.PICKED_UP: "Rider picked up the order",
    OrderStatus.ON_THE_WAY: "Order is on the way",
    OrderStatus.ARRIVED: "Rider arrived at the delivery address",
    OrderStatus.DELIVERED: "Order delivered",
    OrderStatus.CANCELLED: "Order cancelled",
}


def is_valid_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS.get(current, [])
