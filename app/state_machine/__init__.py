"""
State Machine Module for the Order Lifecycle
"""
from app.state_machine.states import (
    Actor,
    ActorRole,
    ORDER_TRANSITIONS,
    TERMINAL_STATES,
    CUSTOMER_CANCELLABLE_STATES,
)
from app.state_machine.manager import OrderStateMachine

__all__ = [
    "Actor",
    "ActorRole",
    "ORDER_TRANSITIONS",
    "TERMINAL_STATES",
    "CUSTOMER_CANCELLABLE_STATES",
    "OrderStateMachine",
]
