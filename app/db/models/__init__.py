"""
Database Models
"""
from app.db.models.user import User
from app.db.models.vendor import VendorProfile
from app.db.models.rider import RiderProfile
from app.db.models.customer import CustomerProfile, CustomerAddress, CartItem
from app.db.models.meal import Meal
from app.db.models.order import Order, OrderItem, OrderTimelineEntry
from app.db.models.wallet import Wallet
from app.db.models.transaction import Transaction
from app.db.models.outbox_message import OutboxMessage
from app.db.models.webhook_event import WebhookEvent

__all__ = [
    "User",
    "VendorProfile",
    "RiderProfile",
    "CustomerProfile",
    "CustomerAddress",
    "CartItem",
    "Meal",
    "Order",
    "OrderItem",
    "OrderTimelineEntry",
    "Wallet",
    "Transaction",
    "OutboxMessage",
    "WebhookEvent",
]
