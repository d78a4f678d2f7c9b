"""
Domain Services
"""
from app.domain.services.cart_service import CartService
from app.domain.services.catalog_service import CatalogService
from app.domain.services.notification_service import NotificationDispatcher
from app.domain.services.order_creation_service import OrderCreationService, CreateOrderCommand
from app.domain.services.order_service import OrderService
from app.domain.services.outbox_service import OutboxService
from app.domain.services.payment_reconciliation_service import PaymentReconciliationService
from app.domain.services.settlement_service import SettlementService
from app.domain.services.wallet_service import WalletService

__all__ = [
    "CartService",
    "CatalogService",
    "NotificationDispatcher",
    "OrderCreationService",
    "CreateOrderCommand",
    "OrderService",
    "OutboxService",
    "PaymentReconciliationService",
    "SettlementService",
    "WalletService",
]
