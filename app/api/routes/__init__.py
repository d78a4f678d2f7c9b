"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.cart import router as cart_router
from app.api.routes.orders import router as orders_router
from app.api.routes.riders import router as riders_router
from app.api.routes.settlements import router as settlements_router
from app.api.routes.wallets import router as wallets_router
from app.api.webhooks.payments import router as payments_webhook_router

router = APIRouter()

router.include_router(orders_router, prefix="/orders", tags=["orders"])
router.include_router(cart_router, prefix="/cart", tags=["cart"])
router.include_router(wallets_router, prefix="/wallets", tags=["wallets"])
router.include_router(settlements_router, prefix="/settlements", tags=["settlements"])
router.include_router(riders_router, prefix="/riders", tags=["riders"])
router.include_router(payments_webhook_router, prefix="/webhooks/payments", tags=["webhooks"])
