"""
Order API Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, Header, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_actor, require_role
from app.core.logging import get_logger
from app.core.validation import delivery_code_validator, sanitized_text_validator
from app.db.database import get_db
from app.db.models.order import Order, OrderStatus, PaymentStatus, PaymentMethod
from app.db.models.user import User, UserRole
from app.domain.services.order_creation_service import OrderCreationService, CreateOrderCommand
from app.domain.services.order_service import OrderService
from app.domain.services.payments import BasePaymentProcessor, get_payment_processor
from app.state_machine import Actor, ActorRole

logger = get_logger(__name__)

router = APIRouter()


# ==================== Schemas ====================

class QuoteRequest(BaseModel):
    vendor_id: int
    address_id: int | None = None


class QuoteResponse(BaseModel):
    vendor_id: int
    address_id: int
    distance_km: float
    subtotal: Decimal
    delivery_fee: Decimal
    service_fee: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal


class OrderCreate(BaseModel):
    """Checkout request for the customer's cart lines from one vendor"""
    vendor_id: int
    payment_method: PaymentMethod = PaymentMethod.CARD
    # מזהה אמצעי התשלום אצל הספק (למשל pm_...)
    payment_method_ref: str | None = None
    address_id: int | None = None
    delivery_date: datetime | None = None
    special_instructions: str | None = None

    @field_validator("special_instructions")
    @classmethod
    def validate_instructions(cls, v: str | None) -> str | None:
        return sanitized_text_validator(v, max_length=500)


class OrderItemResponse(BaseModel):
    meal_id: int
    meal_name: str | None
    quantity: int
    unit_price: Decimal
    line_total: Decimal

    model_config = {"from_attributes": True}


class TimelineEntryResponse(BaseModel):
    status: OrderStatus
    actor_id: int | None
    actor_role: str
    note: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class OrderResponse(BaseModel):
    id: int
    order_number: str
    customer_id: int
    vendor_id: int
    rider_id: int | None
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    delivery_address: str
    special_instructions: str | None
    subtotal: Decimal
    delivery_fee: Decimal
    service_fee: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    refund_amount: Decimal
    delivery_date: datetime | None
    estimated_arrival: datetime | None
    delivered_at: datetime | None
    cancellation_reason: str | None
    created_at: datetime | None
    items: List[OrderItemResponse]
    timeline: List[TimelineEntryResponse]
    # רק הלקוח רואה את הקוד; השליח מקבל אותו ממנו במסירה
    delivery_code: str | None = None

    model_config = {"from_attributes": True}


class CreateOrderResponse(BaseModel):
    order: OrderResponse
    client_secret: str | None = None
    replayed: bool = False


class TrackResponse(BaseModel):
    order_id: int
    order_number: str
    status: OrderStatus
    payment_status: PaymentStatus
    rider_id: int | None
    estimated_arrival: datetime | None
    delivered_at: datetime | None
    timeline: List[TimelineEntryResponse]


class StatusUpdate(BaseModel):
    status: OrderStatus
    note: str | None = None
    delivery_code: str | None = None

    @field_validator("note")
    @classmethod
    def validate_note(cls, v: str | None) -> str | None:
        return sanitized_text_validator(v, max_length=500)

    @field_validator("delivery_code")
    @classmethod
    def validate_code(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return delivery_code_validator(v)


class CancelRequest(BaseModel):
    reason: str | None = None

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str | None) -> str | None:
        return sanitized_text_validator(v, max_length=500)


def _order_response(order: Order, actor: Actor) -> OrderResponse:
    response = OrderResponse.model_validate(order)
    if not (actor.role == ActorRole.CUSTOMER and order.customer_id == actor.user_id):
        response.delivery_code = None
    return response


# ==================== Routes ====================

@router.post(
    "/quote",
    response_model=QuoteResponse,
    summary="תמחור עגלה לפני הזמנה",
    description="מחשב דמי משלוח, עמלת שירות וסה\"כ עבור פריטי העגלה של ספק אחד, בלי לשמור דבר.",
)
async def quote_order(
    data: QuoteRequest,
    user: User = Depends(require_role(UserRole.CUSTOMER)),
    db: AsyncSession = Depends(get_db),
    processor: BasePaymentProcessor = Depends(get_payment_processor),
):
    service = OrderCreationService(db, processor)
    quote = await service.quote(user.id, data.vendor_id, data.address_id)
    return QuoteResponse(
        vendor_id=data.vendor_id,
        address_id=quote.address.id,
        distance_km=round(quote.distance_km, 3),
        **quote.pricing.as_dict(),
    )


@router.post(
    "",
    response_model=CreateOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="יצירת הזמנה מהעגלה",
    description=(
        "יוצר הזמנה מפריטי העגלה של ספק אחד ומחייב את אמצעי התשלום. "
        "Idempotency-Key זהה מחזיר את אותה הזמנה ולא מחייב שוב."
    ),
)
async def create_order(
    data: OrderCreate,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=128),
    user: User = Depends(require_role(UserRole.CUSTOMER)),
    db: AsyncSession = Depends(get_db),
    processor: BasePaymentProcessor = Depends(get_payment_processor),
):
    service = OrderCreationService(db, processor)
    result = await service.create_order(CreateOrderCommand(
        customer_id=user.id,
        vendor_id=data.vendor_id,
        delivery_date=data.delivery_date,
        payment_method=data.payment_method,
        payment_method_ref=data.payment_method_ref,
        address_id=data.address_id,
        special_instructions=data.special_instructions,
        idempotency_key=idempotency_key,
    ))
    return CreateOrderResponse(
        order=_order_response(result.order, Actor.from_user(user)),
        client_secret=result.payment_intent.client_secret if result.payment_intent else None,
        replayed=result.replayed,
    )


@router.get(
    "",
    response_model=List[OrderResponse],
    summary="היסטוריית הזמנות",
    description=(
        "הזמנות של המשתמש המחובר, מהחדשה לישנה: לקוח רואה את מה שהזמין, "
        "ספק את מה שנמכר אצלו, שליח את המשלוחים שלו."
    ),
)
async def list_orders(
    status_filter: OrderStatus | None = Query(default=None, alias="status"),
    limit: int = 20,
    offset: int = 0,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    service = OrderService(db)
    orders = await service.list_orders(
        actor, status=status_filter, limit=min(max(limit, 1), 100), offset=max(offset, 0)
    )
    return [_order_response(order, actor) for order in orders]


@router.get(
    "/available",
    response_model=List[OrderResponse],
    summary="הזמנות פנויות לשליחים",
    description="הזמנות במצב ready שעוד לא נתפסו ע\"י שליח.",
)
async def list_available(
    limit: int = 50,
    user: User = Depends(require_role(UserRole.RIDER, UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db),
):
    service = OrderService(db)
    orders = await service.list_available_deliveries(limit=min(max(limit, 1), 100))
    actor = Actor.from_user(user)
    return [_order_response(order, actor) for order in orders]


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="קבלת הזמנה",
)
async def get_order(
    order_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    service = OrderService(db)
    order = await service.get_order(order_id, actor)
    return _order_response(order, actor)


@router.get(
    "/{order_id}/track",
    response_model=TrackResponse,
    summary="מעקב אחר הזמנה",
    description="סטטוס, ציר זמן וזמן הגעה משוער.",
)
async def track_order(
    order_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    service = OrderService(db)
    return await service.track_order(order_id, actor)


@router.post(
    "/{order_id}/status",
    response_model=OrderResponse,
    summary="עדכון סטטוס הזמנה",
    description="מעבר סטטוס דרך מכונת המצבים. מסירה (delivered) דורשת את קוד המסירה.",
)
async def update_status(
    order_id: int,
    data: StatusUpdate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    processor: BasePaymentProcessor = Depends(get_payment_processor),
):
    service = OrderService(db, processor)
    order = await service.transition_order_status(
        order_id,
        data.status,
        actor,
        note=data.note,
        delivery_code=data.delivery_code,
    )
    return _order_response(order, actor)


@router.post(
    "/{order_id}/accept",
    response_model=OrderResponse,
    summary="תפיסת משלוח ע\"י שליח",
    description="תפיסה אטומית: רק שליח אחד מצליח לתפוס הזמנה פנויה.",
)
async def accept_delivery(
    order_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    service = OrderService(db)
    order = await service.accept_delivery(order_id, actor)
    return _order_response(order, actor)


@router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="ביטול הזמנה",
    description="ביטול הזמנה; תשלום שהושלם מוחזר לפני הביטול.",
)
async def cancel_order(
    order_id: int,
    data: CancelRequest | None = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    processor: BasePaymentProcessor = Depends(get_payment_processor),
):
    service = OrderService(db, processor)
    order = await service.cancel_order(order_id, actor, data.reason if data else None)
    return _order_response(order, actor)
