"""
Cart API Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import require_role
from app.db.database import get_db
from app.db.models.user import User, UserRole
from app.domain.services.cart_service import CartService

router = APIRouter()

_customer_only = require_role(UserRole.CUSTOMER)


class CartItemCreate(BaseModel):
    meal_id: int
    quantity: int = Field(default=1, ge=1, le=100)
    delivery_date: datetime | None = None


class CartItemUpdate(BaseModel):
    quantity: int = Field(ge=1, le=100)


class CartMeal(BaseModel):
    id: int
    vendor_id: int
    name: str
    price: Decimal
    is_available: bool

    model_config = {"from_attributes": True}


class CartItemResponse(BaseModel):
    id: int
    meal_id: int
    quantity: int
    delivery_date: datetime | None
    added_at: datetime | None
    meal: CartMeal | None = None

    model_config = {"from_attributes": True}


@router.get("", response_model=List[CartItemResponse], summary="תוכן העגלה")
async def list_cart(
    user: User = Depends(_customer_only),
    db: AsyncSession = Depends(get_db),
):
    return await CartService(db).list_items(user.id)


@router.post(
    "",
    response_model=CartItemResponse,
    status_code=status.HTTP_201_CREATED,
    summary="הוספת מנה לעגלה",
    description="מנה שכבר בעגלה מקבלת תוספת לכמות הקיימת.",
)
async def add_to_cart(
    data: CartItemCreate,
    user: User = Depends(_customer_only),
    db: AsyncSession = Depends(get_db),
):
    return await CartService(db).add_item(
        user.id, data.meal_id, data.quantity, data.delivery_date
    )


@router.patch("/{item_id}", response_model=CartItemResponse, summary="עדכון כמות")
async def update_cart_item(
    item_id: int,
    data: CartItemUpdate,
    user: User = Depends(_customer_only),
    db: AsyncSession = Depends(get_db),
):
    return await CartService(db).update_quantity(user.id, item_id, data.quantity)


@router.delete("/{item_id}", status_code=status.HTTP_204_NO_CONTENT, summary="הסרה מהעגלה")
async def remove_cart_item(
    item_id: int,
    user: User = Depends(_customer_only),
    db: AsyncSession = Depends(get_db),
):
    await CartService(db).remove_item(user.id, item_id)
