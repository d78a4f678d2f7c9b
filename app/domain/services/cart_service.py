"""
Cart Service - a customer's cart may hold meals from several vendors;
orders are cut per vendor.
"""
from datetime import datetime
from typing import List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.core.exceptions import NotFoundException, ValidationException
from app.db.models.customer import CartItem
from app.db.models.meal import Meal
from app.domain.services.catalog_service import CatalogService


class CartService:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.catalog = CatalogService(db)

    async def list_items(self, customer_id: int) -> List[CartItem]:
        result = await self.db.execute(
            select(CartItem)
            .where(CartItem.customer_id == customer_id)
            .order_by(CartItem.added_at, CartItem.id)
        )
        return list(result.scalars().all())

    async def items_for_vendor(self, customer_id: int, vendor_id: int) -> List[CartItem]:
        """Cart lines whose meal belongs to ``vendor_id``"""
        result = await self.db.execute(
            select(CartItem)
            .join(Meal, Meal.id == CartItem.meal_id)
            .where(
                CartItem.customer_id == customer_id,
                Meal.vendor_id == vendor_id,
            )
            .order_by(CartItem.id)
        )
        return list(result.scalars().all())

    async def add_item(
        self,
        customer_id: int,
        meal_id: int,
        quantity: int = 1,
        delivery_date: datetime | None = None,
    ) -> CartItem:
        """Add a meal, or bump the quantity of an existing line"""
        if quantity < 1:
            raise ValidationException("Quantity must be at least 1", field="quantity")

        # זורק אם המנה לא קיימת / לא זמינה
        await self.catalog.get_meal_price(meal_id)

        result = await self.db.execute(
            select(CartItem).where(
                CartItem.customer_id == customer_id,
                CartItem.meal_id == meal_id,
            )
        )
        item = result.scalar_one_or_none()
        if item:
            item.quantity += quantity
            if delivery_date is not None:
                item.delivery_date = delivery_date
        else:
            item = CartItem(
                customer_id=customer_id,
                meal_id=meal_id,
                quantity=quantity,
                delivery_date=delivery_date,
            )
            self.db.add(item)

        await self.db.commit()
        await self.db.refresh(item)
        return item

    async def _get_own_item(self, customer_id: int, item_id: int) -> CartItem:
        result = await self.db.execute(
            select(CartItem).where(
                CartItem.id == item_id,
                CartItem.customer_id == customer_id,
            )
        )
        item = result.scalar_one_or_none()
        if item is None:
            raise NotFoundException("Cart item", item_id)
        return item

    async def update_quantity(self, customer_id: int, item_id: int, quantity: int) -> CartItem:
        if quantity < 1:
            raise ValidationException("Quantity must be at least 1", field="quantity")
        item = await self._get_own_item(customer_id, item_id)
        item.quantity = quantity
        await self.db.commit()
        await self.db.refresh(item)
        return item

    async def remove_item(self, customer_id: int, item_id: int) -> None:
        item = await self._get_own_item(customer_id, item_id)
        await self.db.delete(item)
        await self.db.commit()
