"""
Catalog Service - read-only meal price lookup used when an order is priced
"""
from dataclasses import dataclass
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.core.exceptions import NotFoundException, MealUnavailableError
from app.db.models.meal import Meal


@dataclass(frozen=True)
class MealPrice:
    meal_id: int
    name: str
    price: Decimal
    vendor_id: int


class CatalogService:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_meal_price(self, meal_id: int) -> MealPrice:
        """
        Current price and owning vendor of a meal.

        Raises:
            NotFoundException: unknown meal
            MealUnavailableError: meal exists but is not orderable
        """
        result = await self.db.execute(select(Meal).where(Meal.id == meal_id))
        meal = result.scalar_one_or_none()
        if meal is None:
            raise NotFoundException("Meal", meal_id)
        if not meal.is_available:
            raise MealUnavailableError(meal_id)
        return MealPrice(
            meal_id=meal.id,
            name=meal.name,
            price=meal.price,
            vendor_id=meal.vendor_id,
        )
