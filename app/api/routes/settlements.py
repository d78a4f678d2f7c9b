"""
Settlement API Routes
"""
from decimal import Decimal
from typing import List, Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_user
from app.core.exceptions import NotAuthorizedError
from app.db.database import get_db
from app.db.models.user import User, UserRole
from app.domain.services.settlement_service import SettlementService

router = APIRouter()


class SettlementResponse(BaseModel):
    amount: Decimal
    order_count: int
    transaction_id: int
    order_ids: List[int]


@router.post(
    "/{actor_type}",
    response_model=SettlementResponse,
    summary="סליקת רווחים מהזמנות שנמסרו",
    description=(
        "מעביר רווחים מהזמנות שנמסרו לפני יותר מתקופת ההמתנה מיתרה ממתינה ליתרה זמינה. "
        "הזמנה נסלקת פעם אחת בלבד."
    ),
)
async def settle(
    actor_type: Literal["vendor", "rider"],
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    # ספק סולק רק כספק, שליח רק כשליח
    if user.role.value != actor_type:
        raise NotAuthorizedError(
            f"A {user.role.value} cannot settle {actor_type} earnings",
            details={"user_id": user.id, "actor_type": actor_type},
        )
    return await SettlementService(db).settle_earnings(user.id, actor_type)
