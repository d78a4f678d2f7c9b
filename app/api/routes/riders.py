"""
Rider API Routes
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_actor
from app.db.database import get_db
from app.domain.services.order_service import OrderService
from app.state_machine import Actor

router = APIRouter()


class AvailabilityRequest(BaseModel):
    is_online: bool


class RiderResponse(BaseModel):
    user_id: int
    is_online: bool
    total_deliveries: int

    model_config = {"from_attributes": True}


@router.post(
    "/availability",
    response_model=RiderResponse,
    summary="זמינות שליח",
    description="רק שליח מחובר יכול לתפוס משלוחים.",
)
async def set_availability(
    data: AvailabilityRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return await OrderService(db).set_rider_availability(actor, data.is_online)
