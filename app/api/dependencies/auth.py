"""
FastAPI dependencies for the caller's identity.

The gateway in front of the API authenticates the user and forwards the
user id in the X-User-Id header.

שימוש:
    @router.post("/orders/{order_id}/accept")
    async def accept(
        order_id: int,
        actor: Actor = Depends(get_current_actor),
        db: AsyncSession = Depends(get_db),
    ):
        ...
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.user import User, UserRole
from app.state_machine import Actor

logger = get_logger(__name__)

_user_id_header = APIKeyHeader(name="X-User-Id", auto_error=False)


async def get_current_user(
    user_id: str | None = Depends(_user_id_header),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    ה-User של הבקשה.

    זורק 401 אם ה-header חסר או לא מספרי, 403 אם המשתמש לא קיים או לא פעיל.
    """
    if not user_id or not user_id.strip().isdigit():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid X-User-Id header",
        )

    result = await db.execute(select(User).where(User.id == int(user_id)))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        logger.warning(
            "Request rejected, user inactive or unknown",
            extra_data={"user_id": user_id, "user_found": user is not None},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User is not active",
        )
    return user


async def get_current_actor(user: User = Depends(get_current_user)) -> Actor:
    return Actor.from_user(user)


def require_role(*roles: UserRole):
    """Dependency factory: only users with one of ``roles`` may call the route"""

    async def _check(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {', '.join(r.value for r in roles)}",
            )
        return user

    return _check


require_admin = require_role(UserRole.ADMIN)
