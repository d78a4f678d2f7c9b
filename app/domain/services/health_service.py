"""
שירות בדיקת בריאות — בדיקות תלויות (DB, Celery broker, circuit breakers).

מספק שתי רמות בדיקה:
- liveness: האם התהליך חי (ללא בדיקת תלויות)
- readiness: בדיקה של התלויות החיצוניות
"""
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.circuit_breaker import CircuitBreaker, CircuitState
from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# הודעות שגיאה מסוננות — ללא חשיפת פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_CELERY = "error: celery_unavailable"


async def _check_db(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("בדיקת בריאות DB נכשלה", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_celery() -> str:
    """ping ל-broker של Celery (Redis)"""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("בדיקת בריאות Celery נכשלה", extra_data={"error": str(e)})
        return _ERROR_CELERY


async def check_readiness(db: AsyncSession) -> dict[str, Any]:
    """
    בדיקת מוכנות.

    - status: "healthy" אם הכל תקין, "degraded" אם תלות לא זמינה או
      circuit breaker פתוח (ספק התשלומים למשל)
    - db / celery: "ok" או "error: ..."
    - circuit_breakers: מצב כל breaker שנוצר בתהליך
    """
    checks = {
        "db": await _check_db(db),
        "celery": await _check_celery(),
    }
    breakers = CircuitBreaker.snapshot()

    all_ok = all(v == _CHECK_OK for v in checks.values()) and all(
        state != CircuitState.OPEN.value for state in breakers.values()
    )
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning(
            "בדיקת מוכנות — המערכת במצב degraded",
            extra_data={**checks, "circuit_breakers": breakers},
        )

    return {"status": overall_status, **checks, "circuit_breakers": breakers}
