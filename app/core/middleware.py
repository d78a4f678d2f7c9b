"""
FastAPI Middleware

Every response leaves with an X-Correlation-ID header, and every error
leaves in the same envelope: {"error": {"code", "message", "details"}}.

Stack (outermost first):
- SecurityHeadersMiddleware
- CorrelationIdMiddleware
- RequestLoggingMiddleware (caller id, redacted query string)
- WebhookRateLimitMiddleware (payment webhooks only)
"""
import time
from collections import defaultdict, deque
from typing import Any, Callable

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import (
    get_logger,
    set_correlation_id,
    get_correlation_id
)
from app.core.exceptions import AppException, ErrorCode

logger = get_logger(__name__)

# פרמטרים שלא נרשמים בלוג כמו שהם
_REDACTED_QUERY_KEYS = {"pin", "token", "account_number"}

WEBHOOK_PATH_MARKER = "/webhooks/"


def _error_response(
    status_code: int,
    code: ErrorCode,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code.value, "message": message, "details": details or {}}},
        headers={"X-Correlation-ID": get_correlation_id(), **(headers or {})},
    )


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Reuse the caller's X-Correlation-ID or mint one, and echo it back"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


def _safe_query_params(request: Request) -> dict[str, str]:
    return {
        key: ("***" if key.lower() in _REDACTED_QUERY_KEYS else value)
        for key, value in request.query_params.items()
    }


def _request_context(request: Request) -> dict[str, Any]:
    """שדות הלוג המשותפים לכל שלבי הבקשה"""
    return {
        "method": request.method,
        "path": request.url.path,
        # זהות המשתמש כפי שהגיעה מה-gateway; לא מאומתת כאן
        "user_id": request.headers.get("X-User-Id"),
        "idempotent": "Idempotency-Key" in request.headers,
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log each request once on entry and once on exit with its duration"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        context = _request_context(request)

        logger.info(
            f"Request started: {request.method} {request.url.path}",
            extra_data={
                **context,
                "query_params": _safe_query_params(request),
                "client_host": request.client.host if request.client else None,
            }
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                extra_data={
                    **context,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                    "error": str(e),
                },
                exc_info=True
            )
            raise

        # 4xx נרשם כ-warning — קוד עסקי (סירוב כרטיס, מעבר לא חוקי) ולא תקלה
        log = logger.info if response.status_code < 400 else logger.warning
        log(
            f"Request completed: {request.method} {request.url.path}",
            extra_data={
                **context,
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            }
        )
        return response


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Render a domain error in the standard envelope"""
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"X-Correlation-ID": get_correlation_id()}
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Pydantic request errors → 422 in the standard envelope.

    Only location and message are returned; the raw input is dropped so a
    rejected PIN or account number is never echoed back.
    """
    errors = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    logger.info(
        "Request validation failed",
        extra_data={"path": request.url.path, "fields": [e["field"] for e in errors]}
    )
    return _error_response(
        422,
        ErrorCode.VALIDATION_ERROR,
        "Request validation failed",
        {"errors": errors},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions without leaking internals"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": request.url.path,
        },
        exc_info=True
    )
    return _error_response(500, ErrorCode.INTERNAL_ERROR, "An unexpected error occurred")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    nosniff on every response; HSTS and CSP only outside DEBUG so a local
    HTTP setup keeps working.
    """

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        if not self._debug:
            response.headers["Content-Security-Policy"] = "upgrade-insecure-requests"
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window limit per client IP on webhook paths.

    Must sit inside CorrelationIdMiddleware so a 429 still carries a
    correlation ID.
    """

    def __init__(
        self,
        app: FastAPI,
        *,
        max_requests: int = 100,
        window_seconds: int = 60,
    ) -> None:
        super().__init__(app)
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._hits: dict[str, deque[float]] = defaultdict(deque)

    def _prune(self, ip: str, now: float) -> int:
        """מוחק hits שיצאו מהחלון ומחזיר כמה נשארו"""
        hits = self._hits.get(ip)
        if hits is None:
            return 0
        cutoff = now - self._window_seconds
        while hits and hits[0] < cutoff:
            hits.popleft()
        if not hits:
            # IP בלי hits לא נשמר — אחרת המילון גדל בלי גבול
            del self._hits[ip]
            return 0
        return len(hits)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if WEBHOOK_PATH_MARKER not in path and not path.endswith("/webhooks"):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.monotonic()

        if self._prune(client_ip, now) >= self._max_requests:
            logger.warning(
                "Rate limit exceeded for webhook",
                extra_data={
                    "client_ip": client_ip,
                    "path": path,
                    "limit": self._max_requests,
                    "window_seconds": self._window_seconds,
                },
            )
            return _error_response(
                429,
                ErrorCode.RATE_LIMITED,
                "Too many requests. Please try again later.",
                headers={"Retry-After": str(self._window_seconds)},
            )

        self._hits[client_ip].append(now)
        return await call_next(request)


def setup_middleware(app: FastAPI) -> None:
    """Setup all middleware for the application"""
    from app.core.config import settings

    # ב-Starlette ה-middleware האחרון שנוסף הוא ה-outermost
    app.add_middleware(
        WebhookRateLimitMiddleware,
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup exception handlers"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
