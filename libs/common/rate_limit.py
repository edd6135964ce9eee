"""Rate limiting for the public checkout endpoints.

Uses slowapi; state lives in Redis when ``REDIS_URL`` points at one so the
limit holds across service instances, in memory otherwise.
"""

from functools import lru_cache

from fastapi import Request, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.responses import JSONResponse

from libs.common.config import get_settings
from libs.common.logging import get_request_id


def _get_client_ip(request: Request) -> str:
    """
    Client IP, honouring the first hop of X-Forwarded-For behind a proxy.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


def _get_user_or_ip(request: Request) -> str:
    """
    Rate limit by user ID if authenticated, otherwise by IP.
    """
    user = getattr(request.state, "user", None)
    if user is not None:
        return f"user:{user.user_id}"
    return f"ip:{_get_client_ip(request)}"


@lru_cache
def get_limiter() -> Limiter:
    """
    Create and return the cached Limiter instance.
    """
    settings = get_settings()
    return Limiter(
        key_func=_get_user_or_ip,
        default_limits=["100/minute"],
        storage_uri=settings.REDIS_URL,
        strategy="fixed-window",
        enabled=settings.RATE_LIMIT_ENABLED,
    )


limiter = get_limiter()


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """
    Render limiter rejections in the same envelope as domain errors.
    """
    headers = {"Retry-After": str(getattr(exc, "retry_after", 60))}
    request_id = get_request_id()
    if request_id:
        headers["X-Request-ID"] = request_id
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Too many attempts. Please wait a moment.",
            "code": "RATE_LIMITED",
            "retryable": True,
        },
        headers=headers,
    )


def checkout_limit(func):
    """Apply the configured checkout limit (payment intent creation)."""
    return limiter.limit(get_settings().CHECKOUT_RATE_LIMIT)(func)
