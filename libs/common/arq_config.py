"""ARQ (Async Redis Queue) configuration utilities.

The background worker needs a real Redis; ``memory://`` (the local/test
default) is rejected here instead of failing later inside arq.
"""

from urllib.parse import urlparse

from arq.connections import RedisSettings
from libs.common.config import get_settings


def get_redis_settings() -> RedisSettings:
    """Parse REDIS_URL from application settings into ARQ RedisSettings."""
    settings = get_settings()
    parsed = urlparse(settings.REDIS_URL)
    if parsed.scheme not in ("redis", "rediss"):
        raise RuntimeError(
            "The background worker requires a redis:// REDIS_URL, "
            f"got {parsed.scheme}://"
        )

    return RedisSettings(
        host=parsed.hostname or "localhost",
        port=parsed.port or 6379,
        database=int(parsed.path.lstrip("/") or "0"),
        password=parsed.password,
        ssl=parsed.scheme == "rediss",
    )
