"""Shared FastAPI dependencies."""

from collections.abc import AsyncGenerator

from fastapi import Header, HTTPException, status

from dojoxp.config import GamificationConfig, get_settings
from dojoxp.redis_client import get_redis as _get_redis


async def get_redis_dep() -> AsyncGenerator[object, None]:
    """Yield the Redis client (or None) as a FastAPI dependency."""
    yield _get_redis()


def get_config() -> GamificationConfig:
    """Gamification policy built from the current settings."""
    return GamificationConfig.from_settings(get_settings())


async def require_service_key(x_service_key: str | None = Header(default=None)) -> None:
    """Allow only internal callers (scheduler, other services) holding the service key."""
    expected = get_settings().service_api_key
    if not expected or x_service_key != expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid service key")
