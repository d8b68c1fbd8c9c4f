"""Annual reset arq worker: runs the leaderboard close-out every January 1st.

Usage: arq dojoxp.workers.annual_reset_worker.AnnualResetWorkerSettings
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from arq import cron
from arq.connections import RedisSettings

from dojoxp.config import GamificationConfig, get_settings
from dojoxp.database import close_db, get_session_factory, init_db
from dojoxp.gamification.annual_reset import AnnualResetJob
from dojoxp.middleware.logging import setup_logging

logger = logging.getLogger(__name__)


async def annual_reset_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize DB + pub/sub Redis on worker startup."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)

    ctx["redis_pubsub"] = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=10,
    )
    ctx["config"] = GamificationConfig.from_settings(settings)
    logger.info("Annual reset worker started")


async def annual_reset_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    redis_client: aioredis.Redis | None = ctx.get("redis_pubsub")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Annual reset worker shut down")


async def annual_leaderboard_reset(ctx: dict, target_year: int | None = None) -> dict:  # type: ignore[type-arg]
    """Scheduled arq task: 03:00 UTC on January 1st.

    Closes out the previous year. Re-runs for the same year are no-ops
    for dojos that were already archived.
    """
    job = AnnualResetJob(get_session_factory(), ctx["config"], ctx.get("redis_pubsub"))
    result = await job.run(target_year)
    logger.info(
        "Annual reset for %d: %d archived, %d reset, %d skipped, %d failed",
        result.year, result.total_archived, result.total_reset,
        len(result.skipped_dojos), len(result.failed_dojos),
    )
    return result.model_dump(mode="json")


class AnnualResetWorkerSettings:
    """arq worker settings for the annual reset scheduler."""

    functions = [annual_leaderboard_reset]
    cron_jobs = [
        cron(annual_leaderboard_reset, month=1, day=1, hour=3, minute=0, run_at_startup=False),
    ]
    on_startup = annual_reset_startup
    on_shutdown = annual_reset_shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    max_jobs = 1
    job_timeout = 1800  # 30 minutes for the whole fleet
