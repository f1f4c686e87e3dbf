"""
APScheduler jobs for background sync.

Two jobs sync every PP entity type in dependency order:

  pp_incremental_sync  every SYNC_INTERVAL_MINUTES, changes since the last watermark
  pp_daily_full_sync   daily at SYNC_HOUR:00, full refetch to catch anything missed

A job that fires while a run of the same entity types is still in flight
skips. On-demand runs go through POST /sync/trigger or
`python -m exchangesync sync`.
"""
import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from exchangesync.config import get_settings
from exchangesync.practicepanther.errors import SyncAlreadyRunning

logger = logging.getLogger(__name__)

INCREMENTAL_JOB_ID = "pp_incremental_sync"
FULL_JOB_ID = "pp_daily_full_sync"


def build_scheduler(engine, token_manager=None, rate_limiter=None) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine to pass to the sync service.
        token_manager: process-wide TokenManager shared by every job run.
        rate_limiter: process-wide RateLimiter shared by every job run.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()
    shared = {
        "engine": engine,
        "token_manager": token_manager,
        "rate_limiter": rate_limiter,
    }

    scheduler.add_job(
        _scheduled_sync,
        trigger="interval",
        minutes=settings.sync_interval_minutes,
        id=INCREMENTAL_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={**shared, "mode": None},
    )
    scheduler.add_job(
        _scheduled_sync,
        trigger="cron",
        hour=settings.sync_hour,
        minute=0,
        id=FULL_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={**shared, "mode": "full"},
    )

    return scheduler


async def _scheduled_sync(
    engine, mode: Optional[str] = None, token_manager=None, rate_limiter=None
) -> None:
    """
    Job body: sync all PP entity types, incremental (mode=None) or full.

    Never raises, so the scheduler stays alive.
    """
    from exchangesync.practicepanther.sync_service import build_sync_service

    label = mode or "incremental"
    logger.info("Scheduled %s PP sync starting at %s", label, datetime.utcnow().isoformat())

    try:
        service = build_sync_service(
            engine, token_manager=token_manager, rate_limiter=rate_limiter
        )
    except Exception as exc:
        logger.error("Scheduled %s PP sync could not start: %s", label, exc)
        return

    try:
        results = await service.sync_all(triggered_by="scheduler", mode=mode)
        for entity_type, result in results.items():
            logger.info(
                "Scheduled %s sync: %s %s", entity_type, result.status,
                result.statistics.as_dict(),
            )
    except SyncAlreadyRunning as exc:
        logger.info("Skipping scheduled %s PP sync: %s", label, exc)
    except Exception as exc:
        logger.error("Scheduled %s PP sync failed: %s", label, exc)
    finally:
        await service.aclose()
