"""
Main entrypoint: runs the sync scheduler in the foreground.

FastAPI runs separately under uvicorn (for on-demand triggers and OAuth).

Usage:
    python -m exchangesync setup        # one-time PracticePanther OAuth setup
    python -m exchangesync sync [...]   # one-off sync, see --help
    python -m exchangesync              # starts the scheduler
    uvicorn exchangesync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_setup() -> None:
    from exchangesync.scripts.setup import run_setup
    run_setup()


def _run_sync(argv) -> int:
    from exchangesync.scripts.sync import main
    return main(argv)


async def _run_scheduler() -> None:
    from exchangesync.config import get_settings
    from exchangesync.db.engine import get_engine
    from exchangesync.practicepanther.sync_service import build_rate_limiter, build_token_manager
    from exchangesync.scheduler.jobs import build_scheduler

    settings = get_settings()
    engine = get_engine()

    # One token cache and one quota view for every scheduled run
    tokens = build_token_manager(engine, settings)
    limiter = build_rate_limiter(settings)

    # Check the PP token before starting
    status = tokens.token_status()
    if status["status"] == "no_token":
        await tokens.aclose()
        logger.error(
            "No PracticePanther token found. Run `python -m exchangesync setup` first."
        )
        sys.exit(1)
    logger.info("PracticePanther token: %s", status["message"])

    scheduler = build_scheduler(engine, token_manager=tokens, rate_limiter=limiter)
    scheduler.start()
    logger.info(
        "Scheduler started (incremental PP sync every %d min, full sync at %02d:00 UTC). "
        "Press Ctrl+C to stop.",
        settings.sync_interval_minutes, settings.sync_hour,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        await tokens.aclose()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: setup, sync, or nothing for the scheduler
    if len(sys.argv) > 1 and sys.argv[1] == "setup":
        _run_setup()
    elif len(sys.argv) > 1 and sys.argv[1] == "sync":
        sys.exit(_run_sync(sys.argv[2:]))
    else:
        asyncio.run(_run_scheduler())
