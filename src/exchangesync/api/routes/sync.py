"""Sync trigger and status routes."""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlmodel import Session, select

from exchangesync.api.deps import get_activity_log, get_rate_limiter, get_token_manager
from exchangesync.config import get_settings
from exchangesync.db.engine import get_engine, get_session
from exchangesync.models.sync import SyncLog
from exchangesync.practicepanther.activity_log import SyncActivityLog, log_details
from exchangesync.practicepanther.auth import TokenManager
from exchangesync.practicepanther.entities import SYNC_ORDER
from exchangesync.practicepanther.errors import SyncAlreadyRunning
from exchangesync.practicepanther.rate_limiter import RateLimiter
from exchangesync.practicepanther.sync_service import FULL, INCREMENTAL, build_sync_service

logger = logging.getLogger(__name__)

router = APIRouter()


class SyncTriggerRequest(BaseModel):
    entity_type: Optional[str] = None  # If None, syncs every entity type in order
    mode: Optional[str] = None  # full | incremental | None (auto)
    limit: Optional[int] = None


class SyncStatusResponse(BaseModel):
    id: int
    sync_type: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime]
    duration_seconds: Optional[float]
    records_processed: int
    records_created: int
    records_updated: int
    records_skipped: int
    records_failed: int
    triggered_by: Optional[str]
    error_message: Optional[str]
    details: Dict[str, Any]


def _status_response(log: SyncLog) -> SyncStatusResponse:
    duration = None
    if log.completed_at is not None:
        duration = (log.completed_at - log.started_at).total_seconds()
    return SyncStatusResponse(
        id=log.id,
        sync_type=log.sync_type,
        status=log.status,
        started_at=log.started_at,
        completed_at=log.completed_at,
        duration_seconds=duration,
        records_processed=log.records_processed,
        records_created=log.records_created,
        records_updated=log.records_updated,
        records_skipped=log.records_skipped,
        records_failed=log.records_failed,
        triggered_by=log.triggered_by,
        error_message=log.error_message,
        details=log_details(log),
    )


async def _do_sync(
    entity_type: Optional[str],
    mode: Optional[str],
    limit: Optional[int],
    token_manager: TokenManager,
    rate_limiter: RateLimiter,
) -> None:
    """Background task: sync with the app's shared token manager and limiter."""
    service = build_sync_service(
        get_engine(), token_manager=token_manager, rate_limiter=rate_limiter
    )
    try:
        if entity_type:
            await service.sync_entity_type(
                entity_type, triggered_by="api", mode=mode, limit=limit
            )
        else:
            await service.sync_all(triggered_by="api", mode=mode)
    except SyncAlreadyRunning as exc:
        logger.warning("Background PP sync skipped: %s", exc)
    except Exception:
        logger.exception("Background PP sync failed")
    finally:
        await service.aclose()


async def _test_connection(token_manager: TokenManager, rate_limiter: RateLimiter) -> Dict[str, Any]:
    service = build_sync_service(
        get_engine(), token_manager=token_manager, rate_limiter=rate_limiter
    )
    try:
        return await service.test_connection()
    finally:
        await service.aclose()


@router.post("/trigger")
async def trigger_sync(
    request: SyncTriggerRequest,
    background_tasks: BackgroundTasks,
    activity_log: SyncActivityLog = Depends(get_activity_log),
    tokens: TokenManager = Depends(get_token_manager),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """
    Trigger an on-demand PP sync.
    Returns immediately; sync runs in background. 409 while a run of any
    requested entity type is still in flight.
    """
    if request.entity_type is not None and request.entity_type not in SYNC_ORDER:
        raise HTTPException(
            status_code=422,
            detail=f"Unknown entity type {request.entity_type!r}; expected one of {list(SYNC_ORDER)}",
        )
    if request.mode not in (None, FULL, INCREMENTAL):
        raise HTTPException(status_code=422, detail="mode must be 'full' or 'incremental'")
    if request.limit is not None and request.limit < 1:
        raise HTTPException(status_code=422, detail="limit must be positive")

    wanted = [request.entity_type] if request.entity_type else list(SYNC_ORDER)
    stale_after = timedelta(minutes=get_settings().sync_stale_after_minutes)
    running = activity_log.find_running(wanted, stale_after)
    if running is not None:
        raise HTTPException(
            status_code=409,
            detail=str(SyncAlreadyRunning(running.sync_type, running.id)),
        )

    background_tasks.add_task(
        _do_sync, request.entity_type, request.mode, request.limit, tokens, limiter
    )
    return {
        "message": "Sync started",
        "entity_type": request.entity_type,
        "mode": request.mode,
        "limit": request.limit,
    }


@router.get("/status", response_model=List[SyncStatusResponse])
def sync_status(
    limit: int = Query(10, ge=1, le=100),
    session: Session = Depends(get_session),
):
    """Most recent sync runs, newest first."""
    logs = session.exec(
        select(SyncLog).order_by(SyncLog.started_at.desc(), SyncLog.id.desc()).limit(limit)
    ).all()
    return [_status_response(log) for log in logs]


@router.get("/status/{sync_id}", response_model=SyncStatusResponse)
def sync_run_status(
    sync_id: int,
    activity_log: SyncActivityLog = Depends(get_activity_log),
):
    """One run, e.g. to poll a background sync started by /trigger."""
    log = activity_log.get(sync_id)
    if log is None:
        raise HTTPException(status_code=404, detail=f"No sync run {sync_id}")
    return _status_response(log)


@router.get("/connection")
async def connection(
    tokens: TokenManager = Depends(get_token_manager),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Authenticated round-trip to PP."""
    return await _test_connection(tokens, limiter)
