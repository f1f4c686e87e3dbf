"""FastAPI dependencies for the process-wide PP objects built at startup."""
from fastapi import Request

from exchangesync.db.engine import get_engine
from exchangesync.practicepanther.activity_log import SyncActivityLog
from exchangesync.practicepanther.auth import TokenManager
from exchangesync.practicepanther.rate_limiter import RateLimiter


def get_token_manager(request: Request) -> TokenManager:
    return request.app.state.token_manager


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_activity_log() -> SyncActivityLog:
    return SyncActivityLog(get_engine())
