"""
Async client for the PracticePanther REST API (v2).

This is the only network egress to PP. Every request passes through two
httpx event hooks:

  request  → resolve a bearer token via TokenManager, then wait on the
             RateLimiter for a slot in the quota window
  response → on 401 drop the cached token so the retry re-resolves it
             (which refreshes); on 429 log the throttle

get_json() retries a 401 once and a 429 after a backoff (tenacity), and
turns everything else that is not a 2xx into PageFetchError. Page envelopes differ between endpoints
and API versions; normalize_page() is the single place that deals with it.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from exchangesync.practicepanther.errors import (
    PageFetchError,
    PracticePantherError,
    RateLimited,
    TokenRejected,
    UnexpectedResponseError,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://app.practicepanther.com/api/v2"
USER_AGENT = "ExchangeSync/1.0"

ENTITY_PATHS = {
    "contacts": "/contacts",
    "users": "/users",
    "matters": "/matters",
    "tasks": "/tasks",
    "invoices": "/invoices",
    "expenses": "/expenses",
}


@dataclass
class Page:
    """One page of records, whatever envelope the API wrapped it in."""

    records: List[Dict[str, Any]] = field(default_factory=list)
    has_more: Optional[bool] = None  # None: the envelope did not say
    total_count: Optional[int] = None


def normalize_page(payload: Any) -> Page:
    """
    Normalize a PP list response into a Page.

    Accepted shapes:
      - a bare JSON array of records
      - {"results": [...], "total_count": n, "has_more": bool}
      - {"data": [...], "meta": {"current_page": p, "total_pages": n}}
      - {"items": [...], ...}

    Raises:
        UnexpectedResponseError: for anything else.
    """
    if isinstance(payload, list):
        return Page(records=payload)

    if not isinstance(payload, dict):
        raise UnexpectedResponseError(
            f"Expected a list or object page, got {type(payload).__name__}"
        )

    for key in ("results", "data", "items"):
        records = payload.get(key)
        if isinstance(records, list):
            break
    else:
        raise UnexpectedResponseError(
            "No record list in PP response. Keys present: " + str(list(payload.keys()))
        )

    has_more = payload.get("has_more")
    if has_more is not None:
        has_more = bool(has_more)
    meta = payload.get("meta")
    if has_more is None and isinstance(meta, dict):
        current, total = meta.get("current_page"), meta.get("total_pages")
        if current is not None and total is not None:
            has_more = int(current) < int(total)

    total_count = payload.get("total_count")
    if total_count is None and isinstance(meta, dict):
        total_count = meta.get("total_count") or meta.get("total")

    return Page(
        records=records,
        has_more=has_more,
        total_count=int(total_count) if total_count is not None else None,
    )


def _utc_iso(value: datetime) -> str:
    """ISO 8601 with a Z suffix. Naive datetimes are already UTC here."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat() + "Z"


class PracticePantherClient:
    """
    Thin async wrapper over httpx.AsyncClient for the PP API.

    The TokenManager and RateLimiter are injected so a process can share
    one quota view across clients, and tests can swap them out.
    """

    def __init__(
        self,
        token_manager,
        rate_limiter,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        rate_limit_backoff: float = 60.0,
        max_rate_limit_retries: int = 5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._token_manager = token_manager
        self._rate_limiter = rate_limiter
        self._rate_limit_backoff = rate_limit_backoff
        self._max_rate_limit_retries = max_rate_limit_retries
        self._sleep = sleep
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json", "User-Agent": USER_AGENT},
            event_hooks={
                "request": [self._before_request],
                "response": [self._after_response],
            },
        )

    async def __aenter__(self) -> "PracticePantherClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── Interceptors ──────────────────────────────────────────────────────────

    async def _before_request(self, request: httpx.Request) -> None:
        token = await self._token_manager.get_valid_token()
        request.headers["Authorization"] = f"Bearer {token}"
        await self._rate_limiter.before_request()
        logger.debug(
            "PP API request: %s %s (%s requests in window)",
            request.method, request.url, self._rate_limiter.in_window,
        )

    async def _after_response(self, response: httpx.Response) -> None:
        request = response.request
        if response.status_code == 401:
            logger.warning("PP API 401 for %s; dropping cached token", request.url.path)
            self._token_manager.invalidate()
        elif response.status_code == 429:
            logger.warning("PP API 429 for %s", request.url.path)
        else:
            logger.debug("PP API response: %s %s", response.status_code, request.url.path)

    # ── Requests ──────────────────────────────────────────────────────────────

    def _throttle_wait(self, retry_state: RetryCallState) -> float:
        """Wait for Retry-After when PP sent one, else the fixed backoff."""
        throttle = retry_state.outcome.exception()
        if isinstance(throttle, RateLimited) and throttle.retry_after is not None:
            return throttle.retry_after
        return self._rate_limit_backoff

    @staticmethod
    def _log_throttle(retry_state: RetryCallState) -> None:
        logger.warning(
            "%s; backing off %.0fs",
            retry_state.outcome.exception(), retry_state.next_action.sleep,
        )

    @staticmethod
    def _retry_after(response: httpx.Response) -> Optional[float]:
        header = response.headers.get("Retry-After")
        try:
            return max(float(header), 0.0)
        except (TypeError, ValueError):
            return None

    async def _get(self, path: str, params: Optional[Dict[str, Any]]) -> httpx.Response:
        """One GET. 401 and 429 are raised so the retry policies can see them."""
        try:
            response = await self._http.get(path, params=params)
        except httpx.TransportError as exc:
            raise PageFetchError(f"PP request to {path} failed: {exc}") from exc

        if response.status_code == 401:
            raise TokenRejected(
                "PracticePanther rejected a refreshed token. Re-authorization required."
            )
        if response.status_code == 429:
            raise RateLimited(
                f"PP rate limit hit on {path}", retry_after=self._retry_after(response)
            )
        if response.is_error:
            raise PageFetchError(
                f"PP API error {response.status_code} on {path}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    async def _get_authorized(self, path: str, params: Optional[Dict[str, Any]]) -> httpx.Response:
        # The response hook already dropped the cached token, so the second
        # attempt re-resolves (and refreshes) it.
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TokenRejected),
            stop=stop_after_attempt(2),
            reraise=True,
        ):
            with attempt:
                response = await self._get(path, params)
        return response

    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        GET a PP endpoint and return the decoded JSON body.

        Raises:
            AuthRequired / RefreshFailed: token could not be obtained, or the
                API rejected a freshly resolved token as well.
            PageFetchError: transport failure, non-2xx status, or 429 that
                persisted through max_rate_limit_retries backoffs.
            UnexpectedResponseError: body is not JSON.
        """
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(RateLimited),
                stop=stop_after_attempt(self._max_rate_limit_retries + 1),
                wait=self._throttle_wait,
                before_sleep=self._log_throttle,
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt:
                    response = await self._get_authorized(path, params)
        except RateLimited as exc:
            raise PageFetchError(
                f"PP kept rate limiting {path} after {self._max_rate_limit_retries} backoffs",
                status_code=429,
            ) from exc

        try:
            return response.json()
        except ValueError as exc:
            raise UnexpectedResponseError(f"PP returned non-JSON body for {path}") from exc

    async def fetch_page(
        self,
        entity_type: str,
        *,
        page: int,
        per_page: int,
        updated_since: Optional[datetime] = None,
    ) -> Page:
        """Fetch one page of an entity list, optionally only records changed since a watermark."""
        try:
            path = ENTITY_PATHS[entity_type]
        except KeyError:
            raise ValueError(f"Unknown PracticePanther entity type: {entity_type}")

        params: Dict[str, Any] = {"page": page, "per_page": per_page}
        if updated_since is not None:
            params["updated_since"] = _utc_iso(updated_since)
        payload = await self.get_json(path, params=params)
        return normalize_page(payload)

    async def test_connection(self) -> Dict[str, Any]:
        """Cheapest possible authenticated call: one user record."""
        try:
            await self.fetch_page("users", page=1, per_page=1)
        except PracticePantherError as exc:
            return {"connected": False, "message": str(exc)}
        return {"connected": True, "message": "Connected to PracticePanther"}
