"""
PracticePantherSyncService: orchestrates PP → DB sync per entity type.

Flow for one entity type:
  1. Pick the fetch mode: resume a paused run, incremental since the last
     watermark, or full
  2. Create SyncLog (status="running")
  3. Page through the PP list endpoint, strictly sequentially
  4. Per record: transform → resolve foreign keys → upsert by external id,
     counted as created / updated / skipped / error
  5. Update SyncLog with the terminal status, counts, the first N errors
     and, on success/partial, the watermark for the next incremental run

Per-record failures never stop the run; they turn a success into a
partial. Page, auth and response-shape failures end the run in "error"
with whatever statistics were gathered. Either way the result is returned,
not raised, and the SyncLog is never left "running". Cancellation is the one
exception: it is re-raised after the run is recorded as "paused".

Idempotency: each table has a unique external-id column. An existing row
with that id is updated in place (keeps its local id); otherwise a row is
inserted. Nothing is ever deleted.
"""
import asyncio
import logging
import signal
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlmodel import Session, select
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from exchangesync.models.sync import SyncLog
from exchangesync.practicepanther.activity_log import (
    ERROR,
    PARTIAL,
    PAUSED,
    SUCCESS,
    WATERMARK_STATUSES,
    SyncActivityLog,
    log_details,
)
from exchangesync.practicepanther.client import Page
from exchangesync.practicepanther.entities import (
    SYNC_ORDER,
    EntitySpec,
    get_entity_spec,
)
from exchangesync.practicepanther.errors import (
    PageFetchError,
    PracticePantherError,
    RecordError,
    RecordTransformError,
    RecordUpsertError,
    SyncAlreadyRunning,
)
from exchangesync.practicepanther.resolver import RelationshipResolver

logger = logging.getLogger(__name__)

FULL = "full"
INCREMENTAL = "incremental"

CREATED = "created"
UPDATED = "updated"
SKIPPED = "skipped"


# ── Result types ──────────────────────────────────────────────────────────────

@dataclass
class SyncStatistics:
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    error_samples: List[Dict[str, Any]] = field(default_factory=list)

    def count(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)

    def record_error(self, error: RecordError, max_samples: int) -> None:
        self.errors += 1
        if len(self.error_samples) < max_samples:
            self.error_samples.append({
                "external_id": error.external_id,
                "stage": error.stage,
                "message": error.message,
            })

    def as_counts(self) -> Dict[str, int]:
        """Counters keyed by SyncLog column name."""
        return {
            "records_processed": self.processed,
            "records_created": self.created,
            "records_updated": self.updated,
            "records_skipped": self.skipped,
            "records_failed": self.errors,
        }

    def as_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
        }


@dataclass
class SyncResult:
    sync_id: int
    entity_type: str
    status: str
    mode: str
    statistics: SyncStatistics
    error_message: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sync_id": self.sync_id,
            "entity_type": self.entity_type,
            "status": self.status,
            "mode": self.mode,
            "statistics": self.statistics.as_dict(),
            "errors": list(self.statistics.error_samples),
            "error_message": self.error_message,
        }


@dataclass
class _FetchPlan:
    mode: str
    since: Optional[datetime] = None
    start_page: int = 1
    resumed_from: Optional[int] = None


@dataclass
class _Cursor:
    page: int
    pages_fetched: int = 0
    limit_reached: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {"page": self.page, "pages_fetched": self.pages_fetched}


# ── Service ───────────────────────────────────────────────────────────────────

class PracticePantherSyncService:
    """Orchestrates PP → DB sync for one or all entity types."""

    def __init__(
        self,
        client,
        engine,
        *,
        activity_log: Optional[SyncActivityLog] = None,
        token_manager=None,
        page_size: int = 100,
        inter_page_delay: float = 0.1,
        page_retry_delay: float = 2.0,
        progress_every: int = 100,
        error_sample_size: int = 10,
        stale_after: timedelta = timedelta(hours=2),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            client: PracticePantherClient instance (or AsyncMock in tests).
            engine: SQLAlchemy engine (SQLModel create_engine result).
            token_manager: closed by aclose() when given. Leave it out when
                the token manager is shared with other services.
            stale_after: a "running" log older than this no longer blocks
                a new run of its entity type.
        """
        self.client = client
        self.engine = engine
        self.activity_log = activity_log or SyncActivityLog(engine)
        self.token_manager = token_manager
        self.page_size = page_size
        self.inter_page_delay = inter_page_delay
        self.page_retry_delay = page_retry_delay
        self.progress_every = progress_every
        self.error_sample_size = error_sample_size
        self.stale_after = stale_after
        self._sleep = sleep
        self._pause_requested = False

    async def aclose(self) -> None:
        await self.client.aclose()
        if self.token_manager is not None:
            await self.token_manager.aclose()

    # ── Pause control ─────────────────────────────────────────────────────────

    def request_pause(self) -> None:
        """Stop the current run after the record in flight; it ends "paused"."""
        if not self._pause_requested:
            logger.warning("Pause requested; stopping after the current record")
        self._pause_requested = True

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Route SIGINT/SIGTERM to request_pause() (Unix event loops only)."""
        loop = loop or asyncio.get_event_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_pause)
            except (NotImplementedError, RuntimeError):
                logger.info("Signal handlers unavailable; Ctrl+C will cancel instead of pause")
                return

    # ── Public API ────────────────────────────────────────────────────────────

    async def sync_entity_type(
        self,
        entity_type: str,
        *,
        triggered_by: Optional[str] = None,
        mode: Optional[str] = None,
        limit: Optional[int] = None,
        resolver: Optional[RelationshipResolver] = None,
    ) -> SyncResult:
        """
        Sync one entity type.

        Args:
            entity_type: contacts, users, matters, tasks, invoices or expenses.
            triggered_by: free-form caller tag stored on the SyncLog.
            mode: "full", "incremental", or None to pick incremental when a
                watermark exists. "incremental" without a watermark runs full.
            limit: stop after this many records (sample syncs). Limited runs
                do not advance the watermark.
            resolver: share a resolver across entity types of one run;
                a fresh one is built when omitted.

        Returns:
            SyncResult; status is one of success, partial, error, paused.

        Raises:
            ValueError: unknown entity type or mode.
            SyncAlreadyRunning: a recent run of this entity type is still "running".
            asyncio.CancelledError: re-raised after recording "paused".
        """
        self._pause_requested = False
        return await self._sync_entity(entity_type, triggered_by, mode, limit, resolver)

    async def sync_all(
        self,
        *,
        triggered_by: Optional[str] = None,
        mode: Optional[str] = None,
        entity_types: Optional[Iterable[str]] = None,
    ) -> Dict[str, SyncResult]:
        """
        Sync every entity type in dependency order with one shared resolver.

        Stops at the first run that ends in "error" or "paused", since the
        entity types after it reference what it was supposed to write.
        Raises SyncAlreadyRunning before syncing anything when any of the
        entity types has a run in flight.
        """
        wanted = set(entity_types) if entity_types is not None else set(SYNC_ORDER)
        unknown = wanted - set(SYNC_ORDER)
        if unknown:
            raise ValueError(f"Unknown entity types: {', '.join(sorted(unknown))}")
        order = [t for t in SYNC_ORDER if t in wanted]
        self._ensure_not_running(order)

        self._pause_requested = False
        resolver = RelationshipResolver(self.engine)
        kinds = sorted({kind for t in order for kind in get_entity_spec(t).reference_kinds})
        resolver.build_cache(kinds)

        results: Dict[str, SyncResult] = {}
        for entity_type in order:
            result = await self._sync_entity(entity_type, triggered_by, mode, None, resolver)
            results[entity_type] = result
            if result.status in (ERROR, PAUSED):
                logger.warning(
                    "Stopping full PP sync: %s ended %s", entity_type, result.status
                )
                break
        return results

    def get_sync_status(self, limit: int = 10) -> List[SyncLog]:
        """Recent runs across all entity types, newest first."""
        return self.activity_log.recent(limit)

    async def test_connection(self) -> Dict[str, Any]:
        return await self.client.test_connection()

    # ── Run ───────────────────────────────────────────────────────────────────

    async def _sync_entity(
        self,
        entity_type: str,
        triggered_by: Optional[str],
        mode: Optional[str],
        limit: Optional[int],
        resolver: Optional[RelationshipResolver],
    ) -> SyncResult:
        spec = get_entity_spec(entity_type)
        if mode not in (None, FULL, INCREMENTAL):
            raise ValueError(f"Unknown sync mode {mode!r}; expected full or incremental")
        self._ensure_not_running([entity_type])

        plan = self._plan(entity_type, mode)
        log_id = self.activity_log.start(
            entity_type,
            triggered_by=triggered_by,
            details={
                "mode": plan.mode,
                "since": plan.since.isoformat() if plan.since else None,
                "resumed_from": plan.resumed_from,
                "per_page": self.page_size,
            },
        )
        logger.info(
            "PP %s sync %s started (%s%s)",
            entity_type, log_id, plan.mode,
            f" since {plan.since.isoformat()}" if plan.since else "",
        )

        if resolver is None:
            resolver = RelationshipResolver(self.engine)
            resolver.build_cache(spec.reference_kinds)

        stats = SyncStatistics()
        cursor = _Cursor(page=plan.start_page)
        error_message: Optional[str] = None
        try:
            completed = await self._run_pages(spec, plan, cursor, stats, resolver, log_id, limit)
            if not completed:
                status = PAUSED
            else:
                status = PARTIAL if stats.errors else SUCCESS
        except asyncio.CancelledError:
            self._finish(log_id, PAUSED, stats, cursor)
            logger.warning("PP %s sync %s cancelled; recorded as paused", entity_type, log_id)
            raise
        except PracticePantherError as exc:
            status, error_message = ERROR, str(exc)
            logger.error("PP %s sync %s aborted: %s", entity_type, log_id, exc)
        except Exception as exc:
            status, error_message = ERROR, f"{type(exc).__name__}: {exc}"
            logger.exception("PP %s sync %s crashed", entity_type, log_id)

        self._finish(log_id, status, stats, cursor, error_message)
        logger.info(
            "PP %s sync %s finished %s: %s", entity_type, log_id, status, stats.as_dict()
        )
        return SyncResult(
            sync_id=log_id,
            entity_type=entity_type,
            status=status,
            mode=plan.mode,
            statistics=stats,
            error_message=error_message,
        )

    def _ensure_not_running(self, entity_types: Iterable[str]) -> None:
        running = self.activity_log.find_running(entity_types, self.stale_after)
        if running is not None:
            raise SyncAlreadyRunning(running.sync_type, running.id)

    def _plan(self, entity_type: str, mode: Optional[str]) -> _FetchPlan:
        """Resume a paused run, else incremental from the watermark, else full."""
        latest = self.activity_log.latest(entity_type)
        if latest is not None and latest.status == PAUSED:
            details = log_details(latest)
            paused_mode = details.get("mode") or FULL
            if mode is None or mode == paused_mode:
                since = details.get("since")
                pagination = details.get("pagination") or {}
                start_page = int(pagination.get("page") or 1)
                logger.info(
                    "Resuming paused PP %s sync %s at page %d",
                    entity_type, latest.id, start_page,
                )
                return _FetchPlan(
                    mode=paused_mode,
                    since=datetime.fromisoformat(since) if since else None,
                    start_page=start_page,
                    resumed_from=latest.id,
                )

        if mode == FULL:
            return _FetchPlan(mode=FULL)

        watermark = self.activity_log.get_last_watermark(entity_type)
        if watermark is None:
            if mode == INCREMENTAL:
                logger.info("No PP %s watermark yet; running a full sync", entity_type)
            return _FetchPlan(mode=FULL)
        return _FetchPlan(mode=INCREMENTAL, since=watermark)

    async def _run_pages(
        self,
        spec: EntitySpec,
        plan: _FetchPlan,
        cursor: _Cursor,
        stats: SyncStatistics,
        resolver: RelationshipResolver,
        log_id: int,
        limit: Optional[int],
    ) -> bool:
        """Page loop. Returns False when stopped by a pause request."""
        while True:
            if self._pause_requested:
                return False
            if limit is not None and stats.processed >= limit:
                cursor.limit_reached = True
                return True

            page = await self._fetch_page(spec.name, cursor.page, plan.since)
            cursor.pages_fetched += 1
            logger.info(
                "PP %s page %d: %d records (%d of %s processed so far)",
                spec.name, cursor.page, len(page.records), stats.processed,
                page.total_count if page.total_count is not None else "?",
            )

            for raw in page.records:
                self._process_record(spec, raw, resolver, stats)
                if self.progress_every and stats.processed % self.progress_every == 0:
                    self._save_progress(log_id, stats, cursor)
                if self._pause_requested:
                    # Resume re-reads this page; re-applying records is idempotent
                    return False
                if limit is not None and stats.processed >= limit:
                    cursor.limit_reached = True
                    return True

            if not self._has_more(page):
                return True
            cursor.page += 1
            await self._sleep(self.inter_page_delay)

    async def _fetch_page(
        self, entity_type: str, page: int, since: Optional[datetime]
    ) -> Page:
        """Fetch one page, retrying a PageFetchError once after a short delay."""

        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                "PP %s page %d failed (%s); retrying in %.1fs",
                entity_type, page, retry_state.outcome.exception(),
                retry_state.next_action.sleep,
            )

        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(PageFetchError),
            stop=stop_after_attempt(2),
            wait=wait_fixed(self.page_retry_delay),
            before_sleep=log_retry,
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                result = await self.client.fetch_page(
                    entity_type, page=page, per_page=self.page_size, updated_since=since
                )
        return result

    def _has_more(self, page: Page) -> bool:
        if not page.records:
            return False
        if page.has_more is not None:
            return page.has_more
        return len(page.records) >= self.page_size

    # ── Records ───────────────────────────────────────────────────────────────

    def _process_record(
        self,
        spec: EntitySpec,
        raw: Any,
        resolver: RelationshipResolver,
        stats: SyncStatistics,
    ) -> None:
        stats.processed += 1
        try:
            outcome = self._apply_record(spec, raw, resolver)
        except RecordError as exc:
            stats.record_error(exc, self.error_sample_size)
            logger.warning(
                "PP %s record %s failed (%s): %s",
                spec.name, exc.external_id, exc.stage, exc.message,
            )
            return
        stats.count(outcome)

    def _apply_record(
        self, spec: EntitySpec, raw: Any, resolver: RelationshipResolver
    ) -> str:
        """transform → resolve → upsert one record; returns the outcome."""
        if not isinstance(raw, dict):
            raise RecordTransformError(None, f"Expected a JSON object, got {type(raw).__name__}")
        external_id = raw.get("id")
        external_id = str(external_id) if external_id is not None else None

        try:
            fields = spec.transform(raw)
        except RecordTransformError as exc:
            exc.external_id = exc.external_id or external_id
            raise
        except Exception as exc:
            raise RecordTransformError(external_id, f"{type(exc).__name__}: {exc}") from exc

        for ref in spec.references:
            fields[ref.fk_field] = resolver.resolve(ref.kind, fields.get(ref.source_field))

        try:
            outcome, local_id = self._upsert(spec, fields)
        except Exception as exc:
            raise RecordUpsertError(
                fields.get(spec.key_field, external_id), f"{type(exc).__name__}: {exc}"
            ) from exc

        for produced in spec.produces:
            prefer = bool(fields.get(produced.prefer_field)) if produced.prefer_field else False
            resolver.remember(produced.kind, fields.get(produced.source_field), local_id, prefer)
        return outcome

    def _upsert(self, spec: EntitySpec, fields: Dict[str, Any]) -> Tuple[str, Optional[int]]:
        """Insert or update one row keyed by the external id. Returns (outcome, id)."""
        model = spec.model
        key_value = fields[spec.key_field]
        now = datetime.utcnow()

        with Session(self.engine) as s:
            existing = s.exec(
                select(model).where(getattr(model, spec.key_field) == key_value)
            ).first()

            if existing is None and spec.fallback_match and fields.get(spec.fallback_match):
                column = getattr(model, spec.fallback_match)
                existing = s.exec(
                    select(model).where(
                        func.lower(column) == str(fields[spec.fallback_match]).lower()
                    )
                ).first()

            if existing is not None:
                # Update scalar fields in place (keeps same id)
                for k, v in fields.items():
                    if k == spec.fallback_match:
                        continue
                    setattr(existing, k, v)
                existing.last_sync_at = now
                s.add(existing)
                s.commit()
                s.refresh(existing)
                return UPDATED, existing.id

            if not spec.create_missing:
                return SKIPPED, None

            row = model(**fields, last_sync_at=now)
            s.add(row)
            s.commit()
            s.refresh(row)
            return CREATED, row.id

    # ── SyncLog writes ────────────────────────────────────────────────────────

    def _save_progress(self, log_id: int, stats: SyncStatistics, cursor: _Cursor) -> None:
        self.activity_log.record_counts(
            log_id, stats.as_counts(), details={"pagination": cursor.as_dict()}
        )

    def _finish(
        self,
        log_id: int,
        status: str,
        stats: SyncStatistics,
        cursor: _Cursor,
        error_message: Optional[str] = None,
    ) -> None:
        completed_at = datetime.utcnow()
        details: Dict[str, Any] = {
            "errors": stats.error_samples,
            "pagination": cursor.as_dict(),
            "limited": cursor.limit_reached,
        }
        if status in WATERMARK_STATUSES and not cursor.limit_reached:
            details["watermark"] = completed_at.isoformat()
        self.activity_log.finish(
            log_id,
            status,
            stats.as_counts(),
            details=details,
            error_message=error_message,
            completed_at=completed_at,
        )


def build_token_manager(engine, settings=None):
    """TokenManager from Settings. Build one per process and share it."""
    from exchangesync.config import get_settings
    from exchangesync.practicepanther.auth import TokenManager

    settings = settings or get_settings()
    return TokenManager(
        engine,
        client_id=settings.pp_client_id,
        client_secret=settings.pp_client_secret,
        token_url=settings.pp_token_url,
        authorize_url=settings.pp_authorize_url,
        redirect_uri=settings.pp_redirect_uri,
        timeout=settings.pp_request_timeout_seconds,
    )


def build_rate_limiter(settings=None):
    """RateLimiter from Settings. Build one per process and share it."""
    from exchangesync.config import get_settings
    from exchangesync.practicepanther.rate_limiter import RateLimiter

    settings = settings or get_settings()
    return RateLimiter(
        max_requests=settings.pp_rate_limit_requests,
        window_seconds=settings.pp_rate_limit_window_seconds,
    )


def build_sync_service(
    engine, settings=None, *, token_manager=None, rate_limiter=None
) -> PracticePantherSyncService:
    """
    Wire TokenManager, RateLimiter and client from Settings.

    Pass the process-wide token_manager and rate_limiter so concurrent
    services draw on one quota; a shared token manager is left open by
    the service's aclose(). Whatever is omitted is built here and owned by
    the returned service.
    """
    from exchangesync.config import get_settings
    from exchangesync.practicepanther.client import PracticePantherClient

    settings = settings or get_settings()
    owned_tokens = None
    if token_manager is None:
        token_manager = owned_tokens = build_token_manager(engine, settings)
    if rate_limiter is None:
        rate_limiter = build_rate_limiter(settings)
    client = PracticePantherClient(
        token_manager,
        rate_limiter,
        base_url=settings.pp_api_base_url,
        timeout=settings.pp_request_timeout_seconds,
        rate_limit_backoff=settings.pp_rate_limit_backoff_seconds,
    )
    return PracticePantherSyncService(
        client,
        engine,
        token_manager=owned_tokens,
        page_size=settings.pp_page_size,
        inter_page_delay=settings.pp_inter_page_delay_seconds,
        page_retry_delay=settings.pp_page_retry_delay_seconds,
        progress_every=settings.sync_progress_every,
        error_sample_size=settings.sync_error_sample_size,
        stale_after=timedelta(minutes=settings.sync_stale_after_minutes),
    )
