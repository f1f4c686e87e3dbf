"""
Durable record of sync runs (the sync_logs table).

The newest success/partial run of an entity type carries the watermark
that scopes the next incremental fetch, under details["watermark"].
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlmodel import Session, select

from exchangesync.models.sync import SyncLog

logger = logging.getLogger(__name__)

RUNNING = "running"
SUCCESS = "success"
PARTIAL = "partial"
ERROR = "error"
PAUSED = "paused"
TERMINAL_STATUSES = (SUCCESS, PARTIAL, ERROR, PAUSED)
WATERMARK_STATUSES = (SUCCESS, PARTIAL)

_COUNT_FIELDS = (
    "records_processed",
    "records_created",
    "records_updated",
    "records_failed",
    "records_skipped",
)


def log_details(log: SyncLog) -> Dict[str, Any]:
    """Decoded details of a SyncLog ({} when empty or corrupt)."""
    if not log.details_json:
        return {}
    try:
        details = json.loads(log.details_json)
    except ValueError:
        logger.warning("SyncLog %s has unreadable details_json", log.id)
        return {}
    return details if isinstance(details, dict) else {}


class SyncActivityLog:
    """Create, update and query SyncLog rows."""

    def __init__(self, engine):
        self.engine = engine

    def start(
        self,
        entity_type: str,
        triggered_by: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Insert a running SyncLog and return its id."""
        log = SyncLog(
            sync_type=entity_type,
            status=RUNNING,
            started_at=datetime.utcnow(),
            triggered_by=triggered_by,
            details_json=json.dumps(details or {}, default=str),
        )
        with Session(self.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log.id

    def update(self, log_id: int, **fields: Any) -> SyncLog:
        """
        Merge fields into an existing SyncLog.

        A details=dict kwarg is merged key-by-key into the stored details,
        so progress writes don't clobber mode/since set at start. Safe to
        call repeatedly during a long run.
        """
        with Session(self.engine) as s:
            log = s.get(SyncLog, log_id)
            if log is None:
                raise KeyError(f"No SyncLog with id {log_id}")
            details = fields.pop("details", None)
            if details is not None:
                merged = log_details(log)
                merged.update(details)
                log.details_json = json.dumps(merged, default=str)
            for key, value in fields.items():
                if not hasattr(log, key):
                    raise AttributeError(f"SyncLog has no field {key!r}")
                setattr(log, key, value)
            s.add(log)
            s.commit()
            s.refresh(log)
            return log

    def record_counts(self, log_id: int, counts: Dict[str, int], **fields: Any) -> SyncLog:
        """update() restricted to the records_* counters plus extra fields."""
        unknown = set(counts) - set(_COUNT_FIELDS)
        if unknown:
            raise AttributeError(f"Unknown count fields: {sorted(unknown)}")
        return self.update(log_id, **counts, **fields)

    def finish(
        self,
        log_id: int,
        status: str,
        counts: Dict[str, int],
        details: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> SyncLog:
        """Stamp a terminal status and completed_at."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal sync status: {status}")
        return self.record_counts(
            log_id,
            counts,
            status=status,
            completed_at=completed_at or datetime.utcnow(),
            details=details or {},
            error_message=error_message,
        )

    def get(self, log_id: int) -> Optional[SyncLog]:
        with Session(self.engine) as s:
            return s.get(SyncLog, log_id)

    def latest(self, entity_type: str) -> Optional[SyncLog]:
        """Newest run of an entity type, whatever its status."""
        with Session(self.engine) as s:
            return s.exec(
                select(SyncLog)
                .where(SyncLog.sync_type == entity_type)
                .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
            ).first()

    def find_running(
        self, entity_types: Iterable[str], stale_after: timedelta
    ) -> Optional[SyncLog]:
        """
        Newest "running" log of any of entity_types, or None.

        Runs started longer than stale_after ago are treated as crashed
        (the process died before it could record a terminal status).
        """
        cutoff = datetime.utcnow() - stale_after
        with Session(self.engine) as s:
            return s.exec(
                select(SyncLog)
                .where(SyncLog.sync_type.in_(list(entity_types)))
                .where(SyncLog.status == RUNNING)
                .where(SyncLog.started_at >= cutoff)
                .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
            ).first()

    def get_last_watermark(self, entity_type: str) -> Optional[datetime]:
        """
        Watermark of the newest success/partial run, or None (→ full sync).

        Runs capped by a record limit saw only part of the data and are
        skipped. Older rows written before details carried a watermark fall
        back to their completed_at.
        """
        with Session(self.engine) as s:
            logs = s.exec(
                select(SyncLog)
                .where(SyncLog.sync_type == entity_type)
                .where(SyncLog.status.in_(WATERMARK_STATUSES))
                .order_by(SyncLog.completed_at.desc(), SyncLog.id.desc())
            ).all()

        for log in logs:
            details = log_details(log)
            if details.get("limited"):
                continue
            raw = details.get("watermark")
            if raw:
                try:
                    return datetime.fromisoformat(raw)
                except (TypeError, ValueError):
                    logger.warning("SyncLog %s has an invalid watermark %r", log.id, raw)
            return log.completed_at
        return None

    def recent(self, limit: int = 10) -> List[SyncLog]:
        """Most recent runs across all entity types, newest first."""
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(SyncLog)
                    .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
                    .limit(limit)
                ).all()
            )
