"""Sync audit log model."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class SyncLog(SQLModel, table=True):
    """Records each sync run of one entity type for audit and watermarking."""

    __tablename__ = "sync_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    sync_type: str = Field(index=True)  # "contacts", "matters", "tasks", ...
    status: str = "running"  # "running", "success", "partial", "error", "paused"
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    records_skipped: int = 0

    # JSON blob: mode, since, watermark, first N errors, pagination progress
    details_json: Optional[str] = None
    error_message: Optional[str] = None
    triggered_by: Optional[str] = None
