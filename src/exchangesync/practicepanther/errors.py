"""Exception hierarchy for the PracticePanther sync engine."""
from typing import Optional


class PracticePantherError(RuntimeError):
    """Base class for every error raised by the sync engine."""


# ── Auth ──────────────────────────────────────────────────────────────────────

class AuthRequired(PracticePantherError):
    """No usable token and no refresh path. Re-run the OAuth setup."""


class RefreshFailed(AuthRequired):
    """The provider rejected the refresh-token exchange."""


class TokenRejected(AuthRequired):
    """HTTP 401 for a token the client just attached."""


# ── Transport ─────────────────────────────────────────────────────────────────

class RateLimited(PracticePantherError):
    """HTTP 429 from the provider. Handled inside the client wrapper."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class PageFetchError(PracticePantherError):
    """A page request failed for a reason other than auth."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UnexpectedResponseError(PracticePantherError):
    """The response body was not JSON or not a recognised page envelope."""


# ── Per-record ────────────────────────────────────────────────────────────────

class RecordError(PracticePantherError):
    """A single record failed; the run carries on."""

    stage = "record"

    def __init__(self, external_id: Optional[str], message: str):
        super().__init__(message)
        self.external_id = external_id
        self.message = message


class RecordTransformError(RecordError):
    stage = "transform"


class RecordUpsertError(RecordError):
    stage = "upsert"


# ── Runs ──────────────────────────────────────────────────────────────────────

class SyncAlreadyRunning(PracticePantherError):
    """Another run of the same entity type has not finished yet."""

    def __init__(self, entity_type: str, sync_id: int):
        super().__init__(f"PP {entity_type} sync {sync_id} is already running")
        self.entity_type = entity_type
        self.sync_id = sync_id
