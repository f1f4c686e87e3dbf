from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./exchangesync.db"

    # PracticePanther OAuth app credentials
    pp_client_id: str = ""
    pp_client_secret: str = ""
    pp_redirect_uri: str = "http://localhost:8000/oauth/callback"
    pp_api_base_url: str = "https://app.practicepanther.com/api/v2"
    pp_token_url: str = "https://app.practicepanther.com/OAuth/Token"
    pp_authorize_url: str = "https://app.practicepanther.com/OAuth/Authorize"

    # 300 requests per 5 minutes is the documented PP quota
    pp_rate_limit_requests: int = 300
    pp_rate_limit_window_seconds: float = 300.0
    pp_rate_limit_backoff_seconds: float = 60.0
    pp_request_timeout_seconds: float = 30.0

    pp_page_size: int = 100
    pp_inter_page_delay_seconds: float = 0.1
    pp_page_retry_delay_seconds: float = 2.0

    sync_progress_every: int = 100
    sync_error_sample_size: int = 10
    # A "running" SyncLog older than this is treated as a crashed run
    sync_stale_after_minutes: int = 120

    # Scheduler: frequent incremental runs plus one full run a day
    sync_interval_minutes: int = 15
    sync_hour: int = 2

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
