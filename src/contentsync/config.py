from typing import Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = "sqlite:///./contentsync.db"
    log_level: str = "INFO"

    # "package.module:factory" returning a PageFetcher for a provider name
    page_fetcher_factory: str = ""

    # Scheduling
    sync_interval_minutes: int = 60
    timeout_sweep_minutes: int = 15
    quota_cleanup_hour: int = 0  # UTC

    # Sync loop
    page_size: int = 50
    max_pages_per_run: Optional[int] = None  # None = run until exhausted or paused
    max_concurrent_syncs: int = 3
    freshness_hours: int = 24
    sync_timeout_hours: int = 2

    # Retry backoff after repeated failures
    retry_backoff_after: int = 3
    retry_backoff_base_minutes: int = 60
    retry_backoff_max_hours: int = 24

    # Quota
    quota_window_hours: int = 24
    quota_soft_threshold: float = 0.90
    quota_hard_threshold: float = 0.95
    quota_warning_threshold: float = 0.80
    quota_retention_days: int = 30
    quota_limits: Dict[str, int] = {"youtube": 10000, "twitter": 300}
    # Units charged per operation. "page" = one list page (playlistItems + videos).
    quota_operation_costs: Dict[str, Dict[str, int]] = {
        "youtube": {"page": 2, "metadata": 1},
        "twitter": {"page": 1, "metadata": 1},
    }


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
