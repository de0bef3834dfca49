import os
from functools import lru_cache


class Settings:
    def __init__(
        self,
        database_url: str,
        frontend_origin: str,
        log_level: str,
        dashboard_refresh_seconds: float,
        dashboard_cache_max_entries: int,
        dashboard_breaker_failures: int,
        dashboard_breaker_reset_seconds: float,
    ) -> None:
        self.database_url = database_url
        self.frontend_origin = frontend_origin
        self.log_level = log_level
        self.dashboard_refresh_seconds = dashboard_refresh_seconds
        self.dashboard_cache_max_entries = dashboard_cache_max_entries
        self.dashboard_breaker_failures = dashboard_breaker_failures
        self.dashboard_breaker_reset_seconds = dashboard_breaker_reset_seconds


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("DATABASE_URL", "sqlite:///./spendwise.db")
    frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    dashboard_refresh_seconds = float(os.getenv("DASHBOARD_REFRESH_SECONDS", "30"))
    dashboard_cache_max_entries = int(os.getenv("DASHBOARD_CACHE_MAX_ENTRIES", "1024"))
    dashboard_breaker_failures = int(os.getenv("DASHBOARD_BREAKER_FAILURES", "5"))
    dashboard_breaker_reset_seconds = float(
        os.getenv("DASHBOARD_BREAKER_RESET_SECONDS", "60")
    )
    return Settings(
        database_url=database_url,
        frontend_origin=frontend_origin,
        log_level=log_level,
        dashboard_refresh_seconds=dashboard_refresh_seconds,
        dashboard_cache_max_entries=dashboard_cache_max_entries,
        dashboard_breaker_failures=dashboard_breaker_failures,
        dashboard_breaker_reset_seconds=dashboard_breaker_reset_seconds,
    )
