"""Service settings read from the environment and an optional .env file."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_ASYNC_DRIVERS = {"postgresql": "asyncpg", "mysql": "aiomysql"}


class Settings(BaseSettings):
    """Settings for the API, the database and the workspace sync pipeline."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = "Portal Workspace Sync"
    app_version: str = "1.0.0"
    debug: bool = False

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Database holding the portal records and their sync projection
    database_url: str = Field(
        ...,
        description="PostgreSQL or MySQL URL, with or without the async driver",
    )
    database_echo: bool = False
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # External workspace (Notion-compatible page API)
    workspace_api_url: str = "https://api.notion.com/v1"
    workspace_api_key: str = ""
    workspace_api_version: str = "2022-06-28"
    workspace_projects_database_id: str = ""
    workspace_deliverables_database_id: str = ""
    workspace_leads_database_id: str = ""
    workspace_request_timeout_seconds: float = 20.0

    # Sync queue
    sync_enabled: bool = True
    sync_rate_limit_requests: int = Field(3, ge=1)
    sync_rate_limit_window_ms: int = Field(1000, ge=1)
    sync_max_attempts: int = Field(3, ge=1)
    sync_retry_base_delay_ms: int = 1000
    sync_retry_max_delay_ms: int = 60_000
    sync_tick_interval_ms: int = 250
    sync_executor_timeout_seconds: float = 30.0
    sync_worker_count: int = Field(1, ge=1)
    sync_coalesce_enabled: bool = True
    sync_sweep_interval_minutes: int = 5
    sync_task_retention_minutes: int = 60
    sync_shutdown_timeout_seconds: float = 10.0

    # Operator routes
    admin_api_token: str = ""

    # Server
    host: str = "0.0.0.0"
    port: int = 8080

    @property
    def db_dialect(self) -> str:
        """Dialect name, mysql or postgresql, from the URL scheme."""
        return "mysql" if self.database_url.lower().startswith("mysql") else "postgresql"

    @property
    def async_database_url(self) -> str:
        """URL with the asyncpg or aiomysql driver filled in when absent."""
        url = self.database_url
        for scheme, driver in _ASYNC_DRIVERS.items():
            if url.startswith(f"{scheme}://"):
                return f"{scheme}+{driver}://" + url[len(scheme) + 3 :]
        return url

    @property
    def workspace_configured(self) -> bool:
        """Whether the workspace API key and projects database are set."""
        return bool(self.workspace_api_key and self.workspace_projects_database_id)

    @property
    def effective_worker_count(self) -> int:
        """Worker pool size, never larger than the rate budget."""
        return min(self.sync_worker_count, self.sync_rate_limit_requests)


@lru_cache
def get_settings() -> Settings:
    """Settings are read once per process."""
    return Settings()
