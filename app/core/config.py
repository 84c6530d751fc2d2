from typing import Dict

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .logger import get_logger


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field("dev", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    database_url: str = Field(..., alias="DATABASE_URL")

    sportmonks_api_token: str = Field("", alias="SPORTMONKS_API_TOKEN")
    sportmonks_football_base_url: str = Field(
        "https://api.sportmonks.com/v3/football", alias="SPORTMONKS_FOOTBALL_BASE_URL"
    )
    sportmonks_core_base_url: str = Field("https://api.sportmonks.com/v3/core", alias="SPORTMONKS_CORE_BASE_URL")
    sportmonks_odds_base_url: str = Field("https://api.sportmonks.com/v3/odds", alias="SPORTMONKS_ODDS_BASE_URL")
    # "query" sends api_token as a query param, "header" uses Authorization.
    sportmonks_auth_mode: str = Field("query", alias="SPORTMONKS_AUTH_MODE")
    sportmonks_per_page: int = Field(default=50, alias="SPORTMONKS_PER_PAGE")
    sportmonks_timeout_seconds: float = Field(default=20.0, alias="SPORTMONKS_TIMEOUT_SECONDS")
    sportmonks_max_retries: int = Field(default=3, alias="SPORTMONKS_MAX_RETRIES")

    admin_token: str = Field("", alias="ADMIN_TOKEN")

    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")
    job_lock_backend: str = Field(default="memory", alias="JOB_LOCK_BACKEND")
    # Format: "upsert-live-fixtures:2,update-prematch-odds:30"
    job_interval_overrides_raw: str = Field(default="", alias="JOB_INTERVAL_OVERRIDES")
    scheduler_misfire_grace_seconds: int = Field(default=300, alias="SCHEDULER_MISFIRE_GRACE_SECONDS")

    error_message_max_len: int = Field(default=500, alias="ERROR_MESSAGE_MAX_LEN")
    error_stack_max_len: int = Field(default=8000, alias="ERROR_STACK_MAX_LEN")

    @model_validator(mode="after")
    def validate_provider_config(self):
        if not self.provider_configured:
            logger = get_logger("settings")
            logger.warning("SPORTMONKS_API_TOKEN or base URLs are not configured; provider jobs will be skipped")
        return self

    @property
    def provider_configured(self) -> bool:
        invalid_values = {"", "YOUR_TOKEN"}
        return bool(
            (self.sportmonks_api_token or "").strip() not in invalid_values
            and (self.sportmonks_football_base_url or "").strip()
            and (self.sportmonks_core_base_url or "").strip()
        )

    @property
    def sportmonks_page_size(self) -> int:
        return max(1, min(50, int(self.sportmonks_per_page or 50)))

    @property
    def job_interval_overrides(self) -> Dict[str, int]:
        """Per-job interval overrides in minutes. E.g. {"upsert-live-fixtures": 2}."""
        overrides: Dict[str, int] = {}
        raw = (self.job_interval_overrides_raw or "").strip()
        if not raw:
            return overrides
        for pair in raw.split(","):
            if ":" not in pair:
                continue
            key_raw, minutes_raw = pair.rsplit(":", 1)
            try:
                minutes = int(minutes_raw.strip())
            except ValueError:
                continue
            if minutes > 0 and key_raw.strip():
                overrides[key_raw.strip()] = minutes
        return overrides


settings = Settings()
