from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_env: str = "development"
    log_level: str = "INFO"
    database_url: str = "sqlite:///./agentduty.db"
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"

    admin_api_key: str = "change-me"
    admin_api_keys: str = ""

    slack_bot_token: str | None = None
    slack_signing_secret: str | None = None
    slack_validate_signatures: bool = True

    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_from_number: str | None = None
    twilio_api_base_url: str = "https://api.twilio.com/2010-04-01"
    twilio_validate_signatures: bool = True
    sms_send_timeout_seconds: float = 10.0

    default_priority: int = 3
    short_code_max_attempts: int = 20
    slack_link_code_ttl_minutes: int = 10
    notification_expiry_hours: int = 72
    retention_days_workflows: int = 14

    workflow_inline_dispatch: bool = True
    workflow_max_attempts: int = 3
    workflow_retry_seconds: int = 30
    workflow_poll_interval_seconds: float = 5.0
    workflow_batch_size: int = 100
    workflow_lease_seconds: int = 300

    rate_limit_enabled: bool = True
    rate_limit_requests_per_minute: int = 300
    rate_limit_exempt_paths: str = "/,/v1/health,/v1/metrics,/docs,/openapi.json"
    redis_url: str | None = None

    @field_validator("twilio_from_number", "twilio_account_sid", "twilio_auth_token", "slack_bot_token", mode="before")
    @classmethod
    def blank_to_none(cls, value: str | None) -> str | None:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def cors_origins_list(self) -> list[str]:
        if self.app_env == "production":
            return [item.strip() for item in self.cors_origins.split(",") if item.strip()]
        dev_defaults = ["http://localhost:3000", "http://127.0.0.1:3000"]
        custom = [item.strip() for item in self.cors_origins.split(",") if item.strip()]
        return sorted(set(dev_defaults + custom))

    @property
    def rate_limit_exempt_paths_list(self) -> list[str]:
        return [item.strip() for item in self.rate_limit_exempt_paths.split(",") if item.strip()]

    @property
    def admin_api_keys_list(self) -> list[str]:
        keys = [item.strip() for item in self.admin_api_keys.split(",") if item.strip()]
        if keys:
            return keys
        return [self.admin_api_key]

    @property
    def sms_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)

    def validate_production_safety(self) -> None:
        if self.app_env != "production":
            return
        weak_admin = any(key in {"", "change-me"} for key in self.admin_api_keys_list)
        if weak_admin:
            raise ValueError("Unsafe admin API key for production")
        if "*" in self.cors_origins:
            raise ValueError("Unsafe CORS wildcard for production")
        if not self.slack_validate_signatures or not self.twilio_validate_signatures:
            raise ValueError("Webhook signature validation must stay enabled in production")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
