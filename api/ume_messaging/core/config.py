import logging
import os
from functools import lru_cache
from pathlib import Path

from pydantic import ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # Environment settings (declared first so validators can read it)
    ENVIRONMENT: str = "development"

    # API settings
    DEBUG: bool = False
    PROJECT_NAME: str = "UME Messaging"

    # CORS settings - accepts string or list, normalized to list[str] by validator
    CORS_ORIGINS: str | list[str] = "*"

    # Directory settings
    DATA_DIR: str = "api/data"

    # Identity tokens issued by the auth platform and verified here
    IDENTITY_TOKEN_SECRET: str = ""
    IDENTITY_TOKEN_TTL_SECONDS: int = 60 * 60 * 24 * 7

    # Message store
    MESSAGE_MAX_LENGTH: int = 4000
    MESSAGE_EDIT_WINDOW_SECONDS: int = 120  # 0 disables the edit window

    # Presence
    ACTIVITY_THRESHOLD_MINUTES: int = 5  # Recipient counts as active within this
    ACTIVITY_DEBOUNCE_SECONDS: int = 60  # Minimum gap between last_active writes

    # Email escalation
    DAILY_EMAIL_LIMIT: int = 280  # Stays under the provider's 300/day ceiling
    APP_BASE_URL: str = "https://ume-life.com"  # Used for links in emails

    # Brevo transactional email
    BREVO_API_KEY: str = ""
    BREVO_API_URL: str = "https://api.brevo.com"
    BREVO_SENDER_EMAIL: str = "no-reply@ume-life.com"
    BREVO_SENDER_NAME: str = "UME Support"
    SUPPORT_EMAIL: str = ""  # Reply-to address, omitted when empty
    EMAIL_TIMEOUT_SECONDS: float = 10.0
    EMAIL_MAX_ATTEMPTS: int = 3  # Connection failures and timeouts are retried
    EMAIL_RETRY_BASE_SECONDS: float = 0.5  # Exponential backoff multiplier

    # Test mode writes outgoing emails to a JSON log instead of sending
    EMAIL_TEST_MODE: bool = False
    EMAIL_TEST_LOG_PATH: str = ""  # Defaults to DATA_DIR/email-test-log.json

    model_config = SettingsConfigDict(
        env_file=".env",  # Enable .env file loading
        extra="allow",
    )

    # Path properties that return complete paths
    @property
    def MESSAGING_DB_PATH(self) -> str:
        """Complete path to the messaging database"""
        return os.path.join(self.DATA_DIR, "messaging.db")

    @property
    def EMAIL_TEST_LOG_FILE_PATH(self) -> str:
        """Complete path to the test-mode email log"""
        return self.EMAIL_TEST_LOG_PATH or os.path.join(
            self.DATA_DIR, "email-test-log.json"
        )

    @field_validator(
        "MESSAGE_MAX_LENGTH",
        "ACTIVITY_THRESHOLD_MINUTES",
        "DAILY_EMAIL_LIMIT",
        "IDENTITY_TOKEN_TTL_SECONDS",
        "EMAIL_MAX_ATTEMPTS",
    )
    @classmethod
    def validate_positive(cls, v: int, info: ValidationInfo) -> int:
        """Reject zero or negative limits."""
        if v <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return v

    @field_validator(
        "MESSAGE_EDIT_WINDOW_SECONDS",
        "ACTIVITY_DEBOUNCE_SECONDS",
        "EMAIL_RETRY_BASE_SECONDS",
    )
    @classmethod
    def validate_non_negative(cls, v: int, info: ValidationInfo) -> int:
        if v < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return v

    @field_validator("APP_BASE_URL", "BREVO_API_URL")
    @classmethod
    def validate_base_url(cls, v: str, info: ValidationInfo) -> str:
        """Normalize a base URL.

        Ensures the URL has a scheme and removes trailing slashes so that
        joined paths never contain a double slash.
        """
        v = v.strip()
        if not v:
            raise ValueError(f"{info.field_name} must be non-empty")
        if "://" not in v:
            v = "https://" + v
        return v.rstrip("/")

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        """Normalize CORS_ORIGINS to list of hosts.

        Accepts either a comma-separated string or a list of strings.
        Handles wildcards, trims whitespace, and ignores empty entries.
        """
        if isinstance(v, list):
            return [
                host.strip() for host in v if isinstance(host, str) and host.strip()
            ]

        if isinstance(v, str):
            if v.strip() == "*":
                return ["*"]
            return [host.strip() for host in v.split(",") if host.strip()]

        # Fail closed for unexpected types
        return []

    @classmethod
    def _is_production(cls, info: ValidationInfo) -> bool:
        raw_env = info.data.get("ENVIRONMENT", "development")
        environment = str(raw_env).strip().lower()
        if environment in {"prod"}:
            environment = "production"
        return environment == "production"

    @field_validator("CORS_ORIGINS")
    @classmethod
    def validate_cors_in_production(cls, v: list[str], info) -> list[str]:
        """Reject wildcard CORS in production environments."""
        if cls._is_production(info) and v == ["*"]:
            raise ValueError("CORS wildcard '*' not allowed in production")
        return v

    @field_validator("IDENTITY_TOKEN_SECRET")
    @classmethod
    def validate_identity_secret(cls, v: str, info) -> str:
        """Ensure the identity token secret is set in production.

        Outside production an empty secret is tolerated so the service can
        boot locally; every token verification then fails.
        """
        if cls._is_production(info) and not v:
            raise ValueError("IDENTITY_TOKEN_SECRET must be set in production")
        if v and len(v) < 32:
            logger.warning(
                "IDENTITY_TOKEN_SECRET is shorter than 32 characters (%d)", len(v)
            )
        return v

    def ensure_data_dirs(self) -> None:
        """Create the data directory if it does not exist.

        Called during application startup (lifespan) to avoid import-time
        side effects.
        """
        Path(self.DATA_DIR).mkdir(parents=True, exist_ok=True)


# Thread-safe lazy initialization using lru_cache
@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached application settings instance with lazy initialization.

    Settings are only created once on first access, then cached for subsequent calls.
    """
    return Settings()


def reset_settings() -> None:
    """Reset the cached settings instance.

    Useful for testing when you need to reload settings with different values.
    """
    get_settings.cache_clear()
