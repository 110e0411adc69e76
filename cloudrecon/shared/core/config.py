from functools import lru_cache
from typing import Optional

import structlog
from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cloudrecon.shared.core.credentials import AzureCredentials
from cloudrecon.shared.core.exceptions import ConfigurationError

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"

AUTH_METHODS = {"auto", "secret", "default"}


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


def reload_settings_from_environment() -> "Settings":
    """Rebuild cached settings from the current environment."""
    logger = structlog.get_logger()
    get_settings.cache_clear()
    refreshed = get_settings()
    logger.debug("settings_reloaded", environment=refreshed.ENVIRONMENT)
    return refreshed


class Settings(BaseSettings):
    """
    Runtime configuration for cloudrecon.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    APP_NAME: str = "cloudrecon"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Azure identity
    AZURE_TENANT_ID: Optional[str] = None
    AZURE_CLIENT_ID: Optional[str] = None
    AZURE_CLIENT_SECRET: Optional[SecretStr] = None
    AZURE_SUBSCRIPTION_ID: Optional[str] = None
    AZURE_AUTH_METHOD: str = "auto"

    # Microsoft Graph (user provisioning)
    GRAPH_API_URL: str = "https://graph.microsoft.com/v1.0"
    HTTP_TIMEOUT_SECONDS: float = 20.0

    # Reconciliation
    MAX_CONCURRENCY: int = Field(default=1, ge=1, le=32)

    # SMTP Email (deletion audit notifications, notify command)
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[SecretStr] = None
    SMTP_FROM: str = "alerts@cloudrecon.local"
    SMTP_USE_TLS: bool = True
    SMTP_TIMEOUT_SECONDS: float = 30.0

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation grouped by concern."""
        self._validate_environment()
        self._validate_azure_identity()
        self._validate_smtp()
        return self

    def _validate_environment(self) -> None:
        allowed = {ENV_LOCAL, ENV_DEVELOPMENT, ENV_STAGING, ENV_PRODUCTION}
        if self.ENVIRONMENT not in allowed:
            raise ValueError(
                f"ENVIRONMENT must be one of {sorted(allowed)}, got {self.ENVIRONMENT!r}"
            )
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )

    def _validate_azure_identity(self) -> None:
        if self.AZURE_AUTH_METHOD not in AUTH_METHODS:
            raise ValueError(
                f"AZURE_AUTH_METHOD must be one of {sorted(AUTH_METHODS)}"
            )
        if self.AZURE_AUTH_METHOD == "secret":
            missing = [
                name
                for name, value in (
                    ("AZURE_TENANT_ID", self.AZURE_TENANT_ID),
                    ("AZURE_CLIENT_ID", self.AZURE_CLIENT_ID),
                    ("AZURE_CLIENT_SECRET", self.AZURE_CLIENT_SECRET),
                )
                if not value
            ]
            if missing:
                raise ValueError(
                    "AZURE_AUTH_METHOD=secret requires " + ", ".join(missing)
                )

    def _validate_smtp(self) -> None:
        if not (1 <= self.SMTP_PORT <= 65535):
            raise ValueError("SMTP_PORT must be between 1 and 65535")
        if self.SMTP_USER and not self.SMTP_PASSWORD:
            raise ValueError("SMTP_PASSWORD is required when SMTP_USER is set")

    def azure_credentials(self, subscription_id: Optional[str] = None) -> AzureCredentials:
        """Build typed credentials; an explicit subscription id wins over the env."""
        resolved = (subscription_id or self.AZURE_SUBSCRIPTION_ID or "").strip()
        if not resolved:
            raise ConfigurationError(
                "Subscription id is required (--subscription-id or AZURE_SUBSCRIPTION_ID)"
            )
        return AzureCredentials(
            subscription_id=resolved,
            tenant_id=self.AZURE_TENANT_ID,
            client_id=self.AZURE_CLIENT_ID,
            client_secret=self.AZURE_CLIENT_SECRET,
            auth_method=self.AZURE_AUTH_METHOD,
        )
