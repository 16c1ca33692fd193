# app/core/config.py
from __future__ import annotations

import secrets
import warnings
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings, loaded from environment variables and/or .env file.
    """

    # Environment settings
    APP_NAME: str = "Login Security Service"
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # Security / auth
    SECRET_KEY: str = Field(default="", repr=False)
    SECRET_KEY_AUTO_GENERATED: bool = False
    CORS_ALLOW_ORIGINS: List[str] = Field(
        default_factory=lambda: ["http://localhost:3000"],
        description="Comma-delimited list of allowed origins",
    )
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRES_MINUTES: int = 60 * 24 * 7
    JWT_ISSUER: Optional[str] = None

    # Database settings (durable login activity log)
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = Field(default="password", repr=False)
    POSTGRES_DB: str = "login_security"
    POSTGRES_SERVER: str = "db"
    POSTGRES_PORT: int = 5432
    DATABASE_URL: Optional[str] = Field(default=None, repr=False)
    DB_AUTO_CREATE: bool = False

    # Redis settings (ephemeral session store)
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    # Observability settings
    SENTRY_DSN: Optional[str] = None

    # Sessions
    SESSION_TTL_SECONDS: int = 30 * 24 * 3600
    SESSION_KEY_PREFIX: str = "sess:"
    USER_SESSIONS_KEY_PREFIX: str = "user:"

    # Suspicious activity detection
    DETECTION_HISTORY_DAYS: int = 30
    DETECTION_HISTORY_LIMIT: int = 50
    FAILED_ATTEMPT_WINDOW_HOURS: int = 24
    FAILED_ATTEMPT_THRESHOLD: int = 3

    # Login activity queries
    LOGIN_ACTIVITY_DEFAULT_LIMIT: int = 30
    LOGIN_ACTIVITY_MAX_LIMIT: int = 100

    # Device management
    DEVICE_NAME_MAX_LENGTH: int = 50

    # Security endpoint rate limiting
    SECURITY_RATE_LIMIT_REQUESTS: int = 20
    SECURITY_RATE_LIMIT_WINDOW_SECONDS: int = 15 * 60

    # Outbound collaborators
    USER_SERVICE_URL: Optional[str] = None
    MAILER_SERVICE_URL: Optional[str] = None
    COLLABORATOR_TOKEN: Optional[str] = Field(default=None, repr=False)
    COLLABORATOR_TIMEOUT_SECONDS: float = 5.0

    # Request context extraction
    TRUST_PROXY_HEADERS: bool = True
    GEOIP_DATABASE_PATH: Optional[str] = None

    @property
    def database_url(self) -> str:
        """Return DATABASE_URL if set, otherwise build the Postgres URL."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    @property
    def redis_url(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @field_validator("CORS_ALLOW_ORIGINS", mode="before")
    @classmethod
    def _split_origins(cls, value: str | List[str]) -> List[str]:
        """Allow comma-separated strings for origins env var."""
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _ensure_secret_key(self) -> "Settings":
        """Guarantee SECRET_KEY is present in non-development environments."""
        secret = (self.SECRET_KEY or "").strip()
        environment = (self.APP_ENV or "development").lower()

        if not secret or secret.lower() == "change-me":
            if environment in {"development", "test", "testing"}:
                # Session tokens signed with this key die with the process.
                generated = secrets.token_urlsafe(48)
                self.SECRET_KEY = generated
                self.SECRET_KEY_AUTO_GENERATED = True
                warnings.warn(
                    (
                        "SECRET_KEY was not provided; generated ephemeral key for "
                        f"{environment} environment. "
                        "Do not use this configuration in production."
                    ),
                    RuntimeWarning,
                )
            else:
                raise ValueError(
                    (
                        "SECRET_KEY must be set for secure operation. "
                        "Set SECRET_KEY in the environment or .env file before "
                        "starting the service."
                    )
                )
        return self

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


settings = Settings()
