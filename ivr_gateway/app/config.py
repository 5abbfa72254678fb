"""Runtime configuration for the IVR gateway service."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for IVR gateway runtime behavior.

    Values are loaded from environment variables, with `.env` used for local
    development defaults.

    Attributes:
        PUBLIC_HOST: Public hostname used when constructing callback URLs.
        PUBLIC_PROTOCOL: URL scheme (`http` or `https`) for public endpoints.
        GATEWAY_PORT: Local port where the gateway listens.
        PUBLIC_BASE_URL: Optional explicit public base URL override.
        LOG_LEVEL: Application log verbosity.
        OBSERVABILITY_LOG_LEVEL: Log level for observability internals.
        ENTRY_MACHINE: Name of the state machine that answers new calls.
        SESSION_TTL_SECONDS: Idle time after which an abandoned call session
            is evicted. ``0`` disables eviction.
        SESSION_SWEEP_INTERVAL_SECONDS: Cadence of the stale-session sweeper.
        EVENT_BUS_QUEUE_SIZE: Per-subscriber event queue bound.
        REQUEST_TIMEOUT_SECONDS: Maximum time a webhook waits for the call
            processor before answering with a generic failure.
        COMPLETED_CALL_STATUSES: Twilio `CallStatus` values that end a call.
        DB_CONNECTION_STRING: Optional observability database connection string.
        DB_POOL_MAX_SIZE: Upper bound of the call-event connection pool.
        VALIDATE_TWILIO_SIGNATURES: Whether to enforce Twilio signature checks.
        TWILIO_AUTH_TOKEN: Auth token used to validate Twilio signatures.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    PUBLIC_HOST: str = "localhost"
    PUBLIC_PROTOCOL: str = "http"
    GATEWAY_PORT: int = Field(default=8080, ge=1, le=65535)
    PUBLIC_BASE_URL: str | None = None
    LOG_LEVEL: str = "info"
    OBSERVABILITY_LOG_LEVEL: str = "info"
    ENTRY_MACHINE: str = "main_menu"
    SESSION_TTL_SECONDS: float = Field(default=4 * 60 * 60, ge=0)
    SESSION_SWEEP_INTERVAL_SECONDS: float = Field(default=60.0, gt=0)
    EVENT_BUS_QUEUE_SIZE: int = Field(default=1000, ge=1)
    REQUEST_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    COMPLETED_CALL_STATUSES: list[str] = Field(
        default_factory=lambda: ["completed", "busy", "failed", "no-answer", "canceled"]
    )
    DB_CONNECTION_STRING: str | None = None
    DB_POOL_MAX_SIZE: int = Field(default=10, ge=1)

    # Twilio webhook validation. Keep enabled in production.
    VALIDATE_TWILIO_SIGNATURES: bool = True
    TWILIO_AUTH_TOKEN: str = ""

    @property
    def public_voice_url(self) -> str:
        """Builds the public HTTP base URL used for webhook callbacks.

        Returns:
            External HTTP(S) base URL for Twilio webhook requests.
        """
        return self.PUBLIC_BASE_URL or (
            f"{self.PUBLIC_PROTOCOL}://{self.PUBLIC_HOST}:{self.GATEWAY_PORT}"
        )


settings = Settings()
