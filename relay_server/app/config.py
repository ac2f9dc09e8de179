"""Runtime configuration for the realtime session relay."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for relay runtime behavior.

    Values are loaded from environment variables, with `.env` used for local
    development defaults.

    Attributes:
        RELAY_HOST: Interface the relay binds to.
        RELAY_PORT: Local port where the relay listens.
        OPENAI_API_KEY: Credential attached to every upstream connection. It
            is never sent back to relay clients.
        OPENAI_REALTIME_URL: Optional explicit upstream websocket URL override.
        OPENAI_REALTIME_MODEL: Realtime model identifier used when building
            the default upstream URL.
        OPENAI_BETA_HEADER: Protocol marker sent as `OpenAI-Beta`.
        RELAY_CONNECT_TIMEOUT_S: Upstream websocket opening handshake timeout.
        RELAY_CLOSE_TIMEOUT_S: Upstream websocket closing handshake timeout.
        RELAY_LOG_SAMPLE_EVERY_N: Frame sampling cadence when verbose frame
            logging is disabled.
        VERBOSE_RELAY_FRAME_LOGGING: Enables per-frame debug logging.
        LOG_LEVEL: Application log verbosity.
        WEBSOCKETS_LOG_LEVEL: Log level for `websockets` library internals.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    RELAY_HOST: str = "0.0.0.0"
    RELAY_PORT: int = 8081
    OPENAI_API_KEY: str = ""
    OPENAI_REALTIME_URL: str | None = None
    OPENAI_REALTIME_MODEL: str = "gpt-4o-realtime-preview-2024-10-01"
    OPENAI_BETA_HEADER: str = "realtime=v1"
    RELAY_CONNECT_TIMEOUT_S: float = Field(default=10.0, gt=0)
    RELAY_CLOSE_TIMEOUT_S: float = Field(default=5.0, gt=0)
    RELAY_LOG_SAMPLE_EVERY_N: int = Field(default=200, ge=1)
    VERBOSE_RELAY_FRAME_LOGGING: bool = False
    LOG_LEVEL: str = "info"
    WEBSOCKETS_LOG_LEVEL: str = "info"

    @property
    def upstream_url(self) -> str:
        """Builds the upstream realtime websocket URL.

        Returns:
            Explicit override or the default realtime endpoint for the
            configured model.
        """
        return self.OPENAI_REALTIME_URL or (
            f"wss://api.openai.com/v1/realtime?model={self.OPENAI_REALTIME_MODEL}"
        )


settings = Settings()
