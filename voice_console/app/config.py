"""Runtime configuration for the voice console."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.schemas import TurnDetectionMode

DEFAULT_INSTRUCTIONS = """System settings:
Tool use: enabled.

Instructions:
- You are an artificial intelligence agent responsible for helping test realtime voice capabilities
- Please make sure to respond with a helpful voice via audio
- Be kind, helpful, and courteous
- It is okay to ask the user questions
- Use tools and functions you have available liberally, it is part of the training apparatus
- Be open to exploration and conversation
- Remember: this is just for fun and testing!

Personality:
- Be upbeat and genuine
- Try speaking quickly as if excited
"""


class Settings(BaseSettings):
    """Environment-backed settings for console runtime behavior.

    Attributes:
        RELAY_URL: Websocket URL of the session relay.
        AUDIO_SAMPLE_RATE: PCM16 sample rate for capture and playback.
        CAPTURE_FRAME_MS: Duration of one captured frame.
        TURN_DETECTION: Initial turn-detection mode (`none` or `server_vad`).
        INSTRUCTIONS: System instructions applied on connect.
        TRANSCRIPTION_MODEL: Model used for input-audio transcription.
        GREETING_TEXT: First user message sent after connecting.
        CONTEXT_URL: Retrieval endpoint queried with user transcripts.
        WEATHER_URL: Forecast endpoint used by the `get_weather` tool.
        HTTP_TIMEOUT_S: Timeout for retrieval and tool HTTP requests.
        AVATAR_RESPONSE_IDLE_HOLD_MS: Delay before idling once a response
            completes.
        AVATAR_ITEM_IDLE_HOLD_MS: Delay before idling once an assistant item
            completes.
        MAX_CONSECUTIVE_PROTOCOL_ERRORS: Malformed inbound events tolerated
            in a row before the session is closed.
        DEFAULT_LAT: Initial map latitude.
        DEFAULT_LNG: Initial map longitude.
        LOG_LEVEL: Application log verbosity.
        WEBSOCKETS_LOG_LEVEL: Log level for `websockets` library internals.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    RELAY_URL: str = "ws://localhost:8081"
    AUDIO_SAMPLE_RATE: int = Field(default=24000, ge=8000)
    CAPTURE_FRAME_MS: int = Field(default=100, ge=10)
    TURN_DETECTION: TurnDetectionMode = TurnDetectionMode.MANUAL
    INSTRUCTIONS: str = DEFAULT_INSTRUCTIONS
    TRANSCRIPTION_MODEL: str = "whisper-1"
    GREETING_TEXT: str = "Hello!"
    CONTEXT_URL: str = "http://localhost:3000/api/context"
    WEATHER_URL: str = "https://api.open-meteo.com/v1/forecast"
    HTTP_TIMEOUT_S: float = Field(default=10.0, gt=0)
    AVATAR_RESPONSE_IDLE_HOLD_MS: int = Field(default=300, ge=0)
    AVATAR_ITEM_IDLE_HOLD_MS: int = Field(default=500, ge=0)
    MAX_CONSECUTIVE_PROTOCOL_ERRORS: int = Field(default=5, ge=1)
    DEFAULT_LAT: float = 37.775593
    DEFAULT_LNG: float = -122.418137
    LOG_LEVEL: str = "info"
    WEBSOCKETS_LOG_LEVEL: str = "info"

    @property
    def capture_frame_samples(self) -> int:
        """Number of samples in one captured frame."""
        return self.AUDIO_SAMPLE_RATE * self.CAPTURE_FRAME_MS // 1000


settings = Settings()
