import os
from typing import Any, Dict, Optional, Tuple
from pydantic import Field, ValidationError, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from streamrelay.errors import ErrorKind, RelayError
from streamrelay.utils.logging import LEVELS, get_logger

logger = get_logger("Settings")

ADAPTER_TYPES = ("LOCAL_FILE", "EVENT_HUBS")

# field -> (min, max); values outside fall back to the default with a warning
INT_RANGES: Dict[str, Tuple[int, int]] = {
    "BATCH_SIZE": (1, 1000),
    "POLL_TIMEOUT_MS": (100, 60_000),
    "RETRY_DELAY_MS": (100, 300_000),
    "SHUTDOWN_GRACE_PERIOD_MS": (0, 60_000),
    "PENDING_CLAIM_INTERVAL_MS": (1_000, 3_600_000),
    "PENDING_MIN_IDLE_MS": (1_000, 86_400_000),
    "PENDING_CLAIM_COUNT": (1, 10_000),
    "ADMIN_PORT": (1, 65_535),
}


class Settings(BaseSettings):
    """
    Relay configuration, read from the environment and an optional .env file.
    """
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    REDIS_URL: str

    OUTPUT_ADAPTER_TYPE: str = "LOCAL_FILE"
    EVENT_HUB_CONNECTION_STRING: Optional[str] = None
    EVENT_HUB_NAME: Optional[str] = None
    EVENT_HUB_USE_WEBSOCKETS: bool = False
    OUTPUT_DIRECTORY: str = "output"

    STREAM_KEY: str = "telemetry:events"
    CONSUMER_GROUP: str = "eventhub-connector-group"
    CONSUMER_NAME: str = Field(default_factory=lambda: f"connector-instance-{os.getpid()}")
    GROUP_START_ID: str = "$"

    BATCH_SIZE: int = 50
    POLL_TIMEOUT_MS: int = 5000
    RETRY_DELAY_MS: int = 5000
    SHUTDOWN_GRACE_PERIOD_MS: int = 1000
    PENDING_CLAIM_INTERVAL_MS: int = 30_000
    PENDING_MIN_IDLE_MS: int = 60_000
    PENDING_CLAIM_COUNT: int = 100

    DEAD_LETTER_ENABLED: bool = True
    DEAD_LETTER_STREAM: Optional[str] = None

    LOG_LEVEL: str = "info"
    LOG_FORMAT: str = "text"

    ADMIN_ENABLED: bool = False
    ADMIN_PORT: int = 8001

    @property
    def dead_letter_stream(self) -> str:
        return self.DEAD_LETTER_STREAM or f"{self.STREAM_KEY}-dlq"

    @field_validator(*INT_RANGES, mode="before")
    @classmethod
    def _within_range(cls, value: Any, info: ValidationInfo) -> Any:
        low, high = INT_RANGES[info.field_name]
        default = cls.model_fields[info.field_name].default
        try:
            num = int(value)
        except (TypeError, ValueError):
            logger.warning(f"{info.field_name} is not a valid integer. Using default {default}.")
            return default
        if num < low or num > high:
            logger.warning(f"{info.field_name} must be between {low} and {high}. Using default {default}.")
            return default
        return num

    @field_validator("REDIS_URL")
    @classmethod
    def _redis_url(cls, value: str) -> str:
        if not value.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return value

    @field_validator("OUTPUT_ADAPTER_TYPE")
    @classmethod
    def _adapter_type(cls, value: str) -> str:
        if value.upper() not in ADAPTER_TYPES:
            raise ValueError(f"Invalid OUTPUT_ADAPTER_TYPE: '{value}'. Must be 'LOCAL_FILE' or 'EVENT_HUBS'.")
        return value.upper()

    @field_validator("LOG_LEVEL")
    @classmethod
    def _log_level(cls, value: str) -> str:
        if value.lower() not in LEVELS:
            raise ValueError(f"Invalid LOG_LEVEL: '{value}'. Must be one of {', '.join(LEVELS)}.")
        return value.lower()

    @field_validator("LOG_FORMAT")
    @classmethod
    def _log_format(cls, value: str) -> str:
        if value.lower() not in ("text", "json"):
            raise ValueError(f"Invalid LOG_FORMAT: '{value}'. Must be 'text' or 'json'.")
        return value.lower()

    @model_validator(mode="after")
    def _adapter_settings(self) -> "Settings":
        if self.OUTPUT_ADAPTER_TYPE == "EVENT_HUBS" and not (self.EVENT_HUB_CONNECTION_STRING and self.EVENT_HUB_NAME):
            raise ValueError(
                "When using EVENT_HUBS adapter, EVENT_HUB_CONNECTION_STRING and EVENT_HUB_NAME are required."
            )
        if self.OUTPUT_ADAPTER_TYPE == "LOCAL_FILE" and not self.OUTPUT_DIRECTORY:
            raise ValueError("When using LOCAL_FILE adapter, an output directory path is required.")
        return self


def load_settings(**overrides: Any) -> Settings:
    """Build Settings, turning validation failures into RelayError(CONFIGURATION)."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise RelayError(ErrorKind.CONFIGURATION, "Invalid configuration", cause=e) from e
