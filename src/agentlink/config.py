"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in agentlink.toml. Secrets (API keys) live in .env.
Environment variables override both, prefixed with ``AGENTLINK_`` and using
``__`` as the nested delimiter (e.g. ``AGENTLINK_CONNECTOR__BACKEND_URL``).

Priority (highest wins): init args > env vars > .env > agentlink.toml

Usage::

    from agentlink.config import get_settings

    s = get_settings()
    print(s.connector.backend_url)
    print(s.registration_path)
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# Chat message polling below this is rejected by the hub's rate limiter.
MIN_MESSAGE_POLL_INTERVAL = 10.0

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in agentlink.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models; reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


def _require_positive(v: float) -> float:
    if v <= 0:
        raise ValueError("must be positive")
    return v


class ConnectorConfig(_StrictModel):
    enabled: bool = True
    backend_url: str = "https://dev-mining.api.pinai.tech"
    api_prefix: str = "/connector/pinai"
    device_type: Literal["desktop"] = "desktop"
    device_name_prefix: str = "AgentLink-Desktop"
    auto_pair: bool = True  # begin pairing at startup when unregistered
    heartbeat_interval: float = 30.0  # seconds
    command_poll_interval: float = 5.0  # seconds
    command_poll_limit: int = 10
    qr_code_timeout: float = 300.0  # seconds
    pairing_poll_interval: float = 5.0  # seconds
    pairing_max_attempts: int = 60
    context_report_interval_hours: float = 24.0

    @field_validator(
        "heartbeat_interval",
        "command_poll_interval",
        "qr_code_timeout",
        "pairing_poll_interval",
        "context_report_interval_hours",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        return _require_positive(v)

    @field_validator("command_poll_limit", "pairing_max_attempts")
    @classmethod
    def clamp_counts(cls, v: int) -> int:
        return max(1, v)

    @field_validator("backend_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class ChatConfig(_StrictModel):
    hub_url: str = "https://agents.pinai.tech"
    heartbeat_interval: float = 60.0  # seconds
    message_poll_interval: float = 15.0  # seconds, floored at MIN_MESSAGE_POLL_INTERVAL
    message_fetch_limit: int = 50
    auto_reply: bool = True
    api_key: SecretStr | None = None  # overrides the stored credential's key

    @field_validator("heartbeat_interval")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        return _require_positive(v)

    @field_validator("message_poll_interval")
    @classmethod
    def floor_poll_interval(cls, v: float) -> float:
        return max(MIN_MESSAGE_POLL_INTERVAL, v)

    @field_validator("hub_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class RetryConfig(_StrictModel):
    max_retries: int = 5
    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    multiplier: float = 2.0
    jitter: float = 0.3
    tick_max_retries: int = 2  # retries for a single poller tick

    @field_validator("jitter")
    @classmethod
    def validate_jitter(cls, v: float) -> float:
        if not 0 <= v <= 1:
            raise ValueError("jitter must be between 0 and 1")
        return v

    @field_validator("max_retries", "tick_max_retries")
    @classmethod
    def clamp_retries(cls, v: int) -> int:
        return max(0, v)


class NetworkConfig(_StrictModel):
    probe_url: str = "https://www.google.com/generate_204"
    probe_interval: float = 30.0  # seconds
    probe_timeout: float = 5.0  # seconds
    limited_threshold: int = 5  # consecutive failures → "limited" tier
    circuit_breaker_threshold: int = 10


class TimeoutsConfig(_StrictModel):
    request: float = 10.0  # heartbeat / poll / report calls
    execution: float = 300.0  # executor calls


class ExecutorConfig(_StrictModel):
    command: list[str] = []  # argv; the prompt is appended. Empty = no executor.
    workspace_dir: str | None = None  # None → current directory


class ServerConfig(_StrictModel):
    host: str = "127.0.0.1"
    port: int = 8585


class StorageConfig(_StrictModel):
    dir: str | None = None  # None → ~/.agentlink


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="agentlink.toml",
        env_file=".env",
        env_prefix="AGENTLINK_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    connector: ConnectorConfig = ConnectorConfig()
    chat: ChatConfig = ChatConfig()
    retry: RetryConfig = RetryConfig()
    network: NetworkConfig = NetworkConfig()
    timeouts: TimeoutsConfig = TimeoutsConfig()
    executor: ExecutorConfig = ExecutorConfig()
    server: ServerConfig = ServerConfig()
    storage: StorageConfig = StorageConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > agentlink.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def storage_dir(self) -> Path:
        if self.storage.dir:
            return Path(self.storage.dir).expanduser().resolve()
        return Path.home() / ".agentlink"

    @cached_property
    def registration_path(self) -> Path:
        return self.storage_dir / "registration.json"

    @cached_property
    def chat_credentials_path(self) -> Path:
        return self.storage_dir / "chat-credentials.json"

    @cached_property
    def pending_sync_path(self) -> Path:
        return self.storage_dir / "cache" / "pending-sync.json"

    @cached_property
    def workspace_dir(self) -> Path:
        if self.executor.workspace_dir:
            return Path(self.executor.workspace_dir).expanduser().resolve()
        return Path.cwd()

    @cached_property
    def pairing_api_url(self) -> str:
        return f"{self.connector.backend_url}{self.connector.api_prefix}"

    @cached_property
    def context_report_interval(self) -> float:
        """Seconds between work-context reports."""
        return self.connector.context_report_interval_hours * 3600


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
