"""Bot configuration loading and validation."""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar, Dict, Iterable, Literal

import yaml
from pydantic import AnyUrl, Field, NonNegativeInt, PositiveFloat, PositiveInt
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from guildbot.intents import Intents

DEFAULT_CONFIG_LOCATIONS: tuple[Path, ...] = (
    Path("/etc/guildbot/bot.yaml"),
    Path("/etc/guildbot/bot.yml"),
    Path("./config/bot.yaml"),
    Path("./config/bot.yml"),
)


class BotSettings(BaseSettings):
    """Validated settings for a bot client."""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_prefix="GUILDBOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Credentials
    app_id: str | None = Field(
        default=None,
        description="Application id used to obtain access tokens.",
    )
    client_secret: str | None = Field(
        default=None,
        description="Application secret exchanged for access tokens.",
        repr=False,
    )
    bot_token: str | None = Field(
        default=None,
        description="Pre-issued bearer string; skips the access token exchange when set.",
        repr=False,
    )
    token_url: AnyUrl = Field(
        default="https://bots.qq.com/app/getAppAccessToken",
        description="Endpoint that exchanges app credentials for an access token.",
    )
    token_refresh_margin_seconds: NonNegativeInt = Field(
        default=60,
        description="Refresh access tokens this many seconds before they expire.",
    )

    # Endpoints
    api_base_url: AnyUrl = Field(
        default="https://api.sgroup.qq.com",
        description="REST API base URL.",
    )
    sandbox_api_base_url: AnyUrl = Field(
        default="https://sandbox.api.sgroup.qq.com",
        description="REST API base URL used when sandbox is enabled.",
    )
    sandbox: bool = Field(
        default=False,
        description="Route REST calls to the sandbox environment.",
    )
    gateway_url: AnyUrl | None = Field(
        default=None,
        description="Gateway WebSocket URL; discovered via /gateway/bot when unset.",
    )
    transport: Literal["dummy", "websocket"] = Field(
        default="websocket",
        description="Gateway transport implementation to use.",
    )

    # Identify
    intents: int = Field(
        default=int(Intents.default()),
        description="Intent bitmask declared at identify time (int or list of names).",
    )
    shard_id: NonNegativeInt = Field(default=0, description="Shard handled by this session.")
    shard_count: PositiveInt = Field(default=1, description="Total number of shards.")
    client_name: str = Field(
        default="guildbot",
        description="Library name presented in the identify properties block.",
    )

    # Heartbeat
    heartbeat_interval_override_seconds: PositiveFloat | None = Field(
        default=None,
        description="Use this interval instead of the one announced in hello.",
    )
    heartbeat_jitter_ratio: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Random jitter added to each heartbeat tick as a fraction of the interval.",
    )
    heartbeat_timeout_factor: PositiveFloat = Field(
        default=2.0,
        description="Connection is dead when no ack arrives within factor * interval.",
    )
    hello_timeout_seconds: PositiveFloat = Field(
        default=10.0,
        description="Seconds to wait for the hello frame after the socket opens.",
    )

    # Reconnection
    reconnect_base_delay_seconds: PositiveFloat = Field(
        default=1.0,
        description="Base delay for reconnection backoff.",
    )
    reconnect_max_delay_seconds: PositiveFloat = Field(
        default=60.0,
        description="Maximum delay for reconnection backoff.",
    )
    reconnect_jitter: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Jitter factor applied to reconnection backoff (0.0-1.0).",
    )
    reconnect_reset_after_seconds: PositiveFloat = Field(
        default=60.0,
        description="A connected period at least this long resets the backoff.",
    )
    reconnect_max_attempts: NonNegativeInt = Field(
        default=10,
        description="Consecutive failed connection cycles before giving up (0 = unlimited).",
    )
    protocol_error_threshold: PositiveInt = Field(
        default=5,
        description="Consecutive protocol errors on one socket that force a reconnect.",
    )

    # Shutdown
    close_timeout_seconds: PositiveFloat = Field(
        default=2.0,
        description="Seconds to wait for the close handshake before aborting the socket.",
    )
    stop_timeout_seconds: PositiveFloat = Field(
        default=5.0,
        description="Upper bound for stop() before loops are force-cancelled.",
    )

    # Dispatch
    dispatch_mode: Literal["sequential", "concurrent"] = Field(
        default="sequential",
        description="Sequential keeps arrival order; concurrent runs one task per event.",
    )
    dispatch_queue_max: NonNegativeInt = Field(
        default=0,
        description=(
            "Maximum queued dispatch frames before the receive loop waits (0 = unbounded). "
            "While it waits no heartbeat acks are read, so a handler slower than the heartbeat "
            "deadline forces a reconnect."
        ),
    )

    # HTTP
    http_timeout_seconds: PositiveFloat = Field(
        default=30.0,
        description="Timeout for a single REST request.",
    )
    http_max_retries: NonNegativeInt = Field(
        default=3,
        description="Retries for REST calls failing with 5xx or a timeout.",
    )
    http_retry_base_delay_seconds: PositiveFloat = Field(
        default=0.5,
        description="Base delay between REST retries (doubled per attempt).",
    )

    # Rate limiting
    ratelimit_max_wait_seconds: PositiveFloat = Field(
        default=300.0,
        description="Longest a caller is suspended by the rate limiter before it fails.",
    )
    ratelimit_max_inflight: NonNegativeInt = Field(
        default=0,
        description="Global cap on concurrent in-flight REST calls (0 = unlimited).",
    )
    ratelimit_default_window_seconds: PositiveFloat = Field(
        default=1.0,
        description="Window assumed for a bucket whose reset time is unknown.",
    )
    identify_limit: PositiveInt = Field(
        default=1,
        description="Identify/resume attempts allowed per identify window.",
    )
    identify_window_seconds: PositiveFloat = Field(
        default=5.0,
        description="Length of the identify window.",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Minimum log level for the bot process.",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        if isinstance(value, str):
            return value.upper()
        return value

    @field_validator("intents", mode="before")
    @classmethod
    def _parse_intents(cls, value: Any) -> int:
        return int(Intents.parse(value))

    @model_validator(mode="after")
    def _check_shard(self) -> BotSettings:
        if self.shard_id >= self.shard_count:
            raise ValueError(f"shard_id {self.shard_id} must be lower than shard_count {self.shard_count}")
        return self

    config_path: Path | None = Field(
        default=None,
        description="Resolved path to the on-disk config that seeded the settings.",
        exclude=True,
    )

    @property
    def rest_base_url(self) -> str:
        base = self.sandbox_api_base_url if self.sandbox else self.api_base_url
        return str(base).rstrip("/")

    @property
    def shard(self) -> tuple[int, int]:
        return (self.shard_id, self.shard_count)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BotSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            cls._yaml_settings_source,
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    @staticmethod
    def _yaml_settings_source(settings_cls: type[BotSettings] | None = None) -> Dict[str, Any]:
        candidates: Iterable[Path] = BotSettings._resolve_candidate_paths()

        for path in candidates:
            data = BotSettings._load_file(path)
            if data is not None:
                data.setdefault("config_path", path)
                return data
        return {}

    @staticmethod
    def _resolve_candidate_paths() -> Iterable[Path]:
        explicit = os.getenv("GUILDBOT_CONFIG_FILE")
        if explicit:
            yield Path(explicit).expanduser()
        yield from DEFAULT_CONFIG_LOCATIONS

    @staticmethod
    def _load_file(path: Path) -> Dict[str, Any] | None:
        if not path.is_file():
            return None
        suffix = path.suffix.lower()
        try:
            with path.open("r", encoding="utf-8") as handle:
                if suffix in {".yaml", ".yml"}:
                    raw = yaml.safe_load(handle)
                elif suffix == ".json":
                    raw = json.load(handle)
                else:
                    return None
        except OSError as exc:
            raise RuntimeError(f"Failed to read bot config file {path}") from exc
        except (yaml.YAMLError, json.JSONDecodeError) as exc:
            raise ValueError(f"Invalid bot config file {path}") from exc

        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ValueError(f"Bot config file {path} must contain a mapping at top level.")
        return raw


@lru_cache()
def get_settings() -> BotSettings:
    """Return memoized bot settings."""

    return BotSettings()
