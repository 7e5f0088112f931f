from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from platformdirs import user_cache_dir, user_data_dir
from pydantic import BaseModel, ConfigDict, Field, field_validator

from . import config_constants


# SKIP .env loading in test environments - tests should use Config objects and
# environment variables directly, never rely on .env files
def _is_test_environment() -> bool:
    """Check if we're running in a test environment."""
    import sys

    if "pytest" in sys.modules or "PYTEST_CURRENT_TEST" in os.environ:
        return True
    if "unittest" in sys.modules:
        return True
    if os.environ.get("TESTING", "").lower() in ("1", "true", "yes"):
        return True
    return False


if not _is_test_environment():
    try:
        load_dotenv(override=False)
    except (PermissionError, OSError):
        # Continue without .env file
        pass

# Re-exported for convenience
DEFAULT_LOG_LEVEL = config_constants.DEFAULT_LOG_LEVEL
VALID_LOG_LEVELS = config_constants.VALID_LOG_LEVELS

ENV_STATE_DIR = "HOTLINE_STATE_DIR"
ENV_CACHE_DIR = "HOTLINE_CACHE_DIR"
ENV_LOG_FILE = "LOG_FILE"
ENV_AD_PROVIDER_API_KEY = "AD_PROVIDER_API_KEY"
EPISODE_CACHE_SUBDIR = "episodes"


def default_state_dir() -> str:
    return os.getenv(ENV_STATE_DIR) or user_data_dir(config_constants.APP_NAME)


def default_cache_dir() -> str:
    env_value = os.getenv(ENV_CACHE_DIR)
    if env_value:
        return env_value
    return str(Path(user_cache_dir(config_constants.APP_NAME)) / EPISODE_CACHE_SUBDIR)


def _strip_optional(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class ChannelConfig(BaseModel):
    """A dial-pad channel backed by a podcast feed."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    name: str
    rss_url: str = Field(alias="rss")

    @field_validator("rss_url", mode="before")
    @classmethod
    def _strip_rss(cls, value: Any) -> str:
        return str(value).strip() if value is not None else ""


class Config(BaseModel):
    """Runtime configuration for the hotline core.

    Directory defaults come from ``platformdirs`` unless ``HOTLINE_STATE_DIR`` /
    ``HOTLINE_CACHE_DIR`` are set. File locations left unset live inside
    ``state_dir``.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    state_dir: str = Field(default_factory=default_state_dir)
    cache_dir: str = Field(default_factory=default_cache_dir)
    ad_config_file: Optional[str] = None
    exempt_numbers_file: Optional[str] = None
    sessions_file: Optional[str] = None
    ad_provider_api_key: Optional[str] = None

    user_agent: str = config_constants.DEFAULT_USER_AGENT
    validation_user_agent: str = config_constants.DEFAULT_VALIDATION_USER_AGENT
    feed_timeout: float = config_constants.DEFAULT_FEED_TIMEOUT_SECONDS
    resolve_timeout: float = config_constants.DEFAULT_RESOLVE_TIMEOUT_SECONDS
    download_timeout: float = config_constants.DEFAULT_DOWNLOAD_TIMEOUT_SECONDS
    provider_timeout: float = config_constants.DEFAULT_PROVIDER_TIMEOUT_SECONDS
    max_redirects: int = config_constants.DEFAULT_MAX_REDIRECTS
    resolve_retries: int = config_constants.DEFAULT_RESOLVE_RETRIES
    resolve_retry_delay: float = config_constants.DEFAULT_RESOLVE_RETRY_DELAY_SECONDS
    max_feed_items: int = config_constants.DEFAULT_MAX_FEED_ITEMS
    min_feed_bytes: int = config_constants.DEFAULT_MIN_FEED_BYTES

    temporary_ttl_hours: float = config_constants.DEFAULT_TEMPORARY_TTL_HOURS
    session_ttl_days: float = config_constants.DEFAULT_SESSION_TTL_DAYS
    zipcode_ttl_days: float = config_constants.DEFAULT_ZIPCODE_TTL_DAYS
    idle_session_timeout_seconds: float = config_constants.DEFAULT_IDLE_SESSION_TIMEOUT_SECONDS
    idle_reap_interval_seconds: float = config_constants.DEFAULT_IDLE_REAP_INTERVAL_SECONDS

    default_playback_speed: float = config_constants.DEFAULT_PLAYBACK_SPEED
    resume_threshold_seconds: int = config_constants.DEFAULT_RESUME_THRESHOLD_SECONDS
    ad_break_interval_seconds: int = config_constants.DEFAULT_AD_BREAK_INTERVAL_SECONDS
    session_sweep_interval_seconds: float = config_constants.DEFAULT_SESSION_SWEEP_INTERVAL_SECONDS

    channels: Dict[str, ChannelConfig] = Field(default_factory=dict)

    log_level: str = DEFAULT_LOG_LEVEL
    log_file: Optional[str] = None

    @field_validator("state_dir", "cache_dir", mode="before")
    @classmethod
    def _expand_dir(cls, value: Any) -> str:
        if value is None or not str(value).strip():
            raise ValueError("directory must not be empty")
        return str(Path(str(value).strip()).expanduser())

    @field_validator("ad_config_file", "exempt_numbers_file", "sessions_file", mode="before")
    @classmethod
    def _strip_paths(cls, value: Any) -> Optional[str]:
        return _strip_optional(value)

    @field_validator("ad_provider_api_key", mode="before")
    @classmethod
    def _load_api_key_from_env(cls, value: Any) -> Optional[str]:
        """Config value wins; otherwise fall back to AD_PROVIDER_API_KEY."""
        explicit = _strip_optional(value)
        if explicit:
            return explicit
        return _strip_optional(os.getenv(ENV_AD_PROVIDER_API_KEY))

    @field_validator("user_agent", "validation_user_agent", mode="after")
    @classmethod
    def _validate_user_agent(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("user agent must not be empty")
        return value.strip()

    @field_validator(
        "feed_timeout", "resolve_timeout", "download_timeout", "provider_timeout", mode="after"
    )
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value < config_constants.MIN_TIMEOUT_SECONDS:
            raise ValueError(f"timeout must be at least {config_constants.MIN_TIMEOUT_SECONDS}s")
        return value

    @field_validator("max_redirects", "resolve_retry_delay", "resume_threshold_seconds", mode="after")
    @classmethod
    def _validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must be non-negative")
        return value

    @field_validator(
        "resolve_retries",
        "max_feed_items",
        "temporary_ttl_hours",
        "session_ttl_days",
        "zipcode_ttl_days",
        "idle_session_timeout_seconds",
        "idle_reap_interval_seconds",
        "default_playback_speed",
        "ad_break_interval_seconds",
        "session_sweep_interval_seconds",
        mode="after",
    )
    @classmethod
    def _validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("min_feed_bytes", mode="after")
    @classmethod
    def _validate_min_feed_bytes(cls, value: int) -> int:
        if value < 0:
            raise ValueError("min_feed_bytes must be non-negative")
        return value

    @field_validator("channels", mode="before")
    @classmethod
    def _stringify_channel_ids(cls, value: Any) -> Any:
        # YAML reads dial-pad keys as integers
        if isinstance(value, dict):
            return {str(key): channel for key, channel in value.items()}
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: Any) -> str:
        if value is None:
            return DEFAULT_LOG_LEVEL
        return str(value).strip().upper() or DEFAULT_LOG_LEVEL

    @field_validator("log_level", mode="after")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        if value not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {VALID_LOG_LEVELS}, got: {value}")
        return value

    @field_validator("log_file", mode="before")
    @classmethod
    def _load_log_file_from_env(cls, value: Any) -> Optional[str]:
        """Config value wins; otherwise fall back to LOG_FILE."""
        explicit = _strip_optional(value)
        if explicit:
            return explicit
        return _strip_optional(os.getenv(ENV_LOG_FILE))

    @property
    def ad_config_path(self) -> Path:
        return Path(self.ad_config_file or Path(self.state_dir) / config_constants.AD_CONFIG_FILENAME)

    @property
    def exempt_numbers_path(self) -> Path:
        return Path(
            self.exempt_numbers_file
            or Path(self.state_dir) / config_constants.EXEMPT_NUMBERS_FILENAME
        )

    @property
    def sessions_path(self) -> Path:
        return Path(self.sessions_file or Path(self.state_dir) / config_constants.SESSIONS_FILENAME)

    def feed_urls(self) -> Dict[str, str]:
        """Channel id -> RSS URL for every configured channel."""
        return {channel_id: channel.rss_url for channel_id, channel in self.channels.items()}


def load_config_file(path: str) -> Dict[str, Any]:
    """Load configuration from a JSON or YAML file.

    The format is picked from the extension (``.json``, ``.yaml`` or ``.yml``);
    the result can be unpacked into ``Config``.

    Raises:
        ValueError: if the path is empty, missing, unreadable, of an unsupported
            type, fails to parse, or does not contain a mapping
    """
    if not path:
        raise ValueError("Config path cannot be empty")

    cfg_path = Path(path).expanduser()
    try:
        resolved = cfg_path.resolve()
    except (OSError, RuntimeError) as exc:
        raise ValueError(f"Invalid config path: {path} ({exc})") from exc

    if not resolved.exists():
        raise ValueError(f"Config file not found: {resolved}")

    suffix = resolved.suffix.lower()
    try:
        text = resolved.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValueError(f"Failed to read config file {resolved}: {exc}") from exc

    if suffix == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON config file {resolved}: {exc}") from exc
    elif suffix in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:  # type: ignore[attr-defined]
            raise ValueError(f"Invalid YAML config file {resolved}: {exc}") from exc
    else:
        raise ValueError(f"Unsupported config file type: {resolved.suffix}")

    if not isinstance(data, dict):
        raise ValueError("Config file must contain a mapping/object at the top level")
    return data
