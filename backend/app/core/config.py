"""Tracker configuration.

Settings are built once at startup and passed by reference into each
component's constructor; nothing reads the environment after that.

Sources, lowest precedence first:
- Field defaults below.
- Optional YAML file named by TRACKER_CONFIG_YAML (keys are field names).
- Environment variables (after loading .env files if present).
"""

from __future__ import annotations

import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Final, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from app.core.env import load_env_if_present
from tracker.core.backoff import RetryPolicy
from tracker.core.errors import ConfigError
from tracker.core.live_feed import MEMPOOL_WS_URL, TIP_HEIGHT_URL
from tracker.core.network_client import DEFAULT_API_URL, DEFAULT_KEY_INFO_URL

logger = logging.getLogger(__name__)

CONFIG_YAML_ENV: Final[str] = "TRACKER_CONFIG_YAML"
PLACEHOLDER_MARKERS: Final[tuple[str, ...]] = ("your-", "add-", "example")


def is_usable_key(key: str) -> bool:
    return len(key) > 10 and not any(marker in key for marker in PLACEHOLDER_MARKERS)


class TrackerSettings(BaseModel):
    """Every tunable of the tracker, with production defaults."""

    # Credentials & request diversity
    api_keys: list[str] = Field(default_factory=list)
    user_agents: list[str] = Field(default_factory=lambda: ["Bitmap-Block-Tracker/1.0"])
    proxies: list[str] = Field(default_factory=list)
    use_proxy_rotation: bool = False
    rotate_request_headers: bool = True

    # Endpoints
    api_url: str = DEFAULT_API_URL
    key_info_url: str = DEFAULT_KEY_INFO_URL
    ws_url: str = MEMPOOL_WS_URL
    tip_height_url: str = TIP_HEIGHT_URL

    # Files
    csv_file: Path = Path("bitmap_data.csv")
    empty_ledger_file: Path = Path("bitmap_empty.txt")
    progress_file: Path = Path("backfill_progress.json")

    # Rate limits (per key)
    max_requests_per_day_per_key: int = Field(default=2000, gt=0)
    daily_limit_buffer: int = Field(default=50, ge=0)
    request_interval_ms: int = Field(default=220, ge=0)

    # Retry / cooldown
    retry_delay_ms: int = Field(default=5000, gt=0)
    max_retry_delay_ms: int = Field(default=30000, gt=0)
    max_retries: int = Field(default=2, ge=0)
    rate_limit_cooldown_ms: int = Field(default=60000, ge=0)
    daily_limit_cooldown_ms: int = Field(default=3600000, ge=0)

    # Backfill
    historical_start_block: int = Field(default=840000, ge=0)
    backfill_chunk_size: int = Field(default=1000, gt=0)
    sort_every: int = Field(default=50, gt=0)
    progress_save_every: int = Field(default=50, ge=0)
    validate_keys_on_start: bool = False

    # Timers (seconds)
    status_interval_s: int = Field(default=300, gt=0)
    progress_save_interval_s: int = Field(default=600, gt=0)

    # Git snapshots
    auto_commit_csv: bool = True
    git_commit_message: str = "Update Bitcoin bitmap data - Block {blockNumber}"
    git_push_to_remote: bool = True
    git_branch: str = "main"

    # Query API
    query_rate_limit_per_hour: int = Field(default=1000, gt=0)

    model_config = ConfigDict(frozen=True)

    @field_validator("api_keys")
    @classmethod
    def _drop_placeholder_keys(cls, keys: list[str]) -> list[str]:
        usable = []
        for key in keys:
            if is_usable_key(key):
                usable.append(key)
            elif key:
                logger.warning(f"Skipping invalid/placeholder API key: {key[:8]}...")
        return usable

    @property
    def min_interval(self) -> timedelta:
        return timedelta(milliseconds=self.request_interval_ms)

    @property
    def active_proxies(self) -> list[str]:
        return self.proxies if self.use_proxy_rotation else []

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            base_delay=self.retry_delay_ms / 1000,
            max_delay=self.max_retry_delay_ms / 1000,
            max_retries=self.max_retries,
            rate_limit_cooldown=self.rate_limit_cooldown_ms / 1000,
            daily_limit_cooldown=self.daily_limit_cooldown_ms / 1000,
        )


def _as_list(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def _as_int(name: str) -> Callable[[str], int]:
    def parse(raw: str) -> int:
        try:
            return int(raw)
        except ValueError as e:
            raise ConfigError(f"Invalid {name}; must be integer.") from e
    return parse


def _true_unless_false(raw: str) -> bool:
    return raw.strip().lower() != "false"


def _true_only_if_true(raw: str) -> bool:
    return raw.strip().lower() == "true"


# env var -> (field, parser)
ENV_FIELDS: Final[dict[str, tuple[str, Callable[[str], Any]]]] = {
    "GENIIDATA_API_KEYS": ("api_keys", _as_list),
    "USER_AGENTS": ("user_agents", _as_list),
    "PROXY_LIST": ("proxies", _as_list),
    "USE_PROXY_ROTATION": ("use_proxy_rotation", _true_only_if_true),
    "ROTATE_REQUEST_HEADERS": ("rotate_request_headers", _true_unless_false),
    "GENIIDATA_API_URL": ("api_url", str),
    "GENIIDATA_KEY_INFO_URL": ("key_info_url", str),
    "MEMPOOL_WS_URL": ("ws_url", str),
    "MEMPOOL_TIP_HEIGHT_URL": ("tip_height_url", str),
    "CSV_FILE": ("csv_file", Path),
    "EMPTY_LEDGER_FILE": ("empty_ledger_file", Path),
    "PROGRESS_FILE": ("progress_file", Path),
    "MAX_REQUESTS_PER_DAY_PER_KEY": ("max_requests_per_day_per_key", _as_int("MAX_REQUESTS_PER_DAY_PER_KEY")),
    "DAILY_LIMIT_BUFFER": ("daily_limit_buffer", _as_int("DAILY_LIMIT_BUFFER")),
    "REQUEST_INTERVAL": ("request_interval_ms", _as_int("REQUEST_INTERVAL")),
    "RETRY_DELAY": ("retry_delay_ms", _as_int("RETRY_DELAY")),
    "MAX_RETRY_DELAY": ("max_retry_delay_ms", _as_int("MAX_RETRY_DELAY")),
    "MAX_RETRIES": ("max_retries", _as_int("MAX_RETRIES")),
    "RATE_LIMIT_COOLDOWN": ("rate_limit_cooldown_ms", _as_int("RATE_LIMIT_COOLDOWN")),
    "DAILY_LIMIT_COOLDOWN": ("daily_limit_cooldown_ms", _as_int("DAILY_LIMIT_COOLDOWN")),
    "HISTORICAL_START_BLOCK": ("historical_start_block", _as_int("HISTORICAL_START_BLOCK")),
    "BACKFILL_CHUNK_SIZE": ("backfill_chunk_size", _as_int("BACKFILL_CHUNK_SIZE")),
    "SORT_EVERY": ("sort_every", _as_int("SORT_EVERY")),
    "PROGRESS_SAVE_EVERY": ("progress_save_every", _as_int("PROGRESS_SAVE_EVERY")),
    "STATUS_INTERVAL": ("status_interval_s", _as_int("STATUS_INTERVAL")),
    "PROGRESS_SAVE_INTERVAL": ("progress_save_interval_s", _as_int("PROGRESS_SAVE_INTERVAL")),
    "VALIDATE_KEYS_ON_START": ("validate_keys_on_start", _true_only_if_true),
    "AUTO_COMMIT_CSV": ("auto_commit_csv", _true_unless_false),
    "GIT_COMMIT_MESSAGE": ("git_commit_message", str),
    "GIT_PUSH_TO_REMOTE": ("git_push_to_remote", _true_unless_false),
    "GIT_BRANCH": ("git_branch", str),
    "QUERY_RATE_LIMIT_PER_HOUR": ("query_rate_limit_per_hour", _as_int("QUERY_RATE_LIMIT_PER_HOUR")),
}


def load_yaml_overrides(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read {CONFIG_YAML_ENV} file {path}: {e}") from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid tracker config {path}: expected a top-level mapping.")
    unknown = set(raw) - set(TrackerSettings.model_fields)
    if unknown:
        raise ConfigError(f"Invalid tracker config {path}: unknown keys {sorted(unknown)}")
    return dict(raw)


def load_settings(environ: Optional[Mapping[str, str]] = None, *, load_env: bool = True) -> TrackerSettings:
    """Build the settings value from YAML overrides and the environment."""
    if environ is None:
        if load_env:
            load_env_if_present()
        environ = os.environ

    values: dict[str, Any] = {}
    yaml_path = environ.get(CONFIG_YAML_ENV)
    if yaml_path:
        values.update(load_yaml_overrides(Path(yaml_path)))

    for env_name, (field_name, parse) in ENV_FIELDS.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        values[field_name] = parse(raw)

    try:
        return TrackerSettings.model_validate(values)
    except ValidationError as e:
        raise ConfigError(f"Invalid tracker settings: {e}") from e
