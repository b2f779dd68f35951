"""
app/config.py

Application-level configuration helpers.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from db.config import load_env_files

_ALLOWED_STORE_BACKENDS = {"http", "memory"}
_ALLOWED_BACKOFFS = {"constant", "linear"}


@lru_cache(maxsize=1)
def _load_env_once() -> None:
    """
    Ensure project `.env` files are loaded once before reading app settings.
    """

    load_env_files()


def _get_bool_env(name: str, default: bool) -> bool:
    """
    Read a boolean from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int_env(name: str, default: int) -> int:
    """
    Read an integer from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    """
    Read a float from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return float(raw_value)
    except ValueError:
        return default


def _get_str_env(name: str, default: str) -> str:
    """
    Read a string from environment variables with fallback.
    """

    _load_env_once()
    value = os.getenv(name)
    if value is None:
        return default
    stripped = value.strip()
    return stripped if stripped else default


def _get_optional_str_env(name: str) -> str | None:
    """
    Read an optional string value from environment variables.
    """

    _load_env_once()
    value = os.getenv(name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped if stripped else None


def _get_choice_env(name: str, default: str, allowed: set[str]) -> str:
    value = _get_str_env(name, default).lower()
    return value if value in allowed else default


@dataclass(frozen=True)
class RemoteStoreSettings:
    """
    Connection settings for the versioned statement store.
    """

    backend: str = "http"
    base_url: str = "https://api.github.com"
    token: str | None = None
    repository: str | None = None
    branch: str = "main"
    path: str = "data/statement.csv"
    timeout_seconds: float = 15.0
    user_agent: str = "ledgr-workflow"


@dataclass(frozen=True)
class StepRetrySettings:
    """
    Retry budget for one pipeline step.
    """

    limit: int
    delay_seconds: float
    backoff: str = "linear"


@dataclass(frozen=True)
class PipelineSettings:
    """
    Runtime settings for the durable ingestion pipeline.
    """

    fetch_retry: StepRetrySettings = StepRetrySettings(limit=3, delay_seconds=2.0)
    commit_retry: StepRetrySettings = StepRetrySettings(limit=3, delay_seconds=3.0)
    restart_on_conflict: bool = False
    max_conflict_restarts: int = 1
    stale_after_seconds: float = 300.0
    recovery_interval_seconds: float = 60.0
    min_field_count: int = 10


@lru_cache(maxsize=1)
def get_remote_store_settings() -> RemoteStoreSettings:
    """
    Return cached remote store settings from environment variables.
    """

    return RemoteStoreSettings(
        backend=_get_choice_env("REMOTE_STORE_BACKEND", "http", _ALLOWED_STORE_BACKENDS),
        base_url=_get_str_env("REMOTE_STORE_BASE_URL", "https://api.github.com").rstrip("/"),
        token=_get_optional_str_env("REMOTE_STORE_TOKEN"),
        repository=_get_optional_str_env("REMOTE_STORE_REPOSITORY"),
        branch=_get_str_env("REMOTE_STORE_BRANCH", "main"),
        path=_get_str_env("REMOTE_STORE_PATH", "data/statement.csv"),
        timeout_seconds=max(1.0, _get_float_env("REMOTE_STORE_TIMEOUT_SECONDS", 15.0)),
        user_agent=_get_str_env("REMOTE_STORE_USER_AGENT", "ledgr-workflow"),
    )


@lru_cache(maxsize=1)
def get_pipeline_settings() -> PipelineSettings:
    """
    Return cached pipeline settings from environment variables.
    """

    return PipelineSettings(
        fetch_retry=StepRetrySettings(
            limit=max(1, _get_int_env("PIPELINE_FETCH_RETRY_LIMIT", 3)),
            delay_seconds=max(0.0, _get_float_env("PIPELINE_FETCH_RETRY_DELAY_SECONDS", 2.0)),
            backoff=_get_choice_env("PIPELINE_FETCH_RETRY_BACKOFF", "linear", _ALLOWED_BACKOFFS),
        ),
        commit_retry=StepRetrySettings(
            limit=max(1, _get_int_env("PIPELINE_COMMIT_RETRY_LIMIT", 3)),
            delay_seconds=max(0.0, _get_float_env("PIPELINE_COMMIT_RETRY_DELAY_SECONDS", 3.0)),
            backoff=_get_choice_env("PIPELINE_COMMIT_RETRY_BACKOFF", "linear", _ALLOWED_BACKOFFS),
        ),
        restart_on_conflict=_get_bool_env("PIPELINE_RESTART_ON_CONFLICT", False),
        max_conflict_restarts=max(0, _get_int_env("PIPELINE_MAX_CONFLICT_RESTARTS", 1)),
        stale_after_seconds=max(1.0, _get_float_env("PIPELINE_STALE_AFTER_SECONDS", 300.0)),
        recovery_interval_seconds=max(
            1.0, _get_float_env("PIPELINE_RECOVERY_INTERVAL_SECONDS", 60.0)
        ),
        min_field_count=max(10, _get_int_env("PIPELINE_MIN_FIELD_COUNT", 10)),
    )
