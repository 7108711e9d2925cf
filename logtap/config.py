"""
Client configuration for the logtap SDK.

Usage:
    from logtap import ClientConfig, PersistenceConfig

    config = ClientConfig(
        base_url="https://logs.example.com",
        project_id=42,
        project_key="pk_xxx",
        min_batch_size=20,              # Flush as soon as 20 records are queued
        flush_interval=2.0,             # ...or when the oldest is 2s old
        persistence=PersistenceConfig(enabled=True),
    )

    # Or from the environment
    config = ClientConfig.from_env()
"""

import os
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .resilience import BackoffConfig


def default_cache_dir() -> Path:
    """Directory used for the device id and persisted queues."""
    explicit = os.environ.get("LOGTAP_CACHE_DIR")
    if explicit:
        return Path(explicit)
    xdg = os.environ.get("XDG_CACHE_HOME")
    base = Path(xdg) if xdg else Path.home() / ".cache"
    return base / "logtap"


@dataclass(frozen=True)
class PersistenceConfig:
    """Configuration for the durable queue side-channel."""

    enabled: bool = False
    directory: Path | None = None  # Defaults to default_cache_dir()
    key: str | None = None  # Defaults to "queue_<project_id>.json"
    debounce: float = 0.0  # Seconds; 0 writes on every mutation


@dataclass(frozen=True)
class ClientConfig:
    """Immutable configuration for LogtapClient."""

    base_url: str
    project_id: str | int
    project_key: str | None = None

    # Batching
    flush_interval: float = 2.0  # Seconds; 0 disables the periodic ticker
    min_batch_size: int = 1  # Size trigger is only active above 1
    max_batch_size: int = 50
    max_queue_size: int = 1000  # Per queue
    timeout: float = 5.0
    gzip: bool = False

    immediate_events: Iterable[str] = ()
    immediate_event: Callable[[str], bool] | None = None

    # Identity
    device_id: str | None = None
    persist_device_id: bool = True
    user: Any = None  # UserProfile or mapping

    # Defaults merged into every record
    global_fields: Mapping[str, Any] | None = None
    global_properties: Mapping[str, Any] | None = None
    global_tags: Mapping[str, str] | None = None
    global_contexts: Mapping[str, Any] | None = None

    before_send: Callable[[Any], Any] | None = None
    drop_statuses: Iterable[int] = ()

    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)

    def __post_init__(self):
        base_url = str(self.base_url or "").strip().rstrip("/")
        if not base_url:
            raise ValueError("base_url required")
        project_id = str(self.project_id if self.project_id is not None else "").strip()
        if not project_id:
            raise ValueError("project_id required")
        if self.max_batch_size <= 0:
            raise ValueError("max_batch_size must be > 0")
        if self.max_queue_size <= 0:
            raise ValueError("max_queue_size must be > 0")
        if self.flush_interval < 0:
            raise ValueError("flush_interval must be >= 0")

        project_key = (self.project_key or "").strip() or None
        immediate = frozenset(
            str(name).strip() for name in self.immediate_events if str(name).strip()
        )

        # Frozen dataclass: normalise through object.__setattr__
        object.__setattr__(self, "base_url", base_url)
        object.__setattr__(self, "project_id", project_id)
        object.__setattr__(self, "project_key", project_key)
        object.__setattr__(self, "min_batch_size", max(1, int(self.min_batch_size)))
        object.__setattr__(self, "immediate_events", immediate)
        object.__setattr__(self, "drop_statuses", frozenset(int(s) for s in self.drop_statuses))

    @property
    def queue_key(self) -> str:
        return self.persistence.key or f"queue_{self.project_id}.json"

    @property
    def store_directory(self) -> Path:
        return self.persistence.directory or default_cache_dir()

    @classmethod
    def from_env(cls, **overrides) -> "ClientConfig":
        """
        Create a ClientConfig from environment variables.

        Environment variables:
            LOGTAP_BASE_URL: Ingestion base URL (required)
            LOGTAP_PROJECT_ID: Project identifier (required)
            LOGTAP_PROJECT_KEY: Project secret (optional)
            LOGTAP_FLUSH_INTERVAL: Seconds between interval flushes (optional)
            LOGTAP_GZIP: "1"/"true" to gzip request bodies (optional)
            LOGTAP_PERSIST_QUEUE: "1"/"true" to persist queues to disk (optional)
            LOGTAP_QUEUE_DIR: Directory for persisted queues (optional)

        Keyword arguments override anything read from the environment.
        """
        base_url = os.environ.get("LOGTAP_BASE_URL")
        project_id = os.environ.get("LOGTAP_PROJECT_ID")

        if not base_url and "base_url" not in overrides:
            raise ValueError("LOGTAP_BASE_URL environment variable required")
        if not project_id and "project_id" not in overrides:
            raise ValueError("LOGTAP_PROJECT_ID environment variable required")

        kwargs: dict[str, Any] = {
            "base_url": base_url,
            "project_id": project_id,
            "project_key": os.environ.get("LOGTAP_PROJECT_KEY"),
            "gzip": _env_flag("LOGTAP_GZIP"),
        }
        if os.environ.get("LOGTAP_FLUSH_INTERVAL"):
            kwargs["flush_interval"] = float(os.environ["LOGTAP_FLUSH_INTERVAL"])
        if _env_flag("LOGTAP_PERSIST_QUEUE"):
            queue_dir = os.environ.get("LOGTAP_QUEUE_DIR")
            kwargs["persistence"] = PersistenceConfig(
                enabled=True,
                directory=Path(queue_dir) if queue_dir else None,
            )

        kwargs.update(overrides)
        return cls(**kwargs)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")
