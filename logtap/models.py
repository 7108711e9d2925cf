"""
Record types shipped by the logtap SDK.

LogRecord and TrackEvent are frozen once built; the free-form bags are typed
as JsonValue so anything that reaches a queue is guaranteed to serialize.
"""

import platform
import sys
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, JsonValue

SDK_NAME = "logtap-python"
SDK_VERSION = "0.1.0"


class Level(str, Enum):
    """Log severity levels accepted by the ingestion API."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"
    EVENT = "event"


class UserProfile(BaseModel):
    """Snapshot of the user attached to outgoing records."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    email: str | None = None
    username: str | None = None
    traits: dict[str, JsonValue] | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class _RecordBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    timestamp: str
    device_id: str | None = None
    trace_id: str | None = None
    span_id: str | None = None
    tags: dict[str, str] | None = None
    user: dict[str, JsonValue] | None = None
    contexts: dict[str, JsonValue] | None = None
    extra: dict[str, JsonValue] | None = None
    sdk: dict[str, JsonValue] | None = None

    def to_payload(self) -> dict[str, Any]:
        """Wire representation: absent optional fields are omitted."""
        return self.model_dump(mode="json", exclude_none=True)


class LogRecord(_RecordBase):
    """A structured log line, POSTed to /api/{project}/logs/."""

    level: Level
    message: str
    fields: dict[str, JsonValue] | None = None


class TrackEvent(_RecordBase):
    """An analytics event, POSTed to /api/{project}/track/."""

    name: str
    properties: dict[str, JsonValue] | None = None


Record = LogRecord | TrackEvent


def sdk_info() -> dict[str, str]:
    return {
        "name": SDK_NAME,
        "version": SDK_VERSION,
        "runtime": "python",
        "python": platform.python_version(),
        "platform": sys.platform,
    }
