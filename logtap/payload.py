"""
Builds immutable LogRecord / TrackEvent instances from caller input.

Caller-supplied structures are deep-copied through a JSON round-trip, so
mutating a dict after logging it cannot change what is queued. Values that
do not survive the round-trip are dropped key by key instead of failing
the whole call.
"""

import json
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, date, datetime
from typing import Any

from pydantic import ValidationError

from .models import Level, LogRecord, Record, TrackEvent, UserProfile, sdk_info

logger = logging.getLogger(__name__)


def json_safe(value: Any) -> Any:
    """Deep copy via JSON; returns None when the value cannot be encoded."""
    if value is None:
        return None
    try:
        return json.loads(json.dumps(value, allow_nan=False))
    except (TypeError, ValueError, RecursionError):
        return None


def json_safe_mapping(value: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Copy a mapping, dropping the entries that are not JSON serializable."""
    if not value or not isinstance(value, Mapping):
        return None

    copied = json_safe(dict(value))
    if isinstance(copied, dict):
        return copied

    out = {}
    for key, item in value.items():
        safe = json_safe(item)
        if safe is None and item is not None:
            logger.debug(f"Dropping non-serializable field {key!r}")
            continue
        out[str(key)] = safe
    return out or None


def merge(defaults: Mapping[str, Any] | None, values: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Shallow merge where call-specific values win on key collision."""
    if not defaults and not values:
        return None
    out: dict[str, Any] = {}
    if defaults:
        out.update(defaults)
    if values:
        out.update(values)
    return out


def merge_tags(defaults: Mapping[str, Any] | None, values: Mapping[str, Any] | None) -> dict[str, str] | None:
    merged = merge(defaults, values)
    if merged is None:
        return None
    return {str(k): str(v) for k, v in merged.items() if v is not None}


def to_timestamp(value: str | datetime | date | None) -> str | None:
    """Format an explicit timestamp as RFC3339; strings pass through untouched."""
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return format_rfc3339(value)
    if isinstance(value, date):
        return format_rfc3339(datetime(value.year, value.month, value.day, tzinfo=UTC))
    return None


def format_rfc3339(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_rfc3339() -> str:
    return format_rfc3339(datetime.now(UTC))


def parse_level(level: Level | str | None) -> Level:
    if isinstance(level, Level):
        return level
    return Level(str(level or Level.INFO.value).strip().lower())


def user_payload(user: UserProfile | Mapping[str, Any] | None) -> dict[str, Any] | None:
    if user is None:
        return None
    if isinstance(user, UserProfile):
        return user.to_payload() or None
    return json_safe_mapping(user)


class PayloadBuilder:
    """
    Turns caller input into records, applying global defaults and the
    before_send transform hook.

    build_log / build_track return None when the record must not be queued:
    blank message or name, or a hook that returned a falsy value.
    """

    def __init__(
        self,
        global_fields: Mapping[str, Any] | None = None,
        global_properties: Mapping[str, Any] | None = None,
        global_tags: Mapping[str, str] | None = None,
        global_contexts: Mapping[str, Any] | None = None,
        before_send: Callable[[Record], Any] | None = None,
    ):
        self.global_fields = json_safe_mapping(global_fields)
        self.global_properties = json_safe_mapping(global_properties)
        self.global_tags = merge_tags(global_tags, None)
        self.global_contexts = json_safe_mapping(global_contexts)
        self.before_send = before_send
        self._sdk = sdk_info()

    @classmethod
    def from_config(cls, config) -> "PayloadBuilder":
        return cls(
            global_fields=config.global_fields,
            global_properties=config.global_properties,
            global_tags=config.global_tags,
            global_contexts=config.global_contexts,
            before_send=config.before_send,
        )

    def _common(
        self,
        device_id: str | None,
        user: UserProfile | Mapping[str, Any] | None,
        trace_id: str | None,
        span_id: str | None,
        timestamp: str | datetime | None,
        tags: Mapping[str, Any] | None,
        contexts: Mapping[str, Any] | None,
        extra: Mapping[str, Any] | None,
    ) -> dict[str, Any]:
        return {
            "timestamp": to_timestamp(timestamp) or now_rfc3339(),
            "device_id": str(device_id) if device_id else None,
            "trace_id": str(trace_id) if trace_id else None,
            "span_id": str(span_id) if span_id else None,
            "tags": merge_tags(self.global_tags, tags),
            "user": user_payload(user),
            "contexts": merge(self.global_contexts, json_safe_mapping(contexts)),
            "extra": json_safe_mapping(extra),
            "sdk": dict(self._sdk),
        }

    def build_log(
        self,
        level: Level | str,
        message: str,
        fields: Mapping[str, Any] | None = None,
        *,
        device_id: str | None = None,
        user: UserProfile | Mapping[str, Any] | None = None,
        trace_id: str | None = None,
        span_id: str | None = None,
        timestamp: str | datetime | None = None,
        tags: Mapping[str, Any] | None = None,
        contexts: Mapping[str, Any] | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> LogRecord | None:
        msg = str(message or "").strip()
        if not msg:
            return None

        try:
            record = LogRecord(
                level=parse_level(level),
                message=msg,
                fields=merge(self.global_fields, json_safe_mapping(fields)),
                **self._common(device_id, user, trace_id, span_id, timestamp, tags, contexts, extra),
            )
        except (ValidationError, ValueError) as e:
            logger.debug(f"Dropping invalid log record: {e}")
            return None
        return self.apply_before_send(record)

    def build_track(
        self,
        name: str,
        properties: Mapping[str, Any] | None = None,
        *,
        device_id: str | None = None,
        user: UserProfile | Mapping[str, Any] | None = None,
        trace_id: str | None = None,
        span_id: str | None = None,
        timestamp: str | datetime | None = None,
        tags: Mapping[str, Any] | None = None,
        contexts: Mapping[str, Any] | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> TrackEvent | None:
        event_name = str(name or "").strip()
        if not event_name:
            return None

        try:
            record = TrackEvent(
                name=event_name,
                properties=merge(self.global_properties, json_safe_mapping(properties)),
                **self._common(device_id, user, trace_id, span_id, timestamp, tags, contexts, extra),
            )
        except ValidationError as e:
            logger.debug(f"Dropping invalid track event: {e}")
            return None
        return self.apply_before_send(record)

    def apply_before_send(self, record: Record) -> Record | None:
        """
        Run the transform hook.

        A hook that raises keeps the original record; a falsy result discards
        it. A returned mapping is validated back into the record's type.
        """
        if self.before_send is None:
            return record

        try:
            result = self.before_send(record)
        except Exception as e:
            logger.debug(f"before_send hook failed, keeping original record: {e}")
            return record

        if not result:
            return None
        if isinstance(result, type(record)):
            return result
        if isinstance(result, Mapping):
            try:
                return type(record).model_validate(json_safe_mapping(result) or {})
            except ValidationError as e:
                logger.debug(f"before_send returned an invalid payload, keeping original: {e}")
                return record
        return record
