"""
Bounded in-memory queues for logs and track events, with optional
persistence to a DurableStore.

Persisted state is a versioned JSON object:

    {"v": 1, "firstQueuedAtMs": 1700000000000, "logs": [...], "track": [...]}

An empty state is never written; reaching it deletes the stored key.
"""

import asyncio
import json
import logging
import threading
import time
from collections.abc import Callable, Iterable
from enum import Enum
from typing import Any

from pydantic import ValidationError

from .models import LogRecord, Record, TrackEvent
from .storage import DurableStore

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class QueueKind(str, Enum):
    """The two independent queues and their ingestion paths."""

    TRACK = "track"
    LOGS = "logs"

    @property
    def path(self) -> str:
        return f"/{self.value}/"


def kind_of(record: Record) -> QueueKind:
    return QueueKind.TRACK if isinstance(record, TrackEvent) else QueueKind.LOGS


_RECORD_TYPES: dict[QueueKind, type[LogRecord] | type[TrackEvent]] = {
    QueueKind.LOGS: LogRecord,
    QueueKind.TRACK: TrackEvent,
}


class QueueStore:
    """
    Two FIFO queues capped at max_queue_size each.

    Overflow drops from the front, so the newest records win. The
    first-queued watermark is set when an idle store receives a record and
    cleared when a committed removal leaves both queues empty; records
    taken for an in-flight request keep it alive.

    Mutations are guarded by a threading.Lock so records may be enqueued
    from any thread; persistence writes run on the attached event loop and
    are serialized, each one writing the latest snapshot.
    """

    def __init__(
        self,
        max_queue_size: int = 1000,
        store: DurableStore | None = None,
        key: str = "queue.json",
        debounce: float = 0.0,
        clock: Callable[[], float] = time.time,
    ):
        self.max_queue_size = max_queue_size
        self.store = store
        self.key = key
        self.debounce = debounce
        self.clock = clock

        self._queues: dict[QueueKind, list[Record]] = {kind: [] for kind in QueueKind}
        self._first_queued_at: float | None = None
        self._lock = threading.Lock()
        self.evicted_count = 0

        self._loop: asyncio.AbstractEventLoop | None = None
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._writer: asyncio.Task | None = None
        self._write_again = False
        self._write_lock: asyncio.Lock | None = None

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    @property
    def first_queued_at(self) -> float | None:
        """Epoch seconds of the oldest unflushed record, None when idle."""
        with self._lock:
            return self._first_queued_at

    def size(self) -> dict[str, int]:
        with self._lock:
            return {kind.value: len(queue) for kind, queue in self._queues.items()}

    def total(self) -> int:
        with self._lock:
            return sum(len(queue) for queue in self._queues.values())

    def enqueue(self, record: Record) -> int:
        """Append a record; returns how many old records were evicted."""
        kind = kind_of(record)
        with self._lock:
            if self._first_queued_at is None:
                self._first_queued_at = self.clock()
            queue = self._queues[kind]
            queue.append(record)
            evicted = self._trim(queue)

        if evicted:
            logger.warning(f"{kind.value} queue full ({self.max_queue_size}), dropped {evicted} oldest record(s)")
        self.schedule_persist()
        return evicted

    def peek_batch(self, kind: QueueKind, max_size: int) -> list[Record]:
        with self._lock:
            return list(self._queues[kind][:max_size])

    def remove_batch(self, kind: QueueKind, count: int, commit: bool = True):
        """
        Drop count records from the front of a queue.

        With commit=False the removal is speculative: nothing is persisted
        and the watermark is kept until commit() or restore_batch().
        """
        with self._lock:
            del self._queues[kind][:max(0, count)]
        if commit:
            self.commit()

    def restore_batch(self, kind: QueueKind, records: Iterable[Record]):
        """Put records back at the head of a queue in their original order."""
        records = list(records)
        if not records:
            return
        with self._lock:
            queue = self._queues[kind]
            queue[:0] = records
            evicted = self._trim(queue)
            if self._first_queued_at is None:
                self._first_queued_at = self.clock()

        if evicted:
            logger.warning(f"{kind.value} queue full on restore, dropped {evicted} oldest record(s)")
        self.schedule_persist()

    def commit(self):
        """Settle removals: clear the watermark if drained and persist."""
        with self._lock:
            if not any(self._queues.values()):
                self._first_queued_at = None
        self.schedule_persist()

    def _trim(self, queue: list[Record]) -> int:
        overflow = len(queue) - self.max_queue_size
        if overflow <= 0:
            return 0
        del queue[:overflow]
        self.evicted_count += overflow
        return overflow

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            first = self._first_queued_at
            return {
                "v": STATE_VERSION,
                "firstQueuedAtMs": int(first * 1000) if first else 0,
                "logs": [record.to_payload() for record in self._queues[QueueKind.LOGS]],
                "track": [record.to_payload() for record in self._queues[QueueKind.TRACK]],
            }

    def hydrate(self) -> int:
        """
        Load persisted state and prepend it to the queues.

        Returns the number of records restored. Unreadable or corrupt state
        is logged and ignored.
        """
        if self.store is None:
            return 0

        try:
            raw = self.store.load(self.key)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read persisted queue {self.key!r}: {e}")
            return 0
        if not raw:
            return 0

        try:
            state = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Ignoring corrupt persisted queue {self.key!r}: {e}")
            return 0
        if not isinstance(state, dict):
            return 0

        loaded = {kind: _parse_records(state.get(kind.value), _RECORD_TYPES[kind]) for kind in QueueKind}
        count = sum(len(records) for records in loaded.values())
        if count == 0:
            return 0

        first_ms = state.get("firstQueuedAtMs") or 0
        first = first_ms / 1000 if isinstance(first_ms, int | float) and first_ms > 0 else None

        with self._lock:
            for kind, records in loaded.items():
                queue = self._queues[kind]
                queue[:0] = records
                self._trim(queue)
            if first is not None:
                if self._first_queued_at is None or first < self._first_queued_at:
                    self._first_queued_at = first
            elif self._first_queued_at is None:
                self._first_queued_at = self.clock()

        logger.info(f"Restored {count} persisted record(s) from {self.key!r}")
        return count

    def attach(self, loop: asyncio.AbstractEventLoop):
        """Run future persistence writes on this loop instead of inline."""
        self._loop = loop
        self._write_lock = asyncio.Lock()

    def schedule_persist(self):
        if self.store is None:
            return

        loop = self._loop
        if loop is None or loop.is_closed():
            self._write(self.snapshot())
            return

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            self._schedule_on_loop()
        else:
            loop.call_soon_threadsafe(self._schedule_on_loop)

    def _schedule_on_loop(self):
        if self.debounce > 0:
            if self._debounce_handle is not None:
                self._debounce_handle.cancel()
            self._debounce_handle = self._loop.call_later(self.debounce, self._start_writer)
            return
        self._start_writer()

    def _start_writer(self):
        self._debounce_handle = None
        if self._writer is not None and not self._writer.done():
            # The running writer picks up the latest snapshot once more
            self._write_again = True
            return
        self._writer = self._loop.create_task(self._write_loop())

    async def _write_loop(self):
        while True:
            self._write_again = False
            await self._write_latest()
            if not self._write_again:
                return

    async def _write_latest(self):
        async with self._write_lock:
            await asyncio.to_thread(self._write, self.snapshot())

    async def persist_now(self):
        """Cancel any debounce and write the current state immediately."""
        if self.store is None:
            return
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._loop is None:
            self._write(self.snapshot())
            return
        if self._writer is not None and not self._writer.done():
            await self._writer
        await self._write_latest()

    def _write(self, state: dict[str, Any]):
        try:
            if not state["logs"] and not state["track"]:
                self.store.delete(self.key)
            else:
                self.store.save(self.key, json.dumps(state, separators=(",", ":")))
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Could not persist queue {self.key!r}: {e}")


def _parse_records(items: Any, record_type: type[LogRecord] | type[TrackEvent]) -> list[Record]:
    if not isinstance(items, list):
        return []
    records = []
    for item in items:
        try:
            records.append(record_type.model_validate(item))
        except ValidationError as e:
            logger.debug(f"Skipping invalid persisted {record_type.__name__}: {e}")
    return records
