"""
LogtapClient - batched, persistent log and event shipping.

Usage:
    from logtap import ClientConfig, LogtapClient

    async with LogtapClient(ClientConfig(base_url="https://logs.example.com", project_id=42)) as client:
        client.info("Payment processed", {"amount": 99.99}, trace_id="t-123")
        client.track("purchase", {"sku": "A-1"})
        await client.flush()  # Optional; close() drains too

Recording calls are synchronous and never raise. flush() and close() are
coroutines and never raise either: undelivered data stays queued and is
retried with exponential backoff.
"""

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Iterable, Iterator, Mapping
from datetime import datetime
from typing import Any

import httpx

from .capture import ErrorSignalSource, HostError, default_sources, exception_message
from .config import ClientConfig
from .dispatcher import Dispatcher, FlushOutcome
from .models import Level, Record, UserProfile
from .payload import PayloadBuilder, json_safe_mapping, user_payload
from .queue_store import QueueStore
from .resilience import Backoff
from .storage import DurableStore, FileStore, load_or_create_device_id, new_device_id, save_device_id
from .transport import Compressor, GzipCompressor, IdentityCompressor, Transport

logger = logging.getLogger(__name__)

MIN_TICK = 0.05
MAX_TICK = 0.5


class LogtapClient:
    """
    Client for logtap logs and tracking.

    One instance owns its own queues, timers and HTTP connection; nothing
    is shared between clients. A client created inside a running event
    loop starts its ticker right away, otherwise on start().
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        store: DurableStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        compressor: Compressor | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.clock = clock
        self.store = store if store is not None else self._default_store(config)

        self._device_id = config.device_id or load_or_create_device_id(
            self.store if config.persist_device_id else None
        )
        self._user = user_payload(config.user)

        self.builder = PayloadBuilder.from_config(config)
        self.queues = QueueStore(
            max_queue_size=config.max_queue_size,
            store=self.store if config.persistence.enabled else None,
            key=config.queue_key,
            debounce=config.persistence.debounce,
            clock=clock,
        )
        self.transport = Transport(
            base_url=config.base_url,
            project_id=config.project_id,
            project_key=config.project_key,
            timeout=config.timeout,
            compressor=compressor or (GzipCompressor() if config.gzip else IdentityCompressor()),
            http_client=http_client,
        )
        self.dispatcher = Dispatcher(
            self.queues,
            self.transport,
            Backoff(config.backoff),
            max_batch_size=config.max_batch_size,
            drop_statuses=config.drop_statuses,
        )

        self._loop: asyncio.AbstractEventLoop | None = None
        self._ticker: asyncio.Task | None = None
        self._auto_flush_scheduled = False
        self._closed = False
        self._error_sources: list[ErrorSignalSource] = []
        self._filtered_count = 0

        # Persisted records go back in before any new record can be queued
        self._hydrated = self.queues.hydrate()

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            self._start_on(loop)

    @staticmethod
    def _default_store(config: ClientConfig) -> DurableStore | None:
        wants_device_store = config.persist_device_id and not config.device_id
        if config.persistence.enabled or wants_device_store:
            return FileStore(config.store_directory)
        return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Start timers on the running loop; safe to call more than once."""
        self._start_on(asyncio.get_running_loop())

    def _start_on(self, loop: asyncio.AbstractEventLoop, timers: bool = True):
        if self._loop is not None:
            return
        self._loop = loop
        self._auto_flush_scheduled = False
        self.queues.attach(loop)

        if timers and not self._closed:
            if self.config.flush_interval > 0:
                self._ticker = loop.create_task(self._tick_loop())
            if self.queues.total() > 0:
                if self._hydrated:
                    self.dispatcher.schedule_retry()
                    self.queues.schedule_persist()
                else:
                    self._auto_flush_if_needed()

    @property
    def tick_interval(self) -> float:
        return max(MIN_TICK, min(self.config.flush_interval, MAX_TICK))

    async def _tick_loop(self):
        while True:
            await asyncio.sleep(self.tick_interval)
            try:
                self._auto_flush_if_needed()
            except Exception as e:
                logger.error(f"Auto-flush check failed: {e}", exc_info=True)

    async def flush(self) -> FlushOutcome:
        """Send everything queued now; concurrent calls share one flush."""
        if self._loop is None:
            self._start_on(asyncio.get_running_loop(), timers=not self._closed)
        return await self.dispatcher.flush()

    async def close(self):
        """
        Stop timers, let an in-flight flush finish, make a final delivery
        attempt and persist (or clear) what is left.
        """
        if self._closed:
            return
        self._closed = True
        self.dispatcher.closed = True

        if self._loop is None:
            self._start_on(asyncio.get_running_loop(), timers=False)

        if self._ticker is not None:
            self._ticker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._ticker
            self._ticker = None
        self.dispatcher.cancel_retry()
        self.dispatcher.wake()
        self.stop_capturing_errors()

        await self.dispatcher.wait_idle()
        outcome = await self.dispatcher.flush(wait_backoff=False)
        await self.queues.persist_now()
        await self.transport.aclose()

        if outcome.remaining:
            logger.info(f"Closed with {outcome.remaining} undelivered record(s)")

    async def __aenter__(self) -> "LogtapClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def user(self) -> dict[str, Any] | None:
        return dict(self._user) if self._user else None

    def set_user(self, user: UserProfile | Mapping[str, Any] | None):
        """Set or replace the user attached to every following record."""
        self._user = user_payload(user)

    def identify(self, user_id: str, traits: Mapping[str, Any] | None = None):
        uid = str(user_id or "").strip()
        if not uid:
            return
        self.set_user(UserProfile(id=uid, traits=json_safe_mapping(traits)))

    def clear_user(self):
        self._user = None

    def set_device_id(self, device_id: str, persist: bool | None = None):
        """Override the device id, saving it when persist (default: persist_device_id)."""
        did = str(device_id or "").strip()
        if not did:
            return
        self._device_id = did
        should_persist = self.config.persist_device_id if persist is None else persist
        if should_persist and self.store is not None:
            save_device_id(self.store, did)

    def reset_device_id(self) -> str:
        """Generate a fresh device id, e.g. after a user logs out."""
        self.set_device_id(new_device_id())
        return self._device_id

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def log(
        self,
        level: Level | str,
        message: str,
        fields: Mapping[str, Any] | None = None,
        *,
        trace_id: str | None = None,
        span_id: str | None = None,
        timestamp: str | datetime | None = None,
        tags: Mapping[str, str] | None = None,
        device_id: str | None = None,
        user: UserProfile | Mapping[str, Any] | None = None,
        contexts: Mapping[str, Any] | None = None,
        extra: Mapping[str, Any] | None = None,
    ):
        """Queue a structured log for POST /api/{project}/logs/."""
        try:
            record = self.builder.build_log(
                level,
                message,
                fields,
                device_id=device_id or self._device_id,
                user=user if user is not None else self._user,
                trace_id=trace_id,
                span_id=span_id,
                timestamp=timestamp,
                tags=tags,
                contexts=contexts,
                extra=extra,
            )
            self._enqueue(record)
        except Exception as e:
            logger.error(f"Failed to record log: {e}", exc_info=True)

    def debug(self, message: str, fields: Mapping[str, Any] | None = None, **options):
        self.log(Level.DEBUG, message, fields, **options)

    def info(self, message: str, fields: Mapping[str, Any] | None = None, **options):
        self.log(Level.INFO, message, fields, **options)

    def warn(self, message: str, fields: Mapping[str, Any] | None = None, **options):
        self.log(Level.WARN, message, fields, **options)

    warning = warn

    def error(self, message: str, fields: Mapping[str, Any] | None = None, **options):
        self.log(Level.ERROR, message, fields, **options)

    def fatal(self, message: str, fields: Mapping[str, Any] | None = None, **options):
        self.log(Level.FATAL, message, fields, **options)

    def track(
        self,
        name: str,
        properties: Mapping[str, Any] | None = None,
        *,
        immediate: bool = False,
        trace_id: str | None = None,
        span_id: str | None = None,
        timestamp: str | datetime | None = None,
        tags: Mapping[str, str] | None = None,
        device_id: str | None = None,
        user: UserProfile | Mapping[str, Any] | None = None,
        contexts: Mapping[str, Any] | None = None,
        extra: Mapping[str, Any] | None = None,
    ):
        """
        Queue an analytics event for POST /api/{project}/track/.

        Events marked immediate, or whose name is configured as immediate,
        start a flush as soon as they are queued.
        """
        try:
            record = self.builder.build_track(
                name,
                properties,
                device_id=device_id or self._device_id,
                user=user if user is not None else self._user,
                trace_id=trace_id,
                span_id=span_id,
                timestamp=timestamp,
                tags=tags,
                contexts=contexts,
                extra=extra,
            )
            if record is None:
                self._enqueue(None)
                return
            self._enqueue(record, immediate=immediate or self.is_immediate_event(record.name))
        except Exception as e:
            logger.error(f"Failed to record event: {e}", exc_info=True)

    def is_immediate_event(self, name: str) -> bool:
        predicate = self.config.immediate_event
        if predicate is not None:
            try:
                return bool(predicate(name))
            except Exception as e:
                logger.debug(f"immediate_event predicate failed for {name!r}: {e}")
                return False
        return name in self.config.immediate_events

    def _enqueue(self, record: Record | None, immediate: bool = False):
        if record is None:
            self._filtered_count += 1
            return
        self.queues.enqueue(record)
        if self._closed:
            return
        if immediate:
            self._call_on_loop(self._trigger_flush)
        else:
            self._maybe_schedule_auto_flush()

    # ------------------------------------------------------------------
    # Flush triggers
    # ------------------------------------------------------------------

    def _call_on_loop(self, fn: Callable[[], None], soon: bool = False) -> bool:
        """Run fn on the client's loop: inline when already there, else threadsafe.

        Returns False when there is no usable loop yet and fn was not scheduled.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            return False
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            if soon:
                loop.call_soon(fn)
            else:
                fn()
        else:
            loop.call_soon_threadsafe(fn)
        return True

    def _trigger_flush(self):
        if not self._closed:
            self.dispatcher.trigger()

    def _maybe_schedule_auto_flush(self):
        min_batch = self.config.min_batch_size
        if min_batch <= 1 or self._auto_flush_scheduled:
            return
        if self.queues.total() < min_batch:
            return
        # Coalesce: every enqueue crossing the threshold in this tick shares one check
        self._auto_flush_scheduled = True
        if not self._call_on_loop(self._run_scheduled_auto_flush, soon=True):
            # No loop yet; start() runs the check instead
            self._auto_flush_scheduled = False

    def _run_scheduled_auto_flush(self):
        self._auto_flush_scheduled = False
        self._auto_flush_if_needed()

    def _auto_flush_if_needed(self):
        queued = self.queues.total()
        if queued == 0 or self._closed:
            return

        min_batch = self.config.min_batch_size
        if min_batch > 1 and queued >= min_batch:
            self._trigger_flush()
            return

        interval = self.config.flush_interval
        first = self.queues.first_queued_at
        if interval > 0 and first is not None and self.clock() - first >= interval:
            self._trigger_flush()

    # ------------------------------------------------------------------
    # Error capture
    # ------------------------------------------------------------------

    def capture_errors(self, sources: Iterable[ErrorSignalSource] | None = None):
        """Log host errors (uncaught, thread and asyncio exceptions) automatically."""
        if sources is None:
            loop = self._loop
            if loop is None:
                with contextlib.suppress(RuntimeError):
                    loop = asyncio.get_running_loop()
            sources = default_sources(loop)

        for source in sources:
            source.install(self._on_host_error)
            self._error_sources.append(source)

    def stop_capturing_errors(self):
        while self._error_sources:
            source = self._error_sources.pop()
            try:
                source.uninstall()
            except Exception as e:
                logger.debug(f"Failed to uninstall error source {source!r}: {e}")

    def _on_host_error(self, error: HostError):
        self.log(error.level, error.message, error.to_fields())
        if error.level == Level.FATAL:
            self._call_on_loop(self._trigger_flush)

    @contextlib.contextmanager
    def capture_exceptions(self, reraise: bool = True) -> Iterator[None]:
        """
        Log an exception escaping the block as fatal and request a flush.

        Usage:
            with client.capture_exceptions():
                run_job()
        """
        try:
            yield
        except Exception as exc:
            try:
                self._on_host_error(
                    HostError(
                        kind="exception",
                        level=Level.FATAL,
                        message=exception_message(exc, "exception"),
                        exc=exc,
                    )
                )
            except Exception as e:
                logger.debug(f"Failed to capture exception: {e}")
            if reraise:
                raise

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def size(self) -> dict[str, int]:
        return self.queues.size()

    def get_stats(self) -> dict:
        """Delivery statistics, in the shape of the resilience metrics."""
        sizes = self.queues.size()
        return {
            "sent_count": self.dispatcher.sent_count,
            "error_count": self.dispatcher.error_count,
            "dropped_count": self.queues.evicted_count + self.dispatcher.rejected_count,
            "filtered_count": self._filtered_count,
            "queued_logs": sizes["logs"],
            "queued_track": sizes["track"],
            "backoff_delay": self.dispatcher.backoff.pending,
            "last_error": self.transport.last_error,
            "last_status": self.transport.last_status,
        }
