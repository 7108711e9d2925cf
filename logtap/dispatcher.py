"""
Flush engine: drains the queue store through the transport.

flush() is idempotent while running: concurrent callers share one
in-flight asyncio.Task and all observe its FlushOutcome. Failures are
never raised; undelivered records stay queued and a retry is scheduled.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass

from .queue_store import QueueKind, QueueStore
from .resilience import Backoff
from .transport import DeliveryResult, Transport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FlushOutcome:
    """Result of one flush cycle."""

    sent: int = 0
    failed: bool = False
    remaining: int = 0


class Dispatcher:
    def __init__(
        self,
        queues: QueueStore,
        transport: Transport,
        backoff: Backoff,
        max_batch_size: int = 50,
        drop_statuses: frozenset[int] = frozenset(),
    ):
        self.queues = queues
        self.transport = transport
        self.backoff = backoff
        self.max_batch_size = max_batch_size
        self.drop_statuses = drop_statuses

        self.closed = False
        self._inflight: asyncio.Task | None = None
        self._retry_handle: asyncio.Handle | None = None
        self._wakeup: asyncio.Event | None = None

        # Stats
        self.sent_count = 0
        self.error_count = 0
        self.rejected_count = 0
        self._failure_streak = 0

    @property
    def flushing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def trigger(self, wait_backoff: bool = True) -> asyncio.Task:
        """Start a flush unless one is already running; must run on the loop."""
        if not self.flushing:
            self._inflight = asyncio.get_running_loop().create_task(self._run(wait_backoff))
        return self._inflight

    async def flush(self, wait_backoff: bool = True) -> FlushOutcome:
        # shield: a cancelled waiter must not abort the shared flush
        return await asyncio.shield(self.trigger(wait_backoff))

    async def wait_idle(self):
        """Wait for the in-flight flush, if any, to finish."""
        task = self._inflight
        if task is not None and not task.done():
            await asyncio.wait({task})

    def schedule_retry(self):
        """Arrange for another flush on the next loop iteration."""
        if self.closed or self._retry_handle is not None:
            return
        self._retry_handle = asyncio.get_running_loop().call_soon(self._retry)

    def _retry(self):
        self._retry_handle = None
        if not self.closed and self.queues.total() > 0:
            self.trigger()

    def cancel_retry(self):
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def wake(self):
        """Cut a pending backoff wait short so the flush proceeds now."""
        if self._wakeup is not None:
            self._wakeup.set()

    async def _wait_backoff(self, delay: float):
        self._wakeup = asyncio.Event()
        try:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
        finally:
            self._wakeup = None

    async def _run(self, wait_backoff: bool) -> FlushOutcome:
        try:
            return await self._flush_cycle(wait_backoff)
        except Exception as e:
            # Anything reaching here is a bug in the cycle itself
            logger.error(f"Unexpected flush failure: {e}", exc_info=True)
            return FlushOutcome(failed=True, remaining=self.queues.total())

    async def _flush_cycle(self, wait_backoff: bool) -> FlushOutcome:
        delay = self.backoff.pending if wait_backoff and not self.closed else 0.0
        if delay > 0 and self.queues.total() > 0:
            await self._wait_backoff(delay)

        sent = 0
        failed = False
        for kind in QueueKind:
            delivered, ok = await self._drain(kind)
            sent += delivered
            failed = failed or not ok

        if failed:
            delay = self.backoff.bump()
            self._note_failure(delay)
            self.schedule_retry()
        else:
            if sent:
                self.backoff.reset()
            self._failure_streak = 0
            self.queues.commit()

        return FlushOutcome(sent=sent, failed=failed, remaining=self.queues.total())

    async def _drain(self, kind: QueueKind) -> tuple[int, bool]:
        """Send batches from one queue until it is empty or a batch fails."""
        delivered = 0
        while True:
            batch = self.queues.peek_batch(kind, self.max_batch_size)
            if not batch:
                return delivered, True

            # Speculative removal, undone by restore_batch on failure
            self.queues.remove_batch(kind, len(batch), commit=False)
            try:
                result = await self.transport.send(kind.path, batch)
            except Exception as e:
                logger.error(f"Transport raised sending {kind.value} batch: {e}", exc_info=True)
                result = DeliveryResult(ok=False, error=f"{type(e).__name__}: {e}")
                self.transport.last_error = result.error
            except BaseException:
                # Cancelled mid-send
                self.queues.restore_batch(kind, batch)
                raise

            if result.ok:
                delivered += len(batch)
                self.sent_count += len(batch)
                self.queues.commit()
                continue

            self.error_count += 1
            if result.status is not None and result.status in self.drop_statuses:
                logger.warning(f"Dropping {len(batch)} {kind.value} record(s) rejected with HTTP {result.status}")
                self.rejected_count += len(batch)
                self.queues.commit()
                continue

            self.queues.restore_batch(kind, batch)
            if result.status in (401, 403) and self._failure_streak == 0:
                logger.warning(f"Ingestion rejected the project key (HTTP {result.status}); will keep retrying")
            return delivered, False

    def _note_failure(self, delay: float):
        level = logging.WARNING if self._failure_streak == 0 else logging.DEBUG
        logger.log(
            level,
            f"Delivery failed ({self.transport.last_error}); retrying in {delay:.2f}s, "
            f"{self.queues.total()} record(s) queued",
        )
        self._failure_streak += 1
