"""Tests for LogtapClient flush triggers, batching and retry."""

import asyncio

import httpx
import pytest

from logtap import BackoffConfig, FlushOutcome
from tests.mocks import ManualClock, wait_for


class TestFlushTriggers:
    """When a flush starts on its own."""

    @pytest.mark.asyncio
    async def test_min_batch_size_holds_until_threshold(self, make_client, ingest):
        """Below min_batch_size nothing is sent; reaching it sends one batch."""
        client = make_client(min_batch_size=3, flush_interval=10.0)
        client.info("one")
        client.info("two")

        await asyncio.sleep(0.15)
        assert ingest.requests == []

        client.info("three")

        assert await wait_for(lambda: len(ingest.requests) == 1)
        assert ingest.received() == ["one", "two", "three"]

    @pytest.mark.asyncio
    async def test_interval_flush_sends_old_records(self, make_client, ingest):
        """A single record is sent once it is flush_interval old."""
        client = make_client(flush_interval=0.12, min_batch_size=100)
        client.info("lonely")

        assert await wait_for(lambda: len(ingest.requests) == 1, timeout=0.4)
        assert ingest.received() == ["lonely"]

    @pytest.mark.asyncio
    async def test_interval_zero_disables_ticker(self, make_client, ingest):
        client = make_client(flush_interval=0)
        client.info("waits for flush")

        await asyncio.sleep(0.15)
        assert ingest.requests == []

        await client.flush()
        assert ingest.received() == ["waits for flush"]

    @pytest.mark.asyncio
    async def test_interval_uses_oldest_record_age(self, make_client, ingest):
        clock = ManualClock()
        client = make_client(flush_interval=0.1, min_batch_size=100, clock=clock)
        client.info("queued")

        await asyncio.sleep(0.25)
        assert ingest.requests == []

        clock.advance(1.0)
        assert await wait_for(lambda: len(ingest.requests) == 1)

    @pytest.mark.asyncio
    async def test_immediate_event_flushes_without_waiting(self, make_client, ingest):
        client = make_client(flush_interval=10.0, immediate_events=["purchase"])
        client.track("page_view")

        await asyncio.sleep(0.05)
        assert ingest.requests == []

        client.track("purchase", {"sku": "A-1"})

        assert await wait_for(lambda: len(ingest.requests) == 1, timeout=0.5)
        assert ingest.received("name") == ["page_view", "purchase"]

    @pytest.mark.asyncio
    async def test_immediate_per_call(self, make_client, ingest):
        client = make_client(flush_interval=10.0)
        client.track("checkout", immediate=True)

        assert await wait_for(lambda: len(ingest.requests) == 1, timeout=0.5)

    @pytest.mark.asyncio
    async def test_immediate_predicate(self, make_client, ingest):
        client = make_client(flush_interval=10.0, immediate_event=lambda name: name.startswith("pay_"))
        assert client.is_immediate_event("pay_ok") is True
        assert client.is_immediate_event("view") is False

        client.track("pay_ok")
        assert await wait_for(lambda: len(ingest.requests) == 1, timeout=0.5)

    @pytest.mark.asyncio
    async def test_failing_predicate_is_not_immediate(self, make_client):
        def broken(name):
            raise RuntimeError("bad predicate")

        client = make_client(immediate_event=broken)
        assert client.is_immediate_event("anything") is False

    @pytest.mark.asyncio
    async def test_tick_interval_is_clamped(self, make_client):
        assert make_client(flush_interval=0.01).tick_interval == 0.05
        assert make_client(flush_interval=0.2).tick_interval == 0.2
        assert make_client(flush_interval=30.0).tick_interval == 0.5


class TestFlush:
    """Explicit flush() behaviour."""

    @pytest.mark.asyncio
    async def test_flush_reports_outcome(self, make_client):
        client = make_client(flush_interval=10.0)
        client.info("a")
        client.track("b")

        outcome = await client.flush()

        assert outcome == FlushOutcome(sent=2, failed=False, remaining=0)
        assert client.size() == {"track": 0, "logs": 0}

    @pytest.mark.asyncio
    async def test_flush_on_empty_queue_sends_nothing(self, make_client, ingest):
        outcome = await make_client().flush()

        assert outcome == FlushOutcome()
        assert ingest.requests == []

    @pytest.mark.asyncio
    async def test_track_is_sent_before_logs(self, make_client, ingest):
        client = make_client(flush_interval=10.0)
        client.info("log first")
        client.track("event second")

        await client.flush()

        assert ingest.paths() == ["/api/7/track/", "/api/7/logs/"]

    @pytest.mark.asyncio
    async def test_batches_are_split_by_max_batch_size(self, make_client, ingest):
        client = make_client(flush_interval=10.0, max_batch_size=2)
        for i in range(5):
            client.info(f"m{i}")

        outcome = await client.flush()

        assert outcome.sent == 5
        assert [len(body) for body in ingest.bodies()] == [2, 2, 1]
        assert ingest.received() == ["m0", "m1", "m2", "m3", "m4"]

    @pytest.mark.asyncio
    async def test_concurrent_flushes_share_one_request(self, make_client, ingest):
        ingest.delay = 0.05
        client = make_client(flush_interval=10.0)
        client.info("once")

        first, second = await asyncio.gather(client.flush(), client.flush())

        assert first == second
        assert len(ingest.requests) == 1

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_abort_flush(self, make_client, ingest):
        ingest.delay = 0.05
        client = make_client(flush_interval=10.0)
        client.info("keep going")

        waiter = asyncio.create_task(client.flush())
        await asyncio.sleep(0.01)
        waiter.cancel()

        assert await wait_for(lambda: client.size()["logs"] == 0 and client.get_stats()["sent_count"] == 1)

    @pytest.mark.asyncio
    async def test_records_queued_during_flush_are_kept(self, make_client, ingest):
        ingest.delay = 0.05
        client = make_client(flush_interval=10.0)
        client.info("in flight")

        pending = asyncio.create_task(client.flush())
        await asyncio.sleep(0.01)
        client.info("late")
        await pending

        assert client.size()["logs"] == 1
        await client.flush()
        assert ingest.received() == ["in flight", "late"]


class TestFailureAndRetry:
    """Failed batches stay queued and are retried with backoff."""

    @pytest.mark.asyncio
    async def test_failed_flush_keeps_records(self, make_client, ingest):
        ingest.default_status = 500
        client = make_client(flush_interval=10.0)
        client.info("a")
        client.info("b")

        outcome = await client.flush()

        assert outcome.failed is True
        assert outcome.sent == 0
        assert outcome.remaining == 2
        stats = client.get_stats()
        assert stats["error_count"] >= 1
        assert stats["last_status"] == 500

    @pytest.mark.asyncio
    async def test_retry_after_server_error(self, make_client, ingest):
        """A 503 is retried automatically with the default backoff."""
        ingest.statuses = [503]
        client = make_client(flush_interval=10.0, backoff=BackoffConfig())
        client.info("eventually delivered")

        await client.flush()

        assert await wait_for(lambda: len(ingest.requests) == 2, timeout=2.5)
        assert await wait_for(lambda: client.get_stats()["sent_count"] == 1)
        assert client.get_stats()["backoff_delay"] == 0.0

    @pytest.mark.asyncio
    async def test_retry_waits_for_backoff(self, make_client, ingest):
        ingest.statuses = [500]
        client = make_client(flush_interval=10.0, backoff=BackoffConfig(floor=0.3, ceiling=1.0))
        client.info("a")

        await client.flush()
        await asyncio.sleep(0.1)
        assert len(ingest.requests) == 1

        assert await wait_for(lambda: len(ingest.requests) == 2, timeout=1.0)

    @pytest.mark.asyncio
    async def test_failed_batch_is_restored_ahead_of_new_records(self, make_client, ingest):
        ingest.statuses = [500]
        ingest.delay = 0.05
        client = make_client(flush_interval=10.0)
        client.info("a")
        client.info("b")

        pending = asyncio.create_task(client.flush())
        await asyncio.sleep(0.01)
        client.info("c")
        await pending

        assert await wait_for(lambda: client.size()["logs"] == 0)
        assert [r["message"] for r in ingest.bodies()[-1]] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_failing_queue_does_not_block_the_other(self, make_client, ingest):
        ingest.statuses = [503]
        client = make_client(flush_interval=10.0)
        client.track("retried")
        client.info("delivered")

        outcome = await client.flush()

        assert outcome.failed is True
        assert outcome.sent == 1
        assert ingest.paths()[:2] == ["/api/7/track/", "/api/7/logs/"]
        assert await wait_for(lambda: client.size()["track"] == 0)

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self, make_client, ingest):
        ingest.error = httpx.ConnectError("refused")
        client = make_client(flush_interval=10.0)
        client.info("a")

        outcome = await client.flush()
        assert outcome.failed is True
        assert "refused" in client.get_stats()["last_error"]

        ingest.error = None
        assert await wait_for(lambda: client.size()["logs"] == 0)

    @pytest.mark.asyncio
    async def test_drop_statuses_discard_batch(self, make_client, ingest):
        ingest.statuses = [400]
        client = make_client(flush_interval=10.0, drop_statuses=[400])
        client.info("malformed")

        outcome = await client.flush()

        assert outcome == FlushOutcome(sent=0, failed=False, remaining=0)
        assert client.get_stats()["dropped_count"] == 1

    @pytest.mark.asyncio
    async def test_auth_failure_warns(self, make_client, ingest, caplog):
        ingest.statuses = [401]
        client = make_client(flush_interval=10.0)
        client.info("a")

        await client.flush()

        assert "project key" in caplog.text

    @pytest.mark.asyncio
    async def test_unencodable_project_key_keeps_records(self, make_client, ingest):
        client = make_client(flush_interval=10.0, project_key="clé-☃")
        client.info("keep me")

        outcome = await client.flush()

        assert outcome == FlushOutcome(sent=0, failed=True, remaining=1)
        stats = client.get_stats()
        assert stats["queued_logs"] == 1
        assert stats["error_count"] >= 1
        assert stats["backoff_delay"] > 0

    @pytest.mark.asyncio
    async def test_transport_exception_restores_batch_and_retries(self, make_client, ingest, mocker):
        client = make_client(flush_interval=10.0)
        real_send = client.transport.send
        calls = []

        async def flaky_send(path, batch):
            calls.append(path)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return await real_send(path, batch)

        mocker.patch.object(client.transport, "send", side_effect=flaky_send)
        client.info("a")
        client.info("b")

        outcome = await client.flush()

        assert outcome == FlushOutcome(sent=0, failed=True, remaining=2)
        assert "boom" in client.get_stats()["last_error"]
        assert await wait_for(lambda: client.size()["logs"] == 0)
        assert ingest.received() == ["a", "b"]

    @pytest.mark.asyncio
    async def test_cancelled_send_restores_batch(self, make_client, ingest):
        ingest.delay = 0.5
        client = make_client(flush_interval=10.0)
        client.info("a")
        client.info("b")

        task = client.dispatcher.trigger()
        assert await wait_for(lambda: len(ingest.requests) == 1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert client.size()["logs"] == 2
        ingest.delay = 0.0
        outcome = await client.flush()
        assert outcome.sent == 2
        assert ingest.received()[-2:] == ["a", "b"]
