"""Tests for the standard logging bridge."""

import logging

import pytest

from logtap.handler import LogtapHandler, level_for, setup_logging
from logtap.models import Level
from logtap.queue_store import QueueKind


@pytest.fixture
async def bridged_logger(make_client):
    """A private logger wired to a fresh client through LogtapHandler."""
    client = make_client(flush_interval=10.0)
    handler = LogtapHandler(client, min_level=logging.DEBUG)
    log = logging.getLogger("tests.handler")
    log.setLevel(logging.DEBUG)
    log.addHandler(handler)
    log.propagate = False
    yield client, log
    log.removeHandler(handler)
    log.propagate = True


@pytest.mark.parametrize(
    "levelno,expected",
    [
        (logging.DEBUG, Level.DEBUG),
        (logging.INFO, Level.INFO),
        (logging.WARNING, Level.WARN),
        (logging.ERROR, Level.ERROR),
        (logging.CRITICAL, Level.FATAL),
        (5, Level.DEBUG),
    ],
)
def test_level_mapping(levelno, expected):
    assert level_for(levelno) == expected


class TestLogtapHandler:
    """Tests for LogtapHandler."""

    @pytest.mark.asyncio
    async def test_extras_become_fields(self, bridged_logger, ingest):
        client, log = bridged_logger
        log.warning("Payment %s", "declined", extra={"user_id": "u123", "amount": 9.5, "trace_id": "t-9"})

        await client.flush()

        record = ingest.bodies()[0][0]
        assert record["level"] == "warn"
        assert record["message"] == "Payment declined"
        assert record["trace_id"] == "t-9"
        assert record["fields"]["user_id"] == "u123"
        assert record["fields"]["amount"] == 9.5
        assert record["fields"]["logger"] == "tests.handler"

    @pytest.mark.asyncio
    async def test_exception_info_is_attached(self, bridged_logger, ingest):
        client, log = bridged_logger
        try:
            raise ValueError("bad")
        except ValueError:
            log.exception("Job failed")

        await client.flush()

        fields = ingest.bodies()[0][0]["fields"]
        assert fields["exception"] == "ValueError"
        assert "ValueError: bad" in fields["stack"]

    @pytest.mark.asyncio
    async def test_unserializable_extras_are_skipped(self, bridged_logger):
        client, log = bridged_logger
        log.info("odd extras", extra={"obj": object(), "items": [1, 2]})

        record = client.queues.peek_batch(QueueKind.LOGS, 1)[0]
        assert "obj" not in record.fields
        assert record.fields["items"] == [1, 2]

    @pytest.mark.asyncio
    async def test_sdk_loggers_are_ignored(self, make_client):
        client = make_client(flush_interval=10.0)
        handler = LogtapHandler(client)
        handler.handle(logging.makeLogRecord({"name": "logtap.dispatcher", "msg": "internal", "levelno": logging.ERROR}))

        assert client.size()["logs"] == 0

    @pytest.mark.asyncio
    async def test_below_min_level_is_dropped(self, make_client):
        client = make_client(flush_interval=10.0)
        handler = LogtapHandler(client, min_level=logging.WARNING)
        log = logging.getLogger("tests.min_level")
        log.setLevel(logging.DEBUG)
        log.addHandler(handler)
        log.propagate = False
        try:
            log.info("chatty")
            log.warning("important")
        finally:
            log.removeHandler(handler)
            log.propagate = True

        assert client.size()["logs"] == 1


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.mark.asyncio
    async def test_attaches_to_root_logger(self, make_client):
        client = make_client(flush_interval=10.0)
        root = logging.getLogger()
        before = list(root.handlers)
        previous_level = root.level

        handler = setup_logging(client, also_console=False)
        try:
            assert handler in root.handlers
            logging.getLogger("app.module").info("via root")
            assert client.size()["logs"] == 1
        finally:
            root.handlers = before
            root.setLevel(previous_level)
