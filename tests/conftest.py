"""Pytest configuration and shared fixtures for logtap tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from typing import Any

import httpx
import pytest
from hypothesis import HealthCheck, settings

from logtap import ClientConfig, LogtapClient, MemoryStore
from tests.mocks import FAST_BACKOFF, FakeIngest

# The autouse cache-dir fixture is function scoped; property tests never touch it
settings.register_profile("logtap", suppress_health_check=[HealthCheck.function_scoped_fixture])
settings.load_profile("logtap")


@pytest.fixture(autouse=True)
def isolated_cache_dir(tmp_path, monkeypatch):
    """Keep device ids and persisted queues out of the real home directory."""
    cache_dir = tmp_path / "logtap-cache"
    monkeypatch.setenv("LOGTAP_CACHE_DIR", str(cache_dir))
    return cache_dir


@pytest.fixture
def ingest() -> FakeIngest:
    return FakeIngest()


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
async def make_client(ingest: FakeIngest, memory_store: MemoryStore) -> AsyncGenerator[Callable[..., LogtapClient], None]:
    """Factory for clients wired to the fake endpoint; all are closed afterwards."""
    clients: list[LogtapClient] = []
    http_clients: list[httpx.AsyncClient] = []

    def factory(store=None, compressor=None, clock=None, **overrides) -> LogtapClient:
        options: dict[str, Any] = {
            "base_url": "http://ingest.test",
            "project_id": 7,
            "persist_device_id": False,
            "backoff": FAST_BACKOFF,
        }
        options.update(overrides)
        http_client = httpx.AsyncClient(transport=ingest.transport)
        http_clients.append(http_client)

        kwargs: dict[str, Any] = {
            "store": store if store is not None else memory_store,
            "http_client": http_client,
            "compressor": compressor,
        }
        if clock is not None:
            kwargs["clock"] = clock
        client = LogtapClient(ClientConfig(**options), **kwargs)
        clients.append(client)
        return client

    yield factory

    ingest.statuses.clear()
    ingest.default_status = 200
    ingest.error = None
    ingest.delay = 0.0
    for client in clients:
        await client.close()
    for http_client in http_clients:
        await http_client.aclose()


@pytest.fixture
def sample_fields() -> dict:
    return {
        "order_id": "o-1001",
        "amount": 99.99,
        "items": [{"sku": "A-1", "qty": 2}],
    }
