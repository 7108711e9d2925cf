"""
logtap - Python SDK for shipping structured logs and analytics events.

This package provides:
- LogtapClient: Batched, retrying, optionally persistent delivery
- LogtapHandler / setup_logging: Bridge from the standard logging module
- capture: Automatic capture of uncaught, thread and asyncio exceptions

Usage:
    from logtap import ClientConfig, LogtapClient

    async with LogtapClient(ClientConfig(base_url="http://localhost:8080", project_id=1)) as client:
        client.info("Service started", {"version": "1.2.0"})
        client.track("signup", {"plan": "pro"})
"""

from .capture import (
    AsyncioExceptionSource,
    ErrorSignalSource,
    HostError,
    SysExceptHookSource,
    ThreadingExceptHookSource,
)
from .client import LogtapClient
from .config import ClientConfig, PersistenceConfig
from .dispatcher import FlushOutcome
from .handler import LogtapHandler, setup_logging
from .models import SDK_VERSION, Level, LogRecord, TrackEvent, UserProfile
from .payload import PayloadBuilder
from .queue_store import QueueKind, QueueStore
from .resilience import Backoff, BackoffConfig
from .storage import DurableStore, FileStore, MemoryStore
from .transport import Compressor, GzipCompressor, IdentityCompressor, Transport

__all__ = [
    # Client
    "LogtapClient",
    "ClientConfig",
    "PersistenceConfig",
    "FlushOutcome",
    # Records
    "Level",
    "LogRecord",
    "TrackEvent",
    "UserProfile",
    "PayloadBuilder",
    # Queues and persistence
    "QueueKind",
    "QueueStore",
    "DurableStore",
    "FileStore",
    "MemoryStore",
    # Delivery
    "Transport",
    "Compressor",
    "GzipCompressor",
    "IdentityCompressor",
    "Backoff",
    "BackoffConfig",
    # Logging and error capture
    "LogtapHandler",
    "setup_logging",
    "ErrorSignalSource",
    "HostError",
    "SysExceptHookSource",
    "ThreadingExceptHookSource",
    "AsyncioExceptionSource",
]

__version__ = SDK_VERSION
