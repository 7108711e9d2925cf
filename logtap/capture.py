"""
Host error signal sources for automatic error capture.

Each source hooks one of the interpreter's global error surfaces, forwards
what it sees to a callback as a HostError, and then hands the error on to
whatever hook was installed before it.

Usage:
    client.capture_errors()  # sys.excepthook, threading.excepthook, asyncio

    # Or pick sources explicitly
    client.capture_errors([ThreadingExceptHookSource()])
"""

import asyncio
import logging
import sys
import threading
import traceback
from collections.abc import Callable
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any, Protocol

from .models import Level

logger = logging.getLogger(__name__)


@dataclass
class HostError:
    """An error observed on a host error surface."""

    kind: str
    level: Level
    message: str
    exc: BaseException | None = None
    fields: dict[str, Any] = field(default_factory=dict)

    def to_fields(self) -> dict[str, Any]:
        out: dict[str, Any] = {"kind": self.kind}
        if self.exc is not None:
            out["exception"] = type(self.exc).__name__
            out["stack"] = format_stack(self.exc)
        out.update(self.fields)
        return out


HostErrorCallback = Callable[[HostError], None]


class ErrorSignalSource(Protocol):
    def install(self, callback: HostErrorCallback) -> None: ...

    def uninstall(self) -> None: ...


def format_stack(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def exception_message(exc: BaseException | None, default: str) -> str:
    if exc is None:
        return default
    text = str(exc).strip()
    return text or type(exc).__name__


def _deliver(callback: HostErrorCallback, error: HostError):
    # A failing capture must never make the host's error handling worse
    try:
        callback(error)
    except Exception as e:
        logger.debug(f"Error capture callback failed: {e}")


class SysExceptHookSource:
    """Uncaught exceptions in the main thread, reported as fatal."""

    def __init__(self):
        self._previous = None
        self._hook = None

    def install(self, callback: HostErrorCallback):
        if self._hook is not None:
            return
        previous = sys.excepthook

        def hook(exc_type: type[BaseException], exc: BaseException, tb: TracebackType | None):
            if not issubclass(exc_type, KeyboardInterrupt):
                _deliver(
                    callback,
                    HostError(
                        kind="uncaught_exception",
                        level=Level.FATAL,
                        message=exception_message(exc, "uncaught exception"),
                        exc=exc,
                    ),
                )
            previous(exc_type, exc, tb)

        self._previous = previous
        self._hook = hook
        sys.excepthook = hook

    def uninstall(self):
        if self._hook is None:
            return
        if sys.excepthook is self._hook:
            sys.excepthook = self._previous
        self._hook = None
        self._previous = None


class ThreadingExceptHookSource:
    """Exceptions escaping Thread.run, reported as errors."""

    def __init__(self):
        self._previous = None
        self._hook = None

    def install(self, callback: HostErrorCallback):
        if self._hook is not None:
            return
        previous = threading.excepthook

        def hook(args: threading.ExceptHookArgs):
            if args.exc_type is not SystemExit:
                thread_name = args.thread.name if args.thread is not None else None
                _deliver(
                    callback,
                    HostError(
                        kind="thread_exception",
                        level=Level.ERROR,
                        message=exception_message(args.exc_value, "thread exception"),
                        exc=args.exc_value,
                        fields={"thread": thread_name},
                    ),
                )
            previous(args)

        self._previous = previous
        self._hook = hook
        threading.excepthook = hook

    def uninstall(self):
        if self._hook is None:
            return
        if threading.excepthook is self._hook:
            threading.excepthook = self._previous
        self._hook = None
        self._previous = None


class AsyncioExceptionSource:
    """
    Event-loop exception handler: unretrieved task exceptions and errors in
    callbacks, reported as errors. Chains to the previous handler, or the
    loop's default handler when there was none.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self.loop = loop
        self._previous = None
        self._handler = None

    def install(self, callback: HostErrorCallback):
        if self._handler is not None:
            return
        loop = self.loop or asyncio.get_running_loop()
        previous = loop.get_exception_handler()

        def handler(loop: asyncio.AbstractEventLoop, context: dict[str, Any]):
            exc = context.get("exception")
            _deliver(
                callback,
                HostError(
                    kind="unhandled_async_exception",
                    level=Level.ERROR,
                    message=exception_message(exc, str(context.get("message") or "unhandled async exception")),
                    exc=exc,
                    fields={"context": str(context.get("message") or "")},
                ),
            )
            if previous is not None:
                previous(loop, context)
            else:
                loop.default_exception_handler(context)

        self.loop = loop
        self._previous = previous
        self._handler = handler
        loop.set_exception_handler(handler)

    def uninstall(self):
        if self._handler is None:
            return
        if not self.loop.is_closed() and self.loop.get_exception_handler() is self._handler:
            self.loop.set_exception_handler(self._previous)
        self._handler = None
        self._previous = None


def default_sources(loop: asyncio.AbstractEventLoop | None = None) -> list[ErrorSignalSource]:
    sources: list[ErrorSignalSource] = [SysExceptHookSource(), ThreadingExceptHookSource()]
    if loop is not None:
        sources.append(AsyncioExceptionSource(loop))
    return sources
