"""
Durable key/value stores used for persisted queues and the device id.

FileStore keeps one file per key and replaces it atomically, so a reader
never observes a half-written file even if the process dies mid-write.
MemoryStore is the in-process equivalent, useful for embedding and tests.
"""

import logging
import os
import re
import secrets
import tempfile
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "device_id"

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@runtime_checkable
class DurableStore(Protocol):
    """Minimal key/value contract; implementations may raise OSError."""

    def load(self, key: str) -> str | None: ...

    def save(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class FileStore:
    """Stores each key as a file named after it inside directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        return self.directory / _UNSAFE_KEY_CHARS.sub("_", key)

    def load(self, key: str) -> str | None:
        try:
            return self.path_for(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def save(self, key: str, value: str) -> None:
        target = self.path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp, target)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)


class MemoryStore:
    """Process-local store with the same contract as FileStore."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def load(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def save(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data)


def new_device_id() -> str:
    return f"d_{secrets.token_hex(16)}"


def load_or_create_device_id(store: DurableStore | None) -> str:
    """
    Return the installation's device id, creating and saving one if needed.

    Storage failures degrade to an unsaved id for this process only.
    """
    if store is None:
        return new_device_id()

    try:
        existing = store.load(DEVICE_ID_KEY)
        if existing and existing.strip():
            return existing.strip()
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read device id: {e}")

    device_id = new_device_id()
    save_device_id(store, device_id)
    return device_id


def save_device_id(store: DurableStore, device_id: str):
    try:
        store.save(DEVICE_ID_KEY, device_id)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not persist device id: {e}")
