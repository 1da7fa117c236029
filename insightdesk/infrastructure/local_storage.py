"""Key-value storage backing guest sessions.

Each guest session owns one :class:`LocalStorageDriver`. Values are opaque
strings (serialised JSON); the driver never interprets them.
"""
from __future__ import annotations

import hashlib
import os
import re
import threading
from collections import OrderedDict
from pathlib import Path
from typing import Protocol

from insightdesk.core.logging import get_logger
from insightdesk.domain.errors import BackendUnavailableError

LOGGER = get_logger(__name__)

_SAFE_NAME = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class LocalStorageDriver(Protocol):
    """Contract for guest-side key-value storage."""

    def get(self, key: str) -> str | None:
        """Return the stored value or ``None``."""

    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``."""

    def remove(self, key: str) -> None:
        """Drop ``key`` if present."""


class InMemoryLocalStorage:
    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove(self, key: str) -> None:
        self._items.pop(key, None)


def _safe_name(value: str) -> str:
    if _SAFE_NAME.match(value):
        return value
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class FileLocalStorage:
    """Stores every key as a JSON file under ``root``."""

    def __init__(self, root: Path) -> None:
        self._root = root

    def _path(self, key: str) -> Path:
        return self._root / f"{_safe_name(key)}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise BackendUnavailableError(f"Local storage read failed: {exc}") from exc

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            tmp.write_text(value, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            raise BackendUnavailableError(f"Local storage write failed: {exc}") from exc

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise BackendUnavailableError(f"Local storage remove failed: {exc}") from exc


class LocalStorageRegistry:
    """Hands out one storage driver per guest session.

    At most ``capacity`` sessions stay open. Evicting a file-backed session
    only closes it; evicting an in-memory session discards its data, which is
    the lifetime guests get when no storage root is configured.
    """

    def __init__(self, root: Path | None = None, capacity: int = 10_000) -> None:
        if capacity < 1:
            raise ValueError("session capacity must be positive")
        self._root = root
        self._capacity = capacity
        self._sessions: OrderedDict[str, LocalStorageDriver] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def for_session(self, session: str | None) -> LocalStorageDriver:
        name = _safe_name(session or "default")
        with self._lock:
            driver = self._sessions.get(name)
            if driver is not None:
                self._sessions.move_to_end(name)
                return driver
            if self._root is None:
                driver = InMemoryLocalStorage()
            else:
                driver = FileLocalStorage(self._root / name)
            self._sessions[name] = driver
            LOGGER.debug("Opened local storage for guest session %s", name)
            while len(self._sessions) > self._capacity:
                evicted, _ = self._sessions.popitem(last=False)
                LOGGER.info("Closed least recently used guest session %s", evicted)
            return driver

    def reset(self) -> None:
        with self._lock:
            self._sessions.clear()
