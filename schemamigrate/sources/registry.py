"""Source driver interface and the global registry of drivers."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import BinaryIO
from urllib.parse import urlsplit

_lock = threading.RLock()
_drivers: dict[str, "SourceDriver"] = {}


class SourceDriver(ABC):
    """Interface every migration source implements.

    Lookups that find nothing raise FileNotFoundError.
    """

    @abstractmethod
    def open(self, url: str) -> "SourceDriver":
        """Return a new driver configured from ``url``."""

    @abstractmethod
    def close(self) -> None:
        """Release the underlying source."""

    @abstractmethod
    def first(self) -> int:
        """Return the first available version."""

    @abstractmethod
    def prev(self, version: int) -> int:
        """Return the version before ``version``."""

    @abstractmethod
    def next(self, version: int) -> int:
        """Return the version after ``version``."""

    @abstractmethod
    def read_up(self, version: int) -> tuple[BinaryIO, str]:
        """Return the up migration body and its identifier."""

    @abstractmethod
    def read_down(self, version: int) -> tuple[BinaryIO, str]:
        """Return the down migration body and its identifier."""


def register(name: str, driver: SourceDriver) -> None:
    """Register ``driver`` under the URL scheme ``name``."""
    if driver is None:
        raise ValueError("Register driver is nil")
    with _lock:
        if name in _drivers:
            raise ValueError(f"Register called twice for driver {name}")
        _drivers[name] = driver


def open_source(url: str) -> SourceDriver:
    """Open a registered driver chosen by the scheme of ``url``."""
    scheme = urlsplit(url).scheme
    if not scheme:
        raise ValueError("source driver: invalid URL scheme")
    with _lock:
        driver = _drivers.get(scheme)
    if driver is None:
        raise ValueError(f"source driver: unknown driver '{scheme}' (forgotten import?)")
    return driver.open(url)


def list_drivers() -> list[str]:
    """Return the names of all registered drivers."""
    with _lock:
        return list(_drivers)