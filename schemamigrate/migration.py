"""A single migration as it is run against a database, plus helpers."""

from __future__ import annotations

import io
import threading
from datetime import datetime
from typing import BinaryIO
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

DEFAULT_BUFFER_SIZE = 100_000
"""Bytes read ahead from a migration body before it is handed on."""

EMPTY_IDENTIFIER = "<empty>"


class _Pipe(io.RawIOBase):
    """In-memory pipe: a writer thread feeds it, a reader drains it.

    ``feed`` blocks until the reader has consumed what was fed, which keeps
    the writer from running ahead of the reader.
    """

    def __init__(self) -> None:
        super().__init__()
        self._cond = threading.Condition()
        self._data = bytearray()
        self._write_closed = False
        self._reader_closed = False
        self._error: BaseException | None = None

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:  # type: ignore[override]
        with self._cond:
            while not self._data and not self._write_closed:
                self._cond.wait()
            if not self._data:
                if self._error is not None:
                    raise self._error
                return 0
            size = min(len(buffer), len(self._data))
            buffer[:size] = self._data[:size]
            del self._data[:size]
            self._cond.notify_all()
            return size

    def feed(self, chunk: bytes) -> None:
        with self._cond:
            if self._reader_closed:
                raise BrokenPipeError("read side of the migration body is closed")
            self._data.extend(chunk)
            self._cond.notify_all()
            while self._data and not self._reader_closed:
                self._cond.wait()
            if self._data:
                raise BrokenPipeError("read side of the migration body is closed")

    def finish(self, error: BaseException | None = None) -> None:
        with self._cond:
            self._write_closed = True
            self._error = error
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._reader_closed = True
            self._cond.notify_all()
        super().close()


class Migration:
    """A migration read from a source and applied to a database.

    A migration without a body is a nil migration: it only moves the
    version. A ``target_version`` of -1 means no version at all.
    """

    def __init__(
        self,
        body: BinaryIO | None = None,
        identifier: str = "",
        version: int = 0,
        target_version: int = 0,
    ) -> None:
        now = datetime.now()
        self.identifier = identifier
        self.version = version
        self.target_version = target_version
        self.body = body
        self.buffer_size = 0
        self.buffered_body: BinaryIO | None = None
        self.scheduled = now
        self.started_buffering: datetime | None = None
        self.finished_buffering: datetime | None = None
        self.finished_reading: datetime | None = None
        self.bytes_read = 0
        self._pipe: _Pipe | None = None

        if body is None:
            if not identifier:
                self.identifier = EMPTY_IDENTIFIER
            self.started_buffering = now
            self.finished_buffering = now
            self.finished_reading = now
            return

        self._pipe = _Pipe()
        self.buffer_size = DEFAULT_BUFFER_SIZE
        self.buffered_body = self._pipe  # type: ignore[assignment]

    def __str__(self) -> str:
        return f"{self.identifier} [{self.version}=>{self.target_version}]"

    def __repr__(self) -> str:
        return f"Migration({self})"

    def log_string(self) -> str:
        """Describe the migration for humans, e.g. ``3/u create_users``."""
        direction = "d" if self.target_version < self.version else "u"
        return f"{self.version}/{direction} {self.identifier}"

    def buffer(self) -> None:
        """Read the body ahead and pass it on to ``buffered_body``.

        Blocks until everything has been consumed by the reader, so it is
        meant to run in its own thread.
        """
        if self.body is None or self._pipe is None:
            return

        self.started_buffering = datetime.now()
        size = max(int(self.buffer_size), 1)
        try:
            chunk = self.body.read(size)
            self.finished_buffering = datetime.now()
            total = 0
            while chunk:
                self._pipe.feed(chunk)
                total += len(chunk)
                chunk = self.body.read(size)
        except BaseException as error:
            self._pipe.finish(error)
            raise

        self.finished_reading = datetime.now()
        self.bytes_read = total
        self._pipe.finish()
        self.body.close()


class MultiError(Exception):
    """Several errors reported as one; None entries are dropped."""

    def __init__(self, *errors: BaseException | None) -> None:
        self.errors = [error for error in errors if error is not None]
        super().__init__(
            " and ".join(str(error) for error in self.errors if str(error))
        )


def suint(n: int) -> int:
    """Return ``n`` as an unsigned value, raising ValueError if negative."""
    if n < 0:
        raise ValueError(f"suint({n}) expects input >= 0")
    return n


def filter_custom_query(url: str) -> str:
    """Return ``url`` without query parameters whose names start with ``x-``."""
    parts = urlsplit(url)
    pairs = parse_qsl(parts.query, keep_blank_values=True)
    kept = [(key, value) for key, value in pairs if not key.startswith("x-")]
    kept.sort(key=lambda pair: pair[0])
    return urlunsplit(parts._replace(query=urlencode(kept)))