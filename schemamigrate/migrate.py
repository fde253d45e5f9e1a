"""Reads migrations from a source and applies them to a database.

Source drivers are kept simple; all migration logic lives here. A database
driver is any object with ``lock``, ``unlock``, ``version`` (returning the
version, -1 for none, and a dirty flag), ``set_version``, ``run``, ``drop``
and ``close`` methods.
"""

from __future__ import annotations

import errno
import queue
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import BinaryIO, Callable, Iterable, Iterator, Protocol
from urllib.parse import urlsplit

from .migration import Migration, MultiError, suint
from .sources.registry import SourceDriver, open_source

DEFAULT_PREFETCH_MIGRATIONS = 10
"""Migrations read ahead from the source while earlier ones run."""

DEFAULT_LOCK_TIMEOUT = 15.0
"""Seconds a database driver has to acquire its lock."""

_NIL_VERSION = -1
_PUT_POLL = 0.05
_END = object()


class _DatabaseDriver(Protocol):
    def lock(self) -> None: ...

    def unlock(self) -> None: ...

    def version(self) -> tuple[int, bool]: ...

    def set_version(self, version: int, dirty: bool) -> None: ...

    def run(self, migration: BinaryIO) -> None: ...

    def drop(self) -> None: ...

    def close(self) -> None: ...


class NoChangeError(Exception):
    """Raised when there is nothing to migrate."""

    def __init__(self) -> None:
        super().__init__("no change")


class NilVersionError(Exception):
    """Raised when no migration has been applied yet."""

    def __init__(self) -> None:
        super().__init__("no migration")


class InvalidVersionError(ValueError):
    """Raised when a forced version is below -1."""

    def __init__(self) -> None:
        super().__init__("version must be >= -1")


class LockedError(Exception):
    """Raised when the database is already locked by this instance."""

    def __init__(self) -> None:
        super().__init__("database locked")


class LockTimeoutError(TimeoutError):
    """Raised when the database lock cannot be acquired in time."""

    def __init__(self) -> None:
        super().__init__("timeout: can't acquire database lock")


class ShortLimitError(Exception):
    """Raised when the source has fewer migrations than were asked for."""

    def __init__(self, short: int) -> None:
        super().__init__(f"limit {short} short")
        self.short = short


class DirtyError(Exception):
    """Raised when the database is marked dirty at ``version``."""

    def __init__(self, version: int) -> None:
        super().__init__(f"Dirty database version {version}. Fix and force version.")
        self.version = version


def _scheme_from_url(url: str) -> str:
    if not url:
        raise ValueError("URL cannot be empty")
    scheme = urlsplit(url).scheme
    if not scheme:
        raise ValueError("no scheme")
    return scheme


def _release(migration: Migration) -> None:
    for stream in (migration.buffered_body, migration.body):
        if stream is not None:
            try:
                stream.close()
            except Exception:
                pass


def _discard(items: queue.Queue) -> None:
    while True:
        try:
            item = items.get_nowait()
        except queue.Empty:
            return
        if isinstance(item, Migration):
            _release(item)


class Migrate:
    """Runs migrations from a source driver against a database driver."""

    def __init__(
        self,
        source_name: str,
        source: SourceDriver,
        database_name: str,
        database: _DatabaseDriver,
    ) -> None:
        self.source_name = source_name
        self.source = source
        self.database_name = database_name
        self.database = database
        self.log: Callable[[str], None] | None = None
        self.verbose = False
        self.prefetch_migrations = DEFAULT_PREFETCH_MIGRATIONS
        self.lock_timeout = DEFAULT_LOCK_TIMEOUT
        self._stop_event = threading.Event()
        self._locked_mutex = threading.Lock()
        self._is_locked = False

    def __enter__(self) -> "Migrate":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the source and the database."""
        self._log_verbose("Closing source and database")
        errors: list[Exception] = []
        for closer in (self.source.close, self.database.close):
            try:
                closer()
            except Exception as error:
                errors.append(error)
        if errors:
            raise MultiError(*errors)

    def migrate(self, version: int) -> None:
        """Migrate up or down to ``version``."""
        target = suint(version)
        with self._locked():
            current = self._clean_version()
            self._run_migrations(self._read(current, target))

    def steps(self, n: int) -> None:
        """Apply ``n`` migrations: up when positive, down when negative."""
        if n == 0:
            raise NoChangeError()
        with self._locked():
            current = self._clean_version()
            if n > 0:
                self._run_migrations(self._read_up(current, n))
            else:
                self._run_migrations(self._read_down(current, -n))

    def up(self) -> None:
        """Apply all up migrations."""
        with self._locked():
            current = self._clean_version()
            self._run_migrations(self._read_up(current, -1))

    def down(self) -> None:
        """Apply all down migrations."""
        with self._locked():
            current = self._clean_version()
            self._run_migrations(self._read_down(current, -1))

    def drop(self) -> None:
        """Delete everything in the database."""
        with self._locked():
            self.database.drop()

    def run(self, *args: Migration) -> None:
        """Run the given migrations without consulting the source."""
        if not args:
            raise NoChangeError()
        with self._locked():
            self._clean_version()
            self._run_migrations(self._scheduled(args))

    def force(self, version: int) -> None:
        """Set the version and clear the dirty flag without running anything."""
        if version < -1:
            raise InvalidVersionError()
        with self._locked():
            self.database.set_version(version, False)

    def version(self) -> tuple[int, bool]:
        """Return the current version and dirty flag."""
        current, dirty = self.database.version()
        if current == _NIL_VERSION:
            raise NilVersionError()
        return suint(current), dirty

    def request_stop(self) -> None:
        """Stop running migrations at the next safe point."""
        self._stop_event.set()

    def _should_stop(self) -> bool:
        return self._stop_event.is_set()

    def _clean_version(self) -> int:
        current, dirty = self.database.version()
        if dirty:
            raise DirtyError(current)
        return current

    def _scheduled(self, migrations: Iterable[Migration]) -> Iterator[Migration]:
        for migration in migrations:
            self._log_scheduled(migration)
            yield migration

    def _read(self, from_: int, to: int) -> Iterator[Migration]:
        if from_ >= 0:
            self._version_exists(suint(from_))
        if to >= 0:
            self._version_exists(suint(to))
        if from_ == to:
            raise NoChangeError()

        if from_ < to:
            if from_ == -1:
                first = self.source.first()
                yield self._new_migration(first, first)
                from_ = first
            while from_ < to:
                if self._should_stop():
                    return
                following = self.source.next(suint(from_))
                yield self._new_migration(following, following)
                from_ = following
            return

        while from_ > to and from_ >= 0:
            if self._should_stop():
                return
            try:
                previous = self.source.prev(suint(from_))
            except FileNotFoundError:
                if to != -1:
                    raise
                yield self._new_migration(suint(from_), -1)
                return
            yield self._new_migration(suint(from_), previous)
            from_ = previous

    def _read_up(self, from_: int, limit: int) -> Iterator[Migration]:
        if from_ >= 0:
            self._version_exists(suint(from_))
        if limit == 0:
            raise NoChangeError()

        count = 0
        while limit == -1 or count < limit:
            if self._should_stop():
                return
            if from_ == -1:
                first = self.source.first()
                yield self._new_migration(first, first)
                from_ = first
                count += 1
                continue
            try:
                following = self.source.next(suint(from_))
            except FileNotFoundError as error:
                if limit == -1 and count == 0:
                    raise NoChangeError() from error
                if limit == -1:
                    return
                if count == 0:
                    raise
                raise ShortLimitError(suint(limit - count)) from error
            yield self._new_migration(following, following)
            from_ = following
            count += 1

    def _read_down(self, from_: int, limit: int) -> Iterator[Migration]:
        if from_ >= 0:
            self._version_exists(suint(from_))
        if limit == 0:
            raise NoChangeError()
        if from_ == -1 and limit == -1:
            raise NoChangeError()
        if from_ == -1 and limit > 0:
            raise FileNotFoundError(errno.ENOENT, "no version to migrate down from")

        count = 0
        while limit == -1 or count < limit:
            if self._should_stop():
                return
            try:
                previous = self.source.prev(suint(from_))
            except FileNotFoundError:
                if limit == -1 or limit - count > 0:
                    first = self.source.first()
                    yield self._new_migration(first, -1)
                    count += 1
                if count < limit:
                    raise ShortLimitError(suint(limit - count))
                return
            yield self._new_migration(suint(from_), previous)
            from_ = previous
            count += 1

    def _run_migrations(self, migrations: Iterator[Migration]) -> None:
        items: queue.Queue = queue.Queue(maxsize=max(int(self.prefetch_migrations), 1))
        done = threading.Event()
        producer = threading.Thread(
            target=self._produce, args=(migrations, items, done), daemon=True
        )
        producer.start()
        try:
            while True:
                item = items.get()
                if item is _END:
                    return
                if self._should_stop():
                    return
                if isinstance(item, BaseException):
                    raise item
                self._apply(item)
        finally:
            done.set()
            _discard(items)

    def _produce(
        self, migrations: Iterator[Migration], items: queue.Queue, done: threading.Event
    ) -> None:
        def put(item: object) -> bool:
            while not done.is_set():
                try:
                    items.put(item, timeout=_PUT_POLL)
                except queue.Full:
                    continue
                return True
            return False

        try:
            for migration in migrations:
                if not put(migration):
                    _release(migration)
                    return
                threading.Thread(
                    target=self._buffer, args=(migration,), daemon=True
                ).start()
                if done.is_set():
                    _discard(items)
                    return
        except Exception as error:
            put(error)
            return
        finally:
            closer = getattr(migrations, "close", None)
            if callable(closer):
                closer()
        put(_END)

    def _buffer(self, migration: Migration) -> None:
        try:
            migration.buffer()
        except Exception as error:
            self._log_err(error)

    def _apply(self, migration: Migration) -> None:
        self.database.set_version(migration.target_version, True)

        if migration.body is not None and migration.buffered_body is not None:
            self._log_verbose(f"Read and execute {migration.log_string()}")
            try:
                self.database.run(migration.buffered_body)
            finally:
                migration.buffered_body.close()

        self.database.set_version(migration.target_version, False)

        end = datetime.now()
        started = migration.started_buffering or end
        finished = migration.finished_reading or end
        read_time = finished - started
        run_time = end - finished
        if self.verbose:
            self._log_printf(
                f"Finished {migration.log_string()} (read {read_time}, ran {run_time})"
            )
        else:
            self._log_printf(f"{migration.log_string()} ({read_time + run_time})")

    def _version_exists(self, version: int) -> None:
        missing: FileNotFoundError | None = None
        for reader in (self.source.read_up, self.source.read_down):
            try:
                body, _ = reader(version)
            except FileExistsError:
                return
            except FileNotFoundError as error:
                missing = error
                continue
            body.close()
            return

        error = FileNotFoundError(
            errno.ENOENT, f"no migration found for version {version}: {missing}"
        )
        self._log_err(error)
        raise error from missing

    def _new_migration(self, version: int, target_version: int) -> Migration:
        reader = self.source.read_up if target_version >= version else self.source.read_down
        try:
            body, identifier = reader(version)
        except FileNotFoundError:
            migration = Migration(None, "", version, target_version)
        else:
            migration = Migration(body, identifier, version, target_version)
        self._log_scheduled(migration)
        return migration

    def _log_scheduled(self, migration: Migration) -> None:
        if self.prefetch_migrations > 0 and migration.body is not None:
            self._log_verbose(f"Start buffering {migration.log_string()}")
        else:
            self._log_verbose(f"Scheduled {migration.log_string()}")

    def _lock(self) -> None:
        with self._locked_mutex:
            if self._is_locked:
                raise LockedError()

            outcome: list[Exception] = []
            finished = threading.Event()

            def attempt() -> None:
                try:
                    self.database.lock()
                except Exception as error:
                    outcome.append(error)
                finished.set()

            threading.Thread(target=attempt, daemon=True).start()
            if not finished.wait(self.lock_timeout):
                raise LockTimeoutError()
            if outcome:
                raise outcome[0]
            self._is_locked = True

    def _unlock(self) -> None:
        with self._locked_mutex:
            self.database.unlock()
            self._is_locked = False

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self._lock()
        try:
            yield
        except Exception as error:
            try:
                self._unlock()
            except Exception as unlock_error:
                raise MultiError(error, unlock_error) from error
            raise
        except BaseException:
            self._unlock()
            raise
        self._unlock()

    def _log_printf(self, message: str) -> None:
        if self.log is not None:
            self.log(message)

    def _log_verbose(self, message: str) -> None:
        if self.log is not None and self.verbose:
            self.log(message)

    def _log_err(self, error: BaseException) -> None:
        if self.log is not None:
            self.log(f"error: {error}")


def new_with_instance(
    source_name: str,
    source_instance: SourceDriver,
    database_name: str,
    database_instance: _DatabaseDriver,
) -> Migrate:
    """Create a Migrate from existing source and database drivers."""
    return Migrate(source_name, source_instance, database_name, database_instance)


def new_with_database_instance(
    source_url: str, database_name: str, database_instance: _DatabaseDriver
) -> Migrate:
    """Create a Migrate from a source URL and an existing database driver."""
    source_name = _scheme_from_url(source_url)
    source = open_source(source_url)
    return Migrate(source_name, source, database_name, database_instance)