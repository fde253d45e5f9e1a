"""Source driver reading migrations from a directory tree.

The root may be a ``pathlib.Path`` or any object with the same traversal
interface, such as ``zipfile.Path`` for migrations kept in an archive.
"""

from __future__ import annotations

import errno
import os
from typing import Any, BinaryIO

from .index import DuplicateMigrationError, Migrations, ParseError, parse
from .registry import SourceDriver


def _not_found(op: str, path: str) -> FileNotFoundError:
    return FileNotFoundError(errno.ENOENT, f"{op}: {os.strerror(errno.ENOENT)}", path)


def _resolve(root: Any, path: str) -> Any:
    node = root
    for part in path.split("/"):
        if part in ("", "."):
            continue
        node = node.joinpath(part)
    return node


def _scan(directory: Any, path: str) -> Migrations:
    if not directory.is_dir():
        if directory.is_file():
            raise NotADirectoryError(errno.ENOTDIR, os.strerror(errno.ENOTDIR), path)
        raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), path)

    migrations = Migrations()
    for entry in sorted(directory.iterdir(), key=lambda item: item.name):
        if entry.is_dir():
            continue
        try:
            migration = parse(entry.name)
        except ParseError:
            continue
        if not migrations.append(migration):
            raise DuplicateMigrationError(migration, entry.name)
    return migrations


class DirectorySource(SourceDriver):
    """Reads migration files found directly inside ``path`` under ``root``.

    Subdirectories and files whose names are not migrations are ignored.
    A source built without a root holds no migrations.
    """

    def __init__(self, root: Any = None, path: str = ".") -> None:
        self._root = root
        self._path = path
        self._migrations = Migrations()
        if root is not None:
            self._migrations = _scan(_resolve(root, path), path)

    @property
    def root(self) -> Any:
        """The file system root the migrations are read from."""
        return self._root

    @property
    def path(self) -> str:
        """The directory of the migrations relative to the root."""
        return self._path

    def open(self, url: str) -> SourceDriver:
        raise RuntimeError("open() cannot be called on a directory passthrough source")

    def close(self) -> None:
        closer = getattr(self._root, "close", None)
        if callable(closer):
            closer()

    def first(self) -> int:
        version = self._migrations.first()
        if version is None:
            raise _not_found("first", self._path)
        return version

    def prev(self, version: int) -> int:
        found = self._migrations.prev(version)
        if found is None:
            raise _not_found(f"prev for version {version}", self._path)
        return found

    def next(self, version: int) -> int:
        found = self._migrations.next(version)
        if found is None:
            raise _not_found(f"next for version {version}", self._path)
        return found

    def read_up(self, version: int) -> tuple[BinaryIO, str]:
        migration = self._migrations.up(version)
        if migration is None:
            raise _not_found(f"read up for version {version}", self._path)
        return self._open(migration.raw), migration.identifier

    def read_down(self, version: int) -> tuple[BinaryIO, str]:
        migration = self._migrations.down(version)
        if migration is None:
            raise _not_found(f"read down for version {version}", self._path)
        return self._open(migration.raw), migration.identifier

    def _open(self, raw: str) -> BinaryIO:
        return _resolve(self._root, f"{self._path}/{raw}").open("rb")


def new(root: Any, path: str) -> DirectorySource:
    """Create a source reading the migrations in ``path`` under ``root``."""
    return DirectorySource(root, path)