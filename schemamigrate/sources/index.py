"""In-memory index of migration files and the file-name parser."""

from __future__ import annotations

import bisect
import re
from dataclasses import dataclass
from enum import Enum

_MAX_VERSION = 2**64 - 1


class Direction(str, Enum):
    """Direction of a migration file."""

    DOWN = "down"
    UP = "up"


@dataclass(frozen=True)
class SourceMigration:
    """One migration file as known to a source driver."""

    version: int
    direction: Direction
    identifier: str = ""
    raw: str = ""


class ParseError(ValueError):
    """Raised when a file name does not look like a migration."""

    def __init__(self, message: str = "no match") -> None:
        super().__init__(message)


class DuplicateMigrationError(Exception):
    """Raised when two files describe the same version and direction."""

    def __init__(self, migration: SourceMigration, name: str) -> None:
        super().__init__(f"duplicate migration file: {name}")
        self.migration = migration
        self.name = name


_PATTERN = re.compile(
    rf"([0-9]+)_(.*)\.({Direction.DOWN.value}|{Direction.UP.value})\.(.*)"
)


def parse(raw: str) -> SourceMigration:
    """Parse a name such as ``123_name.up.sql`` into a SourceMigration."""
    match = _PATTERN.fullmatch(raw)
    if match is None:
        raise ParseError()
    version = int(match.group(1))
    if version > _MAX_VERSION:
        raise ParseError(f"version {match.group(1)} out of range")
    return SourceMigration(
        version=version,
        direction=Direction(match.group(3)),
        identifier=match.group(2),
        raw=raw,
    )


class Migrations:
    """Ordered collection of migrations keyed by version and direction."""

    def __init__(self) -> None:
        self._index: list[int] = []
        self._migrations: dict[int, dict[Direction, SourceMigration]] = {}

    def __len__(self) -> int:
        return len(self._index)

    def append(self, migration: SourceMigration | None) -> bool:
        """Add a migration; return False if it is None or a duplicate."""
        if migration is None:
            return False
        by_direction = self._migrations.get(migration.version)
        if by_direction is None:
            by_direction = {}
            self._migrations[migration.version] = by_direction
            bisect.insort(self._index, migration.version)
        if migration.direction in by_direction:
            return False
        by_direction[migration.direction] = migration
        return True

    def first(self) -> int | None:
        """Return the lowest version, or None if there is none."""
        return self._index[0] if self._index else None

    def prev(self, version: int) -> int | None:
        """Return the version before ``version``, or None."""
        pos = self._find_pos(version)
        if pos >= 1:
            return self._index[pos - 1]
        return None

    def next(self, version: int) -> int | None:
        """Return the version after ``version``, or None."""
        pos = self._find_pos(version)
        if pos >= 0 and pos + 1 < len(self._index):
            return self._index[pos + 1]
        return None

    def up(self, version: int) -> SourceMigration | None:
        """Return the up migration of ``version``, or None."""
        return self._migrations.get(version, {}).get(Direction.UP)

    def down(self, version: int) -> SourceMigration | None:
        """Return the down migration of ``version``, or None."""
        return self._migrations.get(version, {}).get(Direction.DOWN)

    def _find_pos(self, version: int) -> int:
        pos = bisect.bisect_left(self._index, version)
        if pos < len(self._index) and self._index[pos] == version:
            return pos
        return -1