"""In-memory source driver used for testing."""

from __future__ import annotations

import errno
import io
import os
from dataclasses import dataclass, field
from typing import Any

from .index import Migrations
from .registry import SourceDriver, register


@dataclass
class StubConfig:
    """Configuration for the stub source (no options)."""


def _not_found(op: str, path: str) -> FileNotFoundError:
    return FileNotFoundError(errno.ENOENT, f"{op}: {os.strerror(errno.ENOENT)}", path)


@dataclass
class StubSource(SourceDriver):
    """Source whose migration bodies are their identifiers."""

    url: str = ""
    instance: Any = None
    migrations: Migrations = field(default_factory=Migrations)
    config: StubConfig | None = None

    def open(self, url: str) -> "StubSource":
        return StubSource(url=url, migrations=Migrations(), config=StubConfig())

    def close(self) -> None:
        return None

    def first(self) -> int:
        version = self.migrations.first()
        if version is None:
            raise _not_found("first", self.url)
        return version

    def prev(self, version: int) -> int:
        found = self.migrations.prev(version)
        if found is None:
            raise _not_found(f"prev for version {version}", self.url)
        return found

    def next(self, version: int) -> int:
        found = self.migrations.next(version)
        if found is None:
            raise _not_found(f"next for version {version}", self.url)
        return found

    def read_up(self, version: int) -> tuple[io.BytesIO, str]:
        migration = self.migrations.up(version)
        if migration is None:
            raise _not_found(f"read up version {version}", self.url)
        return io.BytesIO(migration.identifier.encode()), f"{version}.up.stub"

    def read_down(self, version: int) -> tuple[io.BytesIO, str]:
        migration = self.migrations.down(version)
        if migration is None:
            raise _not_found(f"read down version {version}", self.url)
        return io.BytesIO(migration.identifier.encode()), f"{version}.down.stub"


def with_instance(instance: Any, config: StubConfig | None) -> StubSource:
    """Create a stub source around an existing instance."""
    return StubSource(instance=instance, migrations=Migrations(), config=config)


register("stub", StubSource())