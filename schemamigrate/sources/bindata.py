"""Source driver reading migrations from named in-memory assets."""

from __future__ import annotations

import errno
import io
import os
from dataclasses import dataclass
from typing import Any, Callable

from .index import DuplicateMigrationError, Migrations, ParseError, parse
from .registry import SourceDriver, register

AssetFunc = Callable[[str], bytes]

_PATH = "<bindata>"


@dataclass
class AssetSource:
    """A list of asset names and a function returning an asset's bytes."""

    names: list[str]
    asset_func: AssetFunc


class NoAssetSourceError(TypeError):
    """Raised when a bindata source is given something other than an AssetSource."""

    def __init__(self) -> None:
        super().__init__("expects AssetSource")


def resource(names: list[str], asset_func: AssetFunc) -> AssetSource:
    """Bundle asset names with the function that loads them."""
    return AssetSource(names=list(names), asset_func=asset_func)


def _not_found(op: str) -> FileNotFoundError:
    return FileNotFoundError(errno.ENOENT, f"{op}: {os.strerror(errno.ENOENT)}", _PATH)


class BindataSource(SourceDriver):
    """Source whose migrations come from an AssetSource."""

    def __init__(self, asset_source: AssetSource | None = None) -> None:
        self.path = _PATH
        self.asset_source = asset_source
        self._migrations = Migrations()
        if asset_source is not None:
            for name in asset_source.names:
                try:
                    migration = parse(name)
                except ParseError:
                    continue
                if not self._migrations.append(migration):
                    raise DuplicateMigrationError(migration, name)

    def open(self, url: str) -> SourceDriver:
        raise RuntimeError("a bindata source cannot be opened by URL; use with_instance()")

    def close(self) -> None:
        return None

    def first(self) -> int:
        version = self._migrations.first()
        if version is None:
            raise _not_found("first")
        return version

    def prev(self, version: int) -> int:
        found = self._migrations.prev(version)
        if found is None:
            raise _not_found(f"prev for version {version}")
        return found

    def next(self, version: int) -> int:
        found = self._migrations.next(version)
        if found is None:
            raise _not_found(f"next for version {version}")
        return found

    def read_up(self, version: int) -> tuple[io.BytesIO, str]:
        migration = self._migrations.up(version)
        if migration is None or self.asset_source is None:
            raise _not_found(f"read version {version}")
        body = self.asset_source.asset_func(migration.raw)
        return io.BytesIO(body), migration.identifier

    def read_down(self, version: int) -> tuple[io.BytesIO, str]:
        migration = self._migrations.down(version)
        if migration is None or self.asset_source is None:
            raise _not_found(f"read version {version}")
        body = self.asset_source.asset_func(migration.raw)
        return io.BytesIO(body), migration.identifier


def with_instance(instance: Any) -> BindataSource:
    """Create a source from an AssetSource."""
    if not isinstance(instance, AssetSource):
        raise NoAssetSourceError()
    return BindataSource(instance)


register("bindata", BindataSource())