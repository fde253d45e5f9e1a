# schemamigrate

Versioned schema migrations for Python. Migrations are read from a
*source* (a directory of files, in-memory assets, or a stub for tests) and
applied to a *database driver* that you supply, one version at a time, up or
down. All the sequencing logic lives in `schemamigrate.migrate.Migrate`;
sources and database drivers stay simple.

The package has no runtime dependencies.

## Migration files

A source holds files named

```
<version>_<title>.up.<ext>
<version>_<title>.down.<ext>
```

for example `1_create_users.up.sql` and `1_create_users.down.sql`. Versions
are non-negative integers and are applied in ascending order. A version may
have only an up or only a down file; the missing half is applied as an empty
migration that only moves the version. Files whose names do not match the
pattern are ignored; two files for the same version and direction raise
`DuplicateMigrationError`.

`schemamigrate.sources.index.parse` turns one file name into a
`SourceMigration` (fields `version`, `direction`, `identifier`, `raw`), or
raises `ParseError`:

```python
from schemamigrate.sources.index import parse

migration = parse("20170412214116_date_foobar.up.sql")
print(migration.version, migration.identifier, migration.direction.value)
# 20170412214116 date_foobar up
```

`Migrations` in the same module is the ordered index the sources use:
`append(migration)` returns `False` for `None` or a duplicate, and
`first()`, `prev(version)`, `next(version)`, `up(version)` and
`down(version)` return `None` when there is nothing to find.

## Sources

Every source subclasses `schemamigrate.sources.registry.SourceDriver` and
offers `first()`, `prev(version)`, `next(version)`, `read_up(version)` and
`read_down(version)`; the last two return a binary file object and an
identifier. Lookups that find nothing raise `FileNotFoundError`.

- `schemamigrate.sources.file.FileSource` reads a directory named by a
  `file://` URL. Host and path are joined, so `file://./foo` and `file://foo`
  are relative to the working directory; `file://` alone means the working
  directory. `parse_url(url)` returns the resulting absolute path.
- `schemamigrate.sources.partial.DirectorySource`, built with
  `new(root, path)`, reads the migrations directly inside `path` below
  `root`. The root is a `pathlib.Path` or an object with the same interface,
  such as `zipfile.Path`; subdirectories are skipped, and `close()` closes the
  root if it has a `close` method.
- `schemamigrate.sources.bindata.BindataSource` serves migrations from
  in-memory assets: bundle a list of names and a function returning an
  asset's bytes with `resource(names, asset_func)`, then call
  `with_instance(...)`. Passing anything other than an `AssetSource` raises
  `NoAssetSourceError`.
- `schemamigrate.sources.stub.StubSource` keeps its migrations in a
  `Migrations` index (its `migrations` attribute) and returns each
  migration's identifier as its body; `with_instance(instance, config)`
  creates one. It is meant for tests.

`DirectorySource` and `BindataSource` cannot be opened by URL; their `open`
raises `RuntimeError`.

Sources can be registered under a URL scheme with `register(name, driver)`
and opened with `open_source(url)`; `list_drivers()` names the registered
schemes. Importing a source module registers it: `file`, `bindata` and
`stub`. An unknown or missing scheme raises `ValueError`.

```python
from schemamigrate.sources.file import FileSource

source = FileSource().open("file://./migrations")
print(source.first())
```

## Database drivers

The package ships no database drivers. A database driver is any object with
these methods:

- `lock()` and `unlock()`
- `version()` returning `(version, dirty)`, with `-1` meaning no version
- `set_version(version, dirty)`
- `run(body)`, given a binary file object holding the migration
- `drop()` and `close()`

A minimal in-memory driver:

```python
class MemoryDatabase:
    def __init__(self):
        self.current, self.dirty, self.applied = -1, False, []

    def lock(self): pass
    def unlock(self): pass
    def version(self): return self.current, self.dirty
    def set_version(self, version, dirty): self.current, self.dirty = version, dirty
    def run(self, body): self.applied.append(body.read().decode())
    def drop(self): self.applied.clear()
    def close(self): pass
```

## Running migrations

```python
from schemamigrate.migrate import NoChangeError, new_with_instance
from schemamigrate.sources.file import FileSource

source = FileSource().open("file://./migrations")
with new_with_instance("file", source, "memory", MemoryDatabase()) as m:
    try:
        m.up()
    except NoChangeError:
        pass
    version, dirty = m.version()
```

`new_with_database_instance(source_url, database_name, database)` opens the
source from a registered URL scheme instead. Leaving the `with` block calls
`close()`, which closes the source and the database driver.

`Migrate` offers:

- `up()` / `down()`: apply every remaining up or down migration.
- `steps(n)`: move `n` versions up (`n > 0`) or down (`n < 0`); `0` raises
  `NoChangeError`.
- `migrate(version)`: go up or down until the given version is reached.
- `force(version)`: record a version and clear the dirty flag without
  running anything; `-1` means no version, anything lower raises
  `InvalidVersionError`.
- `run(*migrations)`: apply hand-built `schemamigrate.migration.Migration`
  objects without consulting the source.
- `drop()`: ask the database driver to drop everything.
- `version()`: the current version and dirty flag; raises `NilVersionError`
  before any migration has been applied.
- `request_stop()`: stop at the next safe point between migrations.
- `close()`: close the source and the database driver.

Settable attributes: `log` (a callable taking a message string, `None` by
default), `verbose` (more log lines), `prefetch_migrations` (how many
migrations are read ahead, default 10) and `lock_timeout` (seconds, default
15).

Each migration is recorded as dirty before its body runs and as clean
afterwards, so a body that fails leaves the database dirty; later runs raise
`DirtyError` until `force` is used. Other errors: `ShortLimitError` (fewer
migrations available than steps requested; its `short` attribute says how
many), `LockedError`, `LockTimeoutError`, and `FileNotFoundError` when a
version is not known to the source. An error while unlocking is reported
together with the original one in a `MultiError`.

## Helpers

`schemamigrate.migration` also holds `MultiError`, `suint(n)` (raises
`ValueError` for negative numbers) and `filter_custom_query(url)`, which
removes query parameters whose names start with `x-`.

## What is not included

There is no command-line tool and no database driver; you write the driver
for your database as described above. Sources that fetch migrations from
remote services are not provided either.