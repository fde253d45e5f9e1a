import time

import pytest

from schemamigrate.migrate import (
    DirtyError,
    InvalidVersionError,
    LockedError,
    LockTimeoutError,
    NilVersionError,
    NoChangeError,
    ShortLimitError,
    new_with_database_instance,
    new_with_instance,
)
from schemamigrate.migration import Migration, MultiError
from schemamigrate.sources.index import Direction, Migrations, SourceMigration
from schemamigrate.sources.stub import StubSource

FNF = FileNotFoundError


class FakeDatabase:
    def __init__(self, lock_delay=0.0, fail_close=False):
        self.current = -1
        self.dirty = False
        self.sequence = []
        self.locked = False
        self.closed = False
        self.lock_delay = lock_delay
        self.fail_close = fail_close

    def lock(self):
        if self.lock_delay:
            time.sleep(self.lock_delay)
        if self.locked:
            raise RuntimeError("already locked")
        self.locked = True

    def unlock(self):
        self.locked = False

    def version(self):
        return self.current, self.dirty

    def set_version(self, version, dirty):
        self.current = version
        self.dirty = dirty

    def run(self, body):
        self.sequence.append(body.read().decode())

    def drop(self):
        self.sequence.append("DROP")

    def close(self):
        if self.fail_close:
            raise OSError("close failed")
        self.closed = True


def stub_migrations():
    migrations = Migrations()
    for version, direction, identifier in [
        (1, Direction.UP, "CREATE 1"),
        (1, Direction.DOWN, "DROP 1"),
        (3, Direction.UP, "CREATE 3"),
        (4, Direction.UP, "CREATE 4"),
        (4, Direction.DOWN, "DROP 4"),
        (5, Direction.DOWN, "DROP 5"),
        (7, Direction.UP, "CREATE 7"),
        (7, Direction.DOWN, "DROP 7"),
    ]:
        migrations.append(
            SourceMigration(version=version, direction=direction, identifier=identifier)
        )
    return migrations


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def migrator(db):
    source = StubSource().open("stub://")
    source.migrations = stub_migrations()
    return new_with_instance("stub", source, "stub", db)


def collect(generator):
    got = []
    try:
        for migration in generator:
            got.append((migration.version, migration.target_version))
    except Exception as error:
        return got, error
    return got, None


def check_read(got, error, expected_error, expected):
    if expected_error is None:
        assert error is None
    else:
        assert isinstance(error, expected_error)
        if expected_error is ShortLimitError:
            assert error.short == 1
    if expected:
        assert got == expected


def test_new_with_instance_names(migrator):
    assert migrator.source_name == "stub"
    assert migrator.database_name == "stub"


def test_new_with_database_instance(db):
    m = new_with_database_instance("stub://", "stub", db)
    assert m.source_name == "stub"
    assert isinstance(m.source, StubSource)
    assert m.database is db


def test_new_with_database_instance_rejects_bad_urls(db):
    with pytest.raises(ValueError):
        new_with_database_instance("", "stub", db)
    with pytest.raises(ValueError):
        new_with_database_instance("nosuchscheme://x", "stub", db)


def test_close(migrator, db):
    result = migrator.close()
    assert result is None
    assert db.closed is True


def test_close_reports_errors():
    source = StubSource().open("stub://")
    m = new_with_instance("stub", source, "stub", FakeDatabase(fail_close=True))
    with pytest.raises(MultiError, match="close failed"):
        m.close()


MIGRATE_STEPS = [
    (0, FNF, None, []),
    (1, None, 1, ["CREATE 1"]),
    (2, FNF, None, []),
    (3, None, 3, ["CREATE 3"]),
    (4, None, 4, ["CREATE 4"]),
    (5, None, 5, []),
    (6, FNF, None, []),
    (7, None, 7, ["CREATE 7"]),
    (8, FNF, None, []),
    (6, FNF, None, []),
    (5, None, 5, ["DROP 7"]),
    (4, None, 4, ["DROP 5"]),
    (3, None, 3, ["DROP 4"]),
    (2, FNF, None, []),
    (1, None, 1, []),
    (0, FNF, None, []),
    (7, None, 7, ["CREATE 3", "CREATE 4", "CREATE 7"]),
    (1, None, 1, ["DROP 7", "DROP 5", "DROP 4"]),
    (1, NoChangeError, None, []),
]


def test_migrate(migrator, db):
    expected_sequence = []
    for index, (version, error, expected_version, added) in enumerate(MIGRATE_STEPS):
        expected_sequence.extend(added)
        if error is None:
            migrator.migrate(version)
            assert migrator.version() == (expected_version, False), index
        else:
            with pytest.raises(error):
                migrator.migrate(version)
        assert db.sequence == expected_sequence, index


def test_migrate_negative_version(migrator):
    with pytest.raises(ValueError):
        migrator.migrate(-1)


STEPS = [
    (0, NoChangeError, None, []),
    (-1, FNF, None, []),
    (1, None, 1, ["CREATE 1"]),
    (1, None, 3, ["CREATE 3"]),
    (1, None, 4, ["CREATE 4"]),
    (1, None, 5, []),
    (1, None, 7, ["CREATE 7"]),
    (1, FNF, None, []),
    (-1, None, 5, ["DROP 7"]),
    (-1, None, 4, ["DROP 5"]),
    (-1, None, 3, ["DROP 4"]),
    (-1, None, 1, []),
    (-1, None, -1, ["DROP 1"]),
    (4, None, 5, ["CREATE 1", "CREATE 3", "CREATE 4"]),
    (2, ShortLimitError, 7, ["CREATE 7"]),
    (-4, None, 1, ["DROP 7", "DROP 5", "DROP 4"]),
    (-2, ShortLimitError, -1, ["DROP 1"]),
]


def test_steps(migrator, db):
    expected_sequence = []
    for index, (n, error, expected_version, added) in enumerate(STEPS):
        expected_sequence.extend(added)
        if error is None:
            migrator.steps(n)
        else:
            with pytest.raises(error) as info:
                migrator.steps(n)
            if error is ShortLimitError:
                assert info.value.short == 1, index
        if expected_version == -1:
            with pytest.raises(NilVersionError):
                migrator.version()
        elif expected_version is not None:
            assert migrator.version()[0] == expected_version, index
        assert db.sequence == expected_sequence, index


@pytest.mark.parametrize(
    "operation",
    [
        lambda m: m.migrate(1),
        lambda m: m.steps(1),
        lambda m: m.up(),
        lambda m: m.down(),
        lambda m: m.run(Migration(None, "", 1, 2)),
    ],
)
def test_dirty_database_is_refused(migrator, db, operation):
    db.set_version(0, True)
    with pytest.raises(DirtyError) as info:
        operation(migrator)
    assert info.value.version == 0
    assert db.locked is False


def test_up_and_down(migrator, db):
    up_all = ["CREATE 1", "CREATE 3", "CREATE 4", "CREATE 7"]
    down_all = ["DROP 7", "DROP 5", "DROP 4", "DROP 1"]

    migrator.up()
    assert migrator.version() == (7, False)
    assert db.sequence == up_all

    migrator.down()
    with pytest.raises(NilVersionError):
        migrator.version()
    assert db.sequence == up_all + down_all

    migrator.steps(1)
    assert migrator.version() == (1, False)
    assert db.sequence == up_all + down_all + ["CREATE 1"]

    migrator.up()
    assert migrator.version() == (7, False)
    assert db.sequence == up_all + down_all + up_all

    migrator.steps(-1)
    assert migrator.version() == (5, False)
    assert db.sequence == up_all + down_all + up_all + ["DROP 7"]

    migrator.down()
    with pytest.raises(NilVersionError):
        migrator.version()
    assert db.sequence == up_all + down_all + up_all + down_all


def test_up_with_nothing_to_do(migrator):
    migrator.up()
    with pytest.raises(NoChangeError):
        migrator.up()


def test_up_without_prefetch(migrator, db):
    migrator.prefetch_migrations = 0
    migrator.up()
    assert db.sequence == ["CREATE 1", "CREATE 3", "CREATE 4", "CREATE 7"]
    assert migrator.version() == (7, False)


def test_drop(migrator, db):
    migrator.drop()
    assert db.sequence[-1] == "DROP"
    assert db.locked is False
    with pytest.raises(NilVersionError):
        migrator.version()


def test_version(migrator, db):
    with pytest.raises(NilVersionError):
        migrator.version()
    db.set_version(1, False)
    assert migrator.version() == (1, False)


def test_run(migrator):
    migrator.run(Migration(None, "", 1, 2))
    assert migrator.version() == (2, False)


def test_run_without_migrations(migrator):
    with pytest.raises(NoChangeError):
        migrator.run()


def test_force(migrator):
    migrator.force(7)
    assert migrator.version() == (7, False)


def test_force_clears_dirty(migrator, db):
    db.set_version(0, True)
    migrator.force(1)
    assert migrator.version() == (1, False)


def test_force_invalid_version(migrator):
    with pytest.raises(InvalidVersionError):
        migrator.force(-2)


def test_lock_twice(migrator):
    migrator._lock()
    with pytest.raises(LockedError):
        migrator._lock()


def test_lock_timeout():
    source = StubSource().open("stub://")
    source.migrations = stub_migrations()
    m = new_with_instance("stub", source, "stub", FakeDatabase(lock_delay=0.5))
    m.lock_timeout = 0.05
    with pytest.raises(LockTimeoutError):
        m.up()


def test_request_stop(migrator, db):
    migrator.request_stop()
    migrator.up()
    assert db.sequence == []
    with pytest.raises(NilVersionError):
        migrator.version()


def test_logging(migrator):
    messages = []
    migrator.log = messages.append
    migrator.steps(1)
    assert migrator.version() == (1, False)
    assert any(message.startswith("1/u 1.up.stub (") for message in messages)


READ_CASES = (
    [
        (-1, -1, NoChangeError, []),
        (-1, 0, FNF, []),
        (-1, 1, None, [(1, 1)]),
        (-1, 2, FNF, []),
        (-1, 3, None, [(1, 1), (3, 3)]),
        (-1, 4, None, [(1, 1), (3, 3), (4, 4)]),
        (-1, 5, None, [(1, 1), (3, 3), (4, 4), (5, 5)]),
        (-1, 6, FNF, []),
        (-1, 7, None, [(1, 1), (3, 3), (4, 4), (5, 5), (7, 7)]),
        (-1, 8, FNF, []),
        (1, -1, None, [(1, -1)]),
        (1, 0, FNF, []),
        (1, 1, NoChangeError, []),
        (1, 2, FNF, []),
        (1, 3, None, [(3, 3)]),
        (1, 4, None, [(3, 3), (4, 4)]),
        (1, 5, None, [(3, 3), (4, 4), (5, 5)]),
        (1, 6, FNF, []),
        (1, 7, None, [(3, 3), (4, 4), (5, 5), (7, 7)]),
        (1, 8, FNF, []),
        (3, -1, None, [(3, 1), (1, -1)]),
        (3, 0, FNF, []),
        (3, 1, None, [(3, 1)]),
        (3, 2, FNF, []),
        (3, 3, NoChangeError, []),
        (3, 4, None, [(4, 4)]),
        (3, 5, None, [(4, 4), (5, 5)]),
        (3, 6, FNF, []),
        (3, 7, None, [(4, 4), (5, 5), (7, 7)]),
        (3, 8, FNF, []),
        (4, -1, None, [(4, 3), (3, 1), (1, -1)]),
        (4, 0, FNF, []),
        (4, 1, None, [(4, 3), (3, 1)]),
        (4, 2, FNF, []),
        (4, 3, None, [(4, 3)]),
        (4, 4, NoChangeError, []),
        (4, 5, None, [(5, 5)]),
        (4, 6, FNF, []),
        (4, 7, None, [(5, 5), (7, 7)]),
        (4, 8, FNF, []),
        (5, -1, None, [(5, 4), (4, 3), (3, 1), (1, -1)]),
        (5, 0, FNF, []),
        (5, 1, None, [(5, 4), (4, 3), (3, 1)]),
        (5, 2, FNF, []),
        (5, 3, None, [(5, 4), (4, 3)]),
        (5, 4, None, [(5, 4)]),
        (5, 5, NoChangeError, []),
        (5, 6, FNF, []),
        (5, 7, None, [(7, 7)]),
        (5, 8, FNF, []),
        (7, -1, None, [(7, 5), (5, 4), (4, 3), (3, 1), (1, -1)]),
        (7, 0, FNF, []),
        (7, 1, None, [(7, 5), (5, 4), (4, 3), (3, 1)]),
        (7, 2, FNF, []),
        (7, 3, None, [(7, 5), (5, 4), (4, 3)]),
        (7, 4, None, [(7, 5), (5, 4)]),
        (7, 5, None, [(7, 5)]),
        (7, 6, FNF, []),
        (7, 7, NoChangeError, []),
        (7, 8, FNF, []),
    ]
    + [(start, to, FNF, []) for start in (0, 2, 6, 8) for to in range(-1, 9)]
)


@pytest.mark.parametrize("start, to, expected_error, expected", READ_CASES)
def test_read(migrator, start, to, expected_error, expected):
    got, error = collect(migrator._read(start, to))
    check_read(got, error, expected_error, expected)


READ_UP_CASES = [
    (-1, -1, None, [(1, 1), (3, 3), (4, 4), (5, 5), (7, 7)]),
    (-1, 0, NoChangeError, []),
    (-1, 1, None, [(1, 1)]),
    (-1, 2, None, [(1, 1), (3, 3)]),
    (1, -1, None, [(3, 3), (4, 4), (5, 5), (7, 7)]),
    (1, 0, NoChangeError, []),
    (1, 1, None, [(3, 3)]),
    (1, 2, None, [(3, 3), (4, 4)]),
    (3, -1, None, [(4, 4), (5, 5), (7, 7)]),
    (3, 0, NoChangeError, []),
    (3, 1, None, [(4, 4)]),
    (3, 2, None, [(4, 4), (5, 5)]),
    (4, -1, None, [(5, 5), (7, 7)]),
    (4, 0, NoChangeError, []),
    (4, 1, None, [(5, 5)]),
    (4, 2, None, [(5, 5), (7, 7)]),
    (5, -1, None, [(7, 7)]),
    (5, 0, NoChangeError, []),
    (5, 1, None, [(7, 7)]),
    (5, 2, ShortLimitError, [(7, 7)]),
    (7, -1, NoChangeError, []),
    (7, 0, NoChangeError, []),
    (7, 1, FNF, []),
    (7, 2, FNF, []),
] + [(start, limit, FNF, []) for start in (0, 2, 6, 8) for limit in (-1, 0, 1, 2)]


@pytest.mark.parametrize("start, limit, expected_error, expected", READ_UP_CASES)
def test_read_up(migrator, start, limit, expected_error, expected):
    got, error = collect(migrator._read_up(start, limit))
    check_read(got, error, expected_error, expected)


READ_DOWN_CASES = [
    (-1, -1, NoChangeError, []),
    (-1, 0, NoChangeError, []),
    (-1, 1, FNF, []),
    (-1, 2, FNF, []),
    (1, -1, None, [(1, -1)]),
    (1, 0, NoChangeError, []),
    (1, 1, None, [(1, -1)]),
    (1, 2, ShortLimitError, [(1, -1)]),
    (3, -1, None, [(3, 1), (1, -1)]),
    (3, 0, NoChangeError, []),
    (3, 1, None, [(3, 1)]),
    (3, 2, None, [(3, 1), (1, -1)]),
    (4, -1, None, [(4, 3), (3, 1), (1, -1)]),
    (4, 0, NoChangeError, []),
    (4, 1, None, [(4, 3)]),
    (4, 2, None, [(4, 3), (3, 1)]),
    (5, -1, None, [(5, 4), (4, 3), (3, 1), (1, -1)]),
    (5, 0, NoChangeError, []),
    (5, 1, None, [(5, 4)]),
    (5, 2, None, [(5, 4), (4, 3)]),
    (7, -1, None, [(7, 5), (5, 4), (4, 3), (3, 1), (1, -1)]),
    (7, 0, NoChangeError, []),
    (7, 1, None, [(7, 5)]),
    (7, 2, None, [(7, 5), (5, 4)]),
] + [(start, limit, FNF, []) for start in (0, 2, 6, 8) for limit in (-1, 0, 1, 2)]


@pytest.mark.parametrize("start, limit, expected_error, expected", READ_DOWN_CASES)
def test_read_down(migrator, start, limit, expected_error, expected):
    got, error = collect(migrator._read_down(start, limit))
    check_read(got, error, expected_error, expected)


def test_error_messages():
    assert str(ShortLimitError(3)) == "limit 3 short"
    assert str(DirtyError(4)) == "Dirty database version 4. Fix and force version."
    assert str(NoChangeError()) == "no change"
    assert str(LockTimeoutError()) == "timeout: can't acquire database lock"