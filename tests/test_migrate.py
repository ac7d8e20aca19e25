from dataclasses import dataclass, field

import pytest

from cqlx.migrate.callback import CallbackEvent, CallbackRegister
from cqlx.migrate.checksum import checksum
from cqlx.migrate.migrate import (
    AwaitSchemaAgreement,
    MigrationError,
    is_callback,
    list_migrations,
    migrate,
    split_statements,
)

INSERT_MIGRATE = "INSERT INTO gocqlx_test.migrate_table (testint, testuuid) VALUES (%d, now())"
INFO_COLUMNS = ["name", "checksum", "done", "end_time", "start_time"]


@dataclass
class Rows:
    columns: list
    rows: list = field(default_factory=list)

    def __iter__(self):
        return iter(self.rows)


class FakeSession:
    def __init__(self):
        self.migrations = {}
        self.executed = []
        self.agreements = 0
        self.fail_once = set()

    def execute(self, statement, parameters=None):
        if statement.startswith("CREATE TABLE IF NOT EXISTS gocqlx_migrate"):
            return None
        if statement.startswith("SELECT * FROM gocqlx_migrate"):
            rows = [
                (name, chk, done, end, start)
                for name, (chk, done, start, end) in reversed(list(self.migrations.items()))
            ]
            return Rows(INFO_COLUMNS, rows)
        if statement.startswith("INSERT INTO gocqlx_migrate"):
            name, chk, done, start, end = parameters
            self.migrations[name] = (chk, done, start, end)
            return None
        if statement in self.fail_once:
            self.fail_once.discard(statement)
            raise RuntimeError("boom")
        self.executed.append(statement)
        return None

    def await_schema_agreement(self):
        self.agreements += 1


class Counter:
    def __init__(self):
        self.counts = {event: 0 for event in CallbackEvent}
        self.names = []

    def __call__(self, session, event, name):
        self.counts[event] += 1
        self.names.append((event, name))

    def assert_counts(self, before, after, call):
        assert self.counts[CallbackEvent.BEFORE_MIGRATION] == before
        assert self.counts[CallbackEvent.AFTER_MIGRATION] == after
        assert self.counts[CallbackEvent.CALL_COMMENT] == call


def write_file(directory, i, text):
    (directory / f"{i}.cql").write_text(text)


def make_test_dir(directory, n):
    directory.mkdir(exist_ok=True)
    for i in range(n):
        write_file(directory, i, (INSERT_MIGRATE % i) + ";")
    return directory


def count_migrations(session):
    return sum(s.startswith("INSERT INTO gocqlx_test.migrate_table") for s in session.executed)


def test_migration_init_update_ahead_tempered(tmp_path):
    session = FakeSession()

    migrate(session, make_test_dir(tmp_path / "a", 2))
    assert count_migrations(session) == 2

    migrate(session, make_test_dir(tmp_path / "b", 4))
    assert count_migrations(session) == 4

    with pytest.raises(MigrationError, match="ahead"):
        migrate(session, make_test_dir(tmp_path / "c", 2))

    tempered = make_test_dir(tmp_path / "d", 4)
    write_file(tempered, 3, "SELECT * FROM bla;")
    with pytest.raises(MigrationError, match="tempered"):
        migrate(session, tempered)
    assert count_migrations(session) == 4


def test_migration_records_info(tmp_path):
    session = FakeSession()
    directory = make_test_dir(tmp_path / "m", 3)
    migrate(session, directory)
    infos = list_migrations(session)
    assert [info.name for info in infos] == ["0.cql", "1.cql", "2.cql"]
    assert all(info.done == 1 for info in infos)
    assert infos[0].checksum == checksum((directory / "0.cql").read_bytes())
    assert all(info.start_time <= info.end_time for info in infos)


def test_migration_no_semicolon(tmp_path):
    session = FakeSession()
    directory = make_test_dir(tmp_path / "m", 0)
    (directory / "0.cql").write_text((INSERT_MIGRATE % 0) + ";" + (INSERT_MIGRATE % 1))
    migrate(session, directory)
    assert count_migrations(session) == 2


def test_migration_no_files(tmp_path):
    with pytest.raises(MigrationError, match="no migration files found"):
        migrate(FakeSession(), make_test_dir(tmp_path / "m", 0))


def test_migration_no_statements(tmp_path):
    directory = make_test_dir(tmp_path / "m", 0)
    write_file(directory, 0, "  \n ")
    with pytest.raises(MigrationError, match='no migration statements found in "0.cql"'):
        migrate(FakeSession(), directory)


def test_migration_inconsistent(tmp_path):
    session = FakeSession()
    migrate(session, make_test_dir(tmp_path / "a", 2))
    other = make_test_dir(tmp_path / "b", 0)
    write_file(other, "x0", (INSERT_MIGRATE % 0) + ";")
    write_file(other, "x1", (INSERT_MIGRATE % 1) + ";")
    with pytest.raises(MigrationError, match="inconsistent migrations"):
        migrate(session, other)


def test_migration_resumes_after_failure(tmp_path):
    session = FakeSession()
    directory = make_test_dir(tmp_path / "m", 0)
    write_file(directory, 0, "INSERT A;\nINSERT B;\n")
    session.fail_once.add("INSERT B;")

    first = Counter()
    with pytest.raises(MigrationError, match='apply migration "0.cql": statement 2: boom'):
        migrate(session, directory, first)
    assert session.executed == ["INSERT A;"]
    assert session.migrations["0.cql"][1] == 1
    first.assert_counts(1, 0, 0)

    second = Counter()
    migrate(session, directory, second)
    assert session.executed == ["INSERT A;", "INSERT B;"]
    assert session.migrations["0.cql"][1] == 2
    second.assert_counts(0, 1, 0)


@pytest.mark.parametrize(
    "stmt, expected",
    [
        ("SELECT * from X;", ""),
        ("-- Item", ""),
        ("--CALL Foo;", "Foo"),
        ("-- CALL Foo;", "Foo"),
        ("--   CALL Foo;", "Foo"),
        ("--   CALL   Foo;", "Foo"),
        ("-- CALL α;", "α"),
    ],
)
def test_is_callback(stmt, expected):
    assert is_callback(stmt) == expected


def test_migration_callback(tmp_path):
    session = FakeSession()

    counter = Counter()
    migrate(session, make_test_dir(tmp_path / "a", 2), counter)
    counter.assert_counts(2, 2, 0)

    counter = Counter()
    migrate(session, make_test_dir(tmp_path / "b", 4), counter)
    counter.assert_counts(2, 2, 0)

    directory = make_test_dir(tmp_path / "c", 4)
    write_file(directory, 4, "\n-- CALL Foo;\n")
    write_file(directory, 5, "\n-- CALL Bar;\n")
    counter = Counter()
    migrate(session, directory, counter)
    counter.assert_counts(2, 2, 2)
    assert (CallbackEvent.CALL_COMMENT, "Foo") in counter.names
    assert (CallbackEvent.CALL_COMMENT, "Bar") in counter.names


def test_call_comment_without_callback(tmp_path):
    directory = make_test_dir(tmp_path / "m", 0)
    write_file(directory, 0, "-- CALL Foo;")
    with pytest.raises(MigrationError, match="missing callback handler while trying to call Foo"):
        migrate(FakeSession(), directory)


def test_call_comment_with_register_missing_handler(tmp_path):
    directory = make_test_dir(tmp_path / "m", 0)
    write_file(directory, 0, "-- CALL Foo;")
    with pytest.raises(MigrationError, match="callback Foo: missing handler"):
        migrate(FakeSession(), directory, CallbackRegister())


def test_register_callback_dispatch(tmp_path):
    directory = make_test_dir(tmp_path / "m", 0)
    write_file(directory, "m1", "-- CALL 1;\n-- CALL 2;\n")
    counter = Counter()
    register = CallbackRegister()
    register.add(CallbackEvent.BEFORE_MIGRATION, "m1.cql", counter)
    register.add(CallbackEvent.AFTER_MIGRATION, "m1.cql", counter)
    register.add(CallbackEvent.CALL_COMMENT, "1", counter)
    register.add(CallbackEvent.CALL_COMMENT, "2", counter)
    session = FakeSession()
    migrate(session, directory, register)
    counter.assert_counts(1, 1, 2)
    assert counter.names == [
        (CallbackEvent.BEFORE_MIGRATION, "m1.cql"),
        (CallbackEvent.CALL_COMMENT, "1"),
        (CallbackEvent.CALL_COMMENT, "2"),
        (CallbackEvent.AFTER_MIGRATION, "m1.cql"),
    ]

    infos = list_migrations(session)
    assert [(info.name, info.done) for info in infos] == [("m1.cql", 2)]

    counter2 = Counter()
    migrate(session, directory, counter2)
    counter2.assert_counts(0, 0, 0)
    assert [(info.name, info.done) for info in list_migrations(session)] == [("m1.cql", 2)]


def test_before_callback_error_aborts(tmp_path):
    def failing(session, event, name):
        raise ValueError("nope")

    session = FakeSession()
    with pytest.raises(MigrationError, match="before migration callback: nope"):
        migrate(session, make_test_dir(tmp_path / "m", 1), failing)
    assert session.executed == []


@pytest.mark.parametrize(
    "option, expected",
    [
        (AwaitSchemaAgreement.DISABLED, 1),
        (AwaitSchemaAgreement.BEFORE_EACH_FILE, 3),
        (AwaitSchemaAgreement.BEFORE_EACH_STATEMENT, 4),
    ],
)
def test_await_schema_agreement(tmp_path, option, expected):
    directory = make_test_dir(tmp_path / "m", 0)
    write_file(directory, 0, "A;B;")
    write_file(directory, 1, "C;")
    session = FakeSession()
    migrate(session, directory, await_agreement=option)
    assert session.agreements == expected


def test_should_await():
    stage = AwaitSchemaAgreement.BEFORE_EACH_FILE
    assert stage.should_await(AwaitSchemaAgreement.BEFORE_EACH_FILE)
    assert not stage.should_await(AwaitSchemaAgreement.BEFORE_EACH_STATEMENT)
    assert not AwaitSchemaAgreement.DISABLED.should_await(stage)


def test_list_migrations_sorted(tmp_path):
    session = FakeSession()
    migrate(session, make_test_dir(tmp_path / "m", 4))
    names = [info.name for info in list_migrations(session)]
    assert names == sorted(names)
    assert len(names) == 4


def test_list_migrations_empty():
    assert list_migrations(FakeSession()) == []


@pytest.mark.parametrize(
    "text, expected",
    [
        ("a;b;", ["a;", "b;"]),
        ("a;b", ["a;", "b"]),
        ("a;\n", ["a;"]),
        ("a; ;b;", ["a;", ";", "b;"]),
        ("\n-- CALL Foo;\n", ["-- CALL Foo;"]),
        ("", []),
        ("   ", []),
    ],
)
def test_split_statements(text, expected):
    assert split_statements(text) == expected