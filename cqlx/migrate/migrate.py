"""Schema migrations read from a flat directory of CQL files.

There is no imposed naming scheme: a migration's name is its file name, and
migrations run in the lexicographical order of the names of the ``*.cql``
files in the directory. Code can run before and after a migration file is
processed, or between its statements, through a callback.

The session passed in needs two methods:

* ``execute(statement, parameters=None)`` runs a statement; for a SELECT it
  returns a row source with a ``columns`` attribute that iterates over rows.
* ``await_schema_agreement()`` waits until the cluster agrees on the schema.
"""

from __future__ import annotations

import datetime as dt
import enum
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, Sequence

from cqlx.iterx import Iterx
from cqlx.migrate.callback import Callback, CallbackEvent
from cqlx.migrate.checksum import checksum, file_checksum


class _Session(Protocol):
    def execute(self, statement: str, parameters: Sequence[Any] | None = None) -> Any: ...

    def await_schema_agreement(self) -> None: ...


class AwaitSchemaAgreement(enum.Enum):
    """When to wait for schema agreement while applying migrations."""

    DISABLED = 0
    BEFORE_EACH_FILE = 1
    BEFORE_EACH_STATEMENT = 2

    def should_await(self, stage: AwaitSchemaAgreement) -> bool:
        """Tell whether agreement is awaited at ``stage``."""
        return self is stage


DEFAULT_AWAIT_SCHEMA_AGREEMENT = AwaitSchemaAgreement.DISABLED
"""Used when no option is given; agreement is always awaited once at the end."""

_INFO_SCHEMA = """CREATE TABLE IF NOT EXISTS gocqlx_migrate (
	name text,
	checksum text,
	done int,
	start_time timestamp,
	end_time timestamp,
	PRIMARY KEY(name)
)"""
_SELECT_INFO = "SELECT * FROM gocqlx_migrate"
_UPDATE_INFO = (
    "INSERT INTO gocqlx_migrate (name,checksum,done,start_time,end_time) "
    "VALUES (?,?,?,?,?) "
)

_CALLBACK_RE = re.compile(r"-- *CALL +(.+);")


class MigrationError(Exception):
    """Migrations could not be verified or applied."""


@dataclass
class MigrationInfo:
    """A migration as recorded in the database."""

    name: str
    checksum: str = ""
    done: int = 0
    start_time: dt.datetime | None = None
    end_time: dt.datetime | None = None


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def list_migrations(session: _Session) -> list[MigrationInfo]:
    """Return the applied migrations sorted by name."""
    session.execute(_INFO_SCHEMA)
    rows = session.execute(_SELECT_INFO)
    infos = Iterx(rows).select(MigrationInfo)
    infos.sort(key=lambda info: info.name)
    return infos


def split_statements(text: str) -> list[str]:
    """Split CQL text after each semicolon into stripped statements.

    The semicolons are kept. Trailing text without a semicolon is a statement
    of its own unless it is blank.
    """
    statements: list[str] = []
    rest = text
    while rest:
        head, sep, rest = rest.partition(";")
        if not sep:
            if head.strip():
                statements.append(head.strip())
            break
        statements.append((head + sep).strip())
    return statements


def is_callback(stmt: str) -> str:
    """Return the name in a ``-- CALL <name>;`` statement, or an empty string."""
    match = _CALLBACK_RE.fullmatch(stmt)
    return match.group(1) if match else ""


def _await_agreement(session: _Session) -> None:
    try:
        session.await_schema_agreement()
    except Exception as err:
        raise MigrationError(f"awaiting schema agreement: {err}") from err


def _run_callback(
    callback: Callback, session: _Session, event: CallbackEvent, name: str, label: str
) -> None:
    try:
        callback(session, event, name)
    except Exception as err:
        raise MigrationError(f"{label}: {err}") from err


def _apply_migration(
    session: _Session,
    path: Path,
    done: int,
    callback: Callback | None,
    await_agreement: AwaitSchemaAgreement,
) -> None:
    data = path.read_bytes()
    name = path.name
    start_time = _now()
    digest = checksum(data)

    if await_agreement.should_await(AwaitSchemaAgreement.BEFORE_EACH_FILE):
        _await_agreement(session)

    count = 0
    for count, stmt in enumerate(split_statements(data.decode("utf-8")), start=1):
        if count <= done:
            continue

        if callback is not None and count == 1:
            _run_callback(
                callback, session, CallbackEvent.BEFORE_MIGRATION, name,
                "before migration callback",
            )

        if await_agreement.should_await(AwaitSchemaAgreement.BEFORE_EACH_STATEMENT):
            _await_agreement(session)

        call_name = is_callback(stmt)
        if call_name:
            if callback is None:
                raise MigrationError(
                    f"statement {count}: missing callback handler while trying to call {call_name}"
                )
            _run_callback(
                callback, session, CallbackEvent.CALL_COMMENT, call_name, f"callback {call_name}"
            )
        else:
            try:
                session.execute(stmt)
            except Exception as err:
                raise MigrationError(f"statement {count}: {err}") from err

        try:
            session.execute(_UPDATE_INFO, (name, digest, count, start_time, _now()))
        except Exception as err:
            raise MigrationError(f"migration statement {count}: {err}") from err

    if count == 0:
        raise MigrationError(f'no migration statements found in "{name}"')

    if callback is not None and count > done:
        _run_callback(
            callback, session, CallbackEvent.AFTER_MIGRATION, name, "after migration callback"
        )


def migrate(
    session: _Session,
    directory: str | os.PathLike[str],
    callback: Callback | None = None,
    await_agreement: AwaitSchemaAgreement | None = None,
) -> None:
    """Apply the ``*.cql`` files in ``directory`` not yet recorded as done.

    Applied files are checked against their recorded checksums, and an
    interrupted migration resumes after its last finished statement.
    Statements of the form ``-- CALL <name>;`` call ``callback`` instead of
    being executed.
    """
    if await_agreement is None:
        await_agreement = DEFAULT_AWAIT_SCHEMA_AGREEMENT
    root = Path(directory)

    try:
        applied = list_migrations(session)
    except Exception as err:
        raise MigrationError(f"list migrations: {err}") from err

    files = sorted(path.name for path in root.glob("*.cql"))
    if not files:
        raise MigrationError("no migration files found")
    if len(applied) > len(files):
        raise MigrationError("database is ahead")

    for info, name in zip(applied, files):
        if info.name != name:
            raise MigrationError("inconsistent migrations")
        try:
            digest = file_checksum(root / name)
        except Exception as err:
            raise MigrationError(f'calculate checksum for "{name}": {err}') from err
        if info.checksum != digest:
            raise MigrationError(f'file "{name}" was tempered with, expected md5 {info.checksum}')

    pending = [(name, 0) for name in files[len(applied):]]
    if applied:
        pending.insert(0, (files[len(applied) - 1], applied[-1].done))

    for name, done in pending:
        try:
            _apply_migration(session, root / name, done, callback, await_agreement)
        except Exception as err:
            raise MigrationError(f'apply migration "{name}": {err}') from err

    _await_agreement(session)