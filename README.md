# cqlx

Helpers for working with CQL databases from Python. The package maps result
rows onto dataclasses and applies schema migrations from a directory of
`.cql` files.

cqlx never opens a connection of its own. Your driver supplies the session or
result object, and cqlx works through it.

## Installing

```
pip install cqlx
```

It has no dependencies outside the standard library.

## Mapping columns to fields

`cqlx.mapper.Mapper(tag="db", name_func=camel_to_snake)` works out which
dataclass attribute each column belongs to:

- A field's column name is the value stored under `tag` in its
  `dataclasses.field(metadata=...)`. Without that value, `name_func` is applied
  to the field name. `camel_to_snake("UserID")` gives `"user_id"`.
- A tag of `"-"` hides a field, and so does a leading underscore.
- Fields of a nested dataclass can be reached as `"parent.child"`. A nested
  field with `inline=True` in its metadata is different: its fields are mapped
  as if they belonged to the parent.
- When two fields would get the same name, the shallower one wins.

`field_map(cls)` returns the mapping from column name to attribute path.
`traversals_by_name(cls, columns)` returns one path per column, with `()` for a
column that has no field. `has_fields(cls)` tells whether a dataclass has any
mapped field. Mappings are cached per class. `DEFAULT_MAPPER` is the mapper
used when none is given.

## Scanning rows

`cqlx.iterx.Iterx(source, mapper=None, unsafe=None)` wraps a row source. The
source is any object with a `columns` attribute that lists the column names and
that iterates over rows. If it has a `close()` method, that method is called
when the iterator closes, and any error it raises is passed on to you.

```python
from dataclasses import dataclass
from cqlx.iterx import Iterx

@dataclass
class User:
    user_id: int
    name: str

users = Iterx(rows).select(User)
```

- `get(dest_type)` reads the first row into a new value and closes the
  iterator. It raises `NotFoundError` when there are no rows.
- `select(dest_type)` reads every row into a list and closes the iterator. An
  empty result gives an empty list.
- `struct_scan(dest)` fills an existing dataclass instance with the next row. It
  returns `False` at the end.
- `scan()` returns the next row as a tuple, or `None` at the end. Iterating over
  an `Iterx` yields the same tuples.
- `close()` closes the source. An `Iterx` can also be used as a context
  manager.
- `columns` holds the column names, and `num_rows` counts the rows read so far.

A destination type is scanned from a single column when it is one of these:

- a type that is not a dataclass;
- a dataclass without mapped fields;
- a type with a callable `from_cql(value)`, which converts the raw column value.

A result with more than one column then raises `ScanError`. Any other dataclass
is filled field by field, and `from_cql` is applied to each field's type where
it is defined.

The following options change how rows are scanned:

- By default, a column with no matching field raises `ScanError`
  (`missing destination name "..."`). Calling `unsafe()` ignores such columns.
  Setting `cqlx.iterx.DEFAULT_UNSAFE` to true makes that the default for new
  iterators.
- `struct_only()` fills a dataclass field by field even if it defines
  `from_cql`. A non-dataclass destination then raises `ScanError`.
- When the first column is `[applied]`, as in a lightweight-transaction result,
  missing fields are not an error. `applied()` reports the flag of the last row
  scanned.

## Migrations

`cqlx.migrate.migrate.migrate(session, directory, callback=None,
await_agreement=None)` applies the `*.cql` files of a flat directory. The
session needs two methods:

- `execute(statement, parameters=None)`, which returns a row source as
  described above when the statement is a SELECT;
- `await_schema_agreement()`.

Files are applied in the lexicographic order of their names, and a file's name
is its migration name. Progress is recorded statement by statement in a
`gocqlx_migrate` table, which is created if missing. An interrupted file
resumes after its last finished statement.

`MigrationError` is raised in these cases:

- no files are found;
- the database records more migrations than there are files;
- recorded names do not match the files;
- an applied file's MD5 checksum has changed ("tempered with");
- a file holds no statements;
- any statement or callback fails.

Statements are split after each `;`, and trailing text without a semicolon
still counts as a statement. `split_statements(text)` exposes this splitting.
A statement of the form `-- CALL name;` calls the callback instead of being
executed. `is_callback(stmt)` returns that name, or `""`.

A callback takes `(session, event, name)`. It is called with:

- `CallbackEvent.BEFORE_MIGRATION` and `CallbackEvent.AFTER_MIGRATION` around
  each file it processes;
- `CallbackEvent.CALL_COMMENT` for each `CALL` comment.

Raising from a callback aborts the migration. `CallbackRegister` dispatches to
handlers registered per event and name. It raises `MissingHandlerError` when a
`CALL` comment has no handler, and it ignores other unregistered events.

```python
from cqlx.migrate.callback import CallbackEvent, CallbackRegister
from cqlx.migrate.migrate import migrate

def seed(session, event, name):
    session.execute("INSERT INTO settings (key, value) VALUES ('mode', 'on')")

callbacks = CallbackRegister()
callbacks.add(CallbackEvent.CALL_COMMENT, "seed", seed)
migrate(session, "schema/", callbacks)
```

`list_migrations(session)` returns the recorded `MigrationInfo` entries, sorted
by name.

`AwaitSchemaAgreement` decides when schema agreement is awaited:

- `DISABLED`, the default, set by `DEFAULT_AWAIT_SCHEMA_AGREEMENT`;
- `BEFORE_EACH_FILE`;
- `BEFORE_EACH_STATEMENT`.

Agreement is always awaited once after all files are applied.

## Utilities

- `cqlx.camelize.camelize("hello_world")` returns `"HelloWorld"`. It raises
  `ValueError` for characters other than ASCII letters, digits and `_`.
- `cqlx.migrate.checksum.checksum(data)` returns the hex MD5 of bytes.
  `file_checksum(path)` does the same for a file, and returns `""` when the
  file cannot be opened.

## What it does not do

cqlx has no command-line tool and no code generator for model classes. It also
does not build queries or bind parameters, and it does not manage connections
or clusters. Those are left to your driver.

## Running the tests

```
pip install -e ".[test]"
pytest
```