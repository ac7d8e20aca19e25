"""Scanning of result rows into values, dataclasses and lists of them.

The row source given to :class:`Iterx` needs a ``columns`` attribute holding
the column names and must be iterable over rows (sequences of values).  If it
has a ``close()`` method it is called when the iterator is closed; any error
it raises is the error of the query.
"""

from __future__ import annotations

import contextlib
import dataclasses
from typing import Any, Iterator

from cqlx.mapper import (
    DEFAULT_MAPPER,
    Mapper,
    Path,
    _field_types,
    _is_dataclass_type,
    _unwrap_optional,
)

DEFAULT_UNSAFE = False
"""When true, every new iterator ignores columns without a destination field."""

APPLIED_COLUMN = "[applied]"

_END = object()


class ScanError(Exception):
    """A row could not be scanned into the requested destination."""


class NotFoundError(LookupError):
    """The query returned no rows."""

    def __init__(self, message: str = "not found") -> None:
        super().__init__(message)


def _type_name(tp: Any) -> str:
    return getattr(tp, "__name__", repr(tp))


def _has_unmarshaler(tp: Any) -> bool:
    return callable(getattr(tp, "from_cql", None))


def _struct_only_error(tp: Any) -> ScanError:
    if not _is_dataclass_type(tp):
        return ScanError(f"expected a dataclass but got {_type_name(tp)}")
    if _has_unmarshaler(tp):
        return ScanError(
            f"expected a dataclass but the provided dataclass {tp.__name__} implements from_cql"
        )
    return ScanError(f"expected a dataclass, but dataclass {tp.__name__} has no public fields")


def _missing_field(traversals: list[Path]) -> int | None:
    for index, traversal in enumerate(traversals):
        if not traversal:
            return index
    return None


def _convert(tp: Any, value: Any) -> Any:
    if value is None:
        return None
    tp = _unwrap_optional(tp)
    if _has_unmarshaler(tp):
        return tp.from_cql(value)
    return value


def _path_type(cls: type, path: Path) -> Any:
    tp: Any = cls
    for name in path:
        tp = _unwrap_optional(_field_types(tp)[name])
    return tp


class _Nested(dict):
    """Values for the fields of a nested dataclass."""


def _build_tree(assignments: list[tuple[Path, Any]]) -> _Nested:
    tree = _Nested()
    for path, value in assignments:
        node = tree
        for name in path[:-1]:
            child = node.get(name)
            if child is None and name not in node:
                child = node[name] = _Nested()
            if not isinstance(child, _Nested):
                break
            node = child
        else:
            node[path[-1]] = value
    return tree


def _instantiate(cls: type, tree: dict[str, Any]) -> Any:
    hints = _field_types(cls)
    kwargs: dict[str, Any] = {}
    late: dict[str, Any] = {}
    for field in dataclasses.fields(cls):
        if field.name in tree:
            value = tree[field.name]
            if isinstance(value, _Nested):
                value = _instantiate(_unwrap_optional(hints[field.name]), value)
        elif (
            field.default is not dataclasses.MISSING
            or field.default_factory is not dataclasses.MISSING
            or not field.init
        ):
            continue
        else:
            value = None
        if field.init:
            kwargs[field.name] = value
        else:
            late[field.name] = value
    obj = cls(**kwargs)
    for name, value in late.items():
        object.__setattr__(obj, name, value)
    return obj


def _set_path(dest: Any, path: Path, value: Any) -> None:
    obj = dest
    for name in path[:-1]:
        child = getattr(obj, name)
        if child is None:
            child_type = _unwrap_optional(_field_types(type(obj))[name])
            child = _instantiate(child_type, {})
            setattr(obj, name, child)
        obj = child
    setattr(obj, path[-1], value)


@dataclasses.dataclass
class _StructPlan:
    cls: type
    cas: bool
    fields: list[tuple[int, Path, Any]]


class Iterx:
    """Iterator over result rows with dataclass scanning."""

    def __init__(self, source: Any, mapper: Mapper | None = None, unsafe: bool | None = None) -> None:
        self._source = source
        self.mapper = mapper if mapper is not None else DEFAULT_MAPPER
        self._unsafe = DEFAULT_UNSAFE if unsafe is None else unsafe
        self._struct_only = False
        self._applied = False
        self._rows: Iterator[Any] | None = None
        self._num_rows = 0
        self._closed = False
        self._plan: _StructPlan | None = None

    @property
    def columns(self) -> list[str]:
        """Names of the result columns."""
        return list(self._source.columns)

    @property
    def num_rows(self) -> int:
        """Number of rows read so far."""
        return self._num_rows

    def unsafe(self) -> Iterx:
        """Ignore result columns that have no destination field."""
        self._unsafe = True
        return self

    def struct_only(self) -> Iterx:
        """Scan dataclasses field by field even if they define ``from_cql``."""
        self._struct_only = True
        return self

    def applied(self) -> bool:
        """Whether the last scanned conditional (``[applied]``) row was applied."""
        return self._applied

    def get(self, dest_type: Any) -> Any:
        """Scan the first row into a new ``dest_type`` value and close.

        Raises NotFoundError if there are no rows.
        """
        try:
            scannable = self._resolve_scannable(dest_type)
            value = self._read_one(dest_type, scannable)
        except Exception:
            self._close_quietly()
            raise
        self.close()
        if value is _END:
            raise NotFoundError()
        return value

    def select(self, dest_type: Any) -> list[Any]:
        """Scan all rows into a list of ``dest_type`` values and close."""
        result: list[Any] = []
        try:
            scannable = self._resolve_scannable(dest_type)
            while (value := self._read_one(dest_type, scannable)) is not _END:
                result.append(value)
        except Exception:
            self._close_quietly()
            raise
        self.close()
        return result

    def struct_scan(self, dest: Any) -> bool:
        """Scan the next row into the dataclass instance ``dest``.

        Returns False when there are no more rows.
        """
        if dest is None:
            raise ScanError("expected a dataclass instance but got None")
        if isinstance(dest, type) or not dataclasses.is_dataclass(dest):
            raise ScanError(f"expected a dataclass instance but got {type(dest).__name__}")
        plan = self._struct_plan(type(dest))
        row = self._next_row()
        if row is None:
            return False
        for path, value in self._assign(plan, row):
            _set_path(dest, path, value)
        return True

    def scan(self) -> tuple[Any, ...] | None:
        """Return the next row as a tuple, or None at the end."""
        return self._next_row()

    def __iter__(self) -> Iterator[tuple[Any, ...]]:
        while (row := self.scan()) is not None:
            yield row

    def close(self) -> None:
        """Close the source; raises any error of the query."""
        if self._closed:
            return
        self._closed = True
        closer = getattr(self._source, "close", None)
        if callable(closer):
            closer()

    def __enter__(self) -> Iterx:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is None:
            self.close()
        else:
            self._close_quietly()

    def _close_quietly(self) -> None:
        with contextlib.suppress(Exception):
            self.close()

    def _next_row(self) -> tuple[Any, ...] | None:
        if self._closed:
            return None
        if self._rows is None:
            self._rows = iter(self._source)
        try:
            row = next(self._rows)
        except StopIteration:
            return None
        self._num_rows += 1
        return tuple(row)

    def _is_scannable(self, tp: Any) -> bool:
        if _has_unmarshaler(tp):
            return True
        if not _is_dataclass_type(tp):
            return True
        return not self.mapper.has_fields(tp)

    def _resolve_scannable(self, dest_type: Any) -> bool:
        if dest_type is None:
            raise ScanError("expected a class but got None")
        scannable = self._is_scannable(dest_type)
        if self._struct_only and scannable:
            if _is_dataclass_type(dest_type):
                scannable = False
            else:
                raise _struct_only_error(dest_type)
        count = len(self.columns)
        if scannable and count > 1:
            raise ScanError(
                "expected 1 column in result while scanning scannable type "
                f"{_type_name(dest_type)} but got {count}"
            )
        return scannable

    def _read_one(self, dest_type: Any, scannable: bool) -> Any:
        if scannable:
            row = self._next_row()
            if row is None:
                return _END
            return _convert(dest_type, row[0] if row else None)
        plan = self._struct_plan(dest_type)
        row = self._next_row()
        if row is None:
            return _END
        return _instantiate(dest_type, _build_tree(self._assign(plan, row)))

    def _struct_plan(self, cls: type) -> _StructPlan:
        if self._plan is not None and self._plan.cls is cls:
            return self._plan
        columns = self.columns
        cas = bool(columns) and columns[0] == APPLIED_COLUMN
        traversals = self.mapper.traversals_by_name(cls, columns)
        if not self._unsafe and not cas:
            missing = _missing_field(traversals)
            if missing is not None:
                raise ScanError(
                    f'missing destination name "{columns[missing]}" in {cls.__qualname__}'
                )
        fields = [
            (index, path, _path_type(cls, path))
            for index, path in enumerate(traversals)
            if path
        ]
        self._plan = _StructPlan(cls, cas, fields)
        return self._plan

    def _assign(self, plan: _StructPlan, row: tuple[Any, ...]) -> list[tuple[Path, Any]]:
        if plan.cas and row:
            self._applied = bool(row[0])
        return [(path, _convert(tp, row[index])) for index, path, tp in plan.fields]