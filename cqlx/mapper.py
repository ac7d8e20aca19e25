"""Mapping of dataclass fields to column names."""

from __future__ import annotations

import dataclasses
import inspect
import threading
import types
import typing
from collections import deque
from typing import Any, Callable

NameFunc = Callable[[str], str]
Path = tuple[str, ...]

_OPTIONAL_PREFIXES = ("typing.Optional[", "Optional[")


def _allowed_char(char: str) -> bool:
    return len(char) == 1 and char.isascii() and char.isalnum()


def camel_to_snake(name: str) -> str:
    """Convert an ASCII CamelCase name to snake_case.

    Raises ValueError if the name holds anything other than ASCII letters,
    digits and underscores.
    """
    out: list[str] = []
    last = len(name) - 1
    for i, char in enumerate(name):
        if not (_allowed_char(char) or char == "_"):
            raise ValueError(f"not allowed name {name}")
        if char.isupper():
            prev = name[i - 1] if i > 0 else ""
            nxt = name[i + 1] if i < last else ""
            if i > 0 and prev != "_" and (prev.islower() or nxt.islower()):
                out.append("_")
            char = char.lower()
        out.append(char)
    return "".join(out)


def _is_dataclass_type(tp: Any) -> bool:
    return isinstance(tp, type) and dataclasses.is_dataclass(tp)


def _unwrap_optional(tp: Any) -> Any:
    """Return T for Optional[T] (or T | None); any other type unchanged."""
    origin = typing.get_origin(tp)
    if origin is typing.Union or origin is types.UnionType:
        args = [arg for arg in typing.get_args(tp) if arg is not type(None)]
        if len(args) == 1:
            return args[0]
    return tp


def _lookup_name(cls: type, dotted: str) -> Any:
    """Find a dotted name in the namespace of the module that defines ``cls``."""
    module = inspect.getmodule(cls)
    namespace: dict[str, Any] = dict(vars(module)) if module is not None else {}
    namespace.setdefault(cls.__name__, cls)
    head, *rest = dotted.split(".")
    if head not in namespace:
        return None
    value = namespace[head]
    for part in rest:
        value = getattr(value, part, None)
        if value is None:
            return None
    return value


def _resolve_annotation(cls: type, annotation: Any) -> Any:
    """Resolve a string annotation naming a class, optionally made Optional."""
    if not isinstance(annotation, str):
        return annotation
    text = annotation.strip().strip("'\"")
    for prefix in _OPTIONAL_PREFIXES:
        if text.startswith(prefix) and text.endswith("]"):
            text = text[len(prefix):-1].strip()
            break
    parts = [part.strip() for part in text.split("|") if part.strip() != "None"]
    if len(parts) != 1 or not all(p.isidentifier() for p in parts[0].split(".")):
        return annotation
    resolved = _lookup_name(cls, parts[0])
    return resolved if resolved is not None else annotation


def _field_types(cls: type) -> dict[str, Any]:
    """Resolved annotation of every field of a dataclass."""
    return {f.name: _resolve_annotation(cls, f.type) for f in dataclasses.fields(cls)}


class Mapper:
    """Maps column names to paths of dataclass attributes.

    A field's column name is the value stored under ``tag`` in its metadata,
    or ``name_func`` applied to the field name.  A tag of ``"-"`` hides the
    field, as does a leading underscore.  Fields of nested dataclasses are
    reachable as ``"parent.child"``; a nested field whose metadata holds
    ``inline=True`` has its fields mapped as if they belonged to the parent.
    Shallower fields win over deeper ones with the same name.
    """

    def __init__(self, tag: str = "db", name_func: NameFunc = camel_to_snake) -> None:
        self.tag = tag
        self.name_func = name_func
        self._cache: dict[type, dict[str, Path]] = {}
        self._lock = threading.Lock()

    def field_map(self, cls: type) -> dict[str, Path]:
        """Return a mapping of column name to attribute path for ``cls``."""
        if not _is_dataclass_type(cls):
            raise TypeError(f"expected a dataclass but got {cls!r}")
        with self._lock:
            mapping = self._cache.get(cls)
            if mapping is None:
                mapping = self._build(cls)
                self._cache[cls] = mapping
        return dict(mapping)

    def traversals_by_name(self, cls: type, columns: typing.Iterable[str]) -> list[Path]:
        """Return the attribute path for each column; an empty tuple if unmapped."""
        mapping = self.field_map(cls)
        return [mapping.get(column, ()) for column in columns]

    def has_fields(self, cls: Any) -> bool:
        """Tell whether ``cls`` is a dataclass with at least one mapped field."""
        return _is_dataclass_type(cls) and bool(self.field_map(cls))

    def _build(self, cls: type) -> dict[str, Path]:
        result: dict[str, Path] = {}
        queue: deque[tuple[type, Path, str, frozenset[type]]] = deque(
            [(cls, (), "", frozenset({cls}))]
        )
        while queue:
            current, path, prefix, seen = queue.popleft()
            hints = _field_types(current)
            for field in dataclasses.fields(current):
                if field.name.startswith("_"):
                    continue
                tag = field.metadata.get(self.tag)
                if tag == "-":
                    continue
                field_path = path + (field.name,)
                field_type = _unwrap_optional(hints[field.name])
                nested = _is_dataclass_type(field_type) and field_type not in seen
                if nested and field.metadata.get("inline"):
                    queue.append((field_type, field_path, prefix, seen | {field_type}))
                    continue
                name = prefix + (tag if tag else self.name_func(field.name))
                result.setdefault(name, field_path)
                if nested:
                    queue.append((field_type, field_path, name + ".", seen | {field_type}))
        return result


DEFAULT_MAPPER = Mapper("db", camel_to_snake)