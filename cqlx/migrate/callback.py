"""Callbacks that run code while migrations are applied."""

from __future__ import annotations

import enum
from typing import Any, Callable


class CallbackEvent(enum.IntEnum):
    """Kind of event a migration callback is called for.

    BEFORE_MIGRATION and AFTER_MIGRATION fire before and after a migration
    file is processed. CALL_COMMENT fires for every statement of the form
    ``-- CALL <name>;`` (note the semicolon).
    """

    BEFORE_MIGRATION = 0
    AFTER_MIGRATION = 1
    CALL_COMMENT = 2


Callback = Callable[[Any, CallbackEvent, str], Any]
"""A callback takes the session, the event and a name; raising aborts the migration."""


class MissingHandlerError(LookupError):
    """No handler is registered for a ``-- CALL`` comment."""

    def __init__(self, message: str = "missing handler") -> None:
        super().__init__(message)


class CallbackRegister:
    """Dispatches callbacks to handlers registered per event and name.

    An instance is itself a callback. Events without a handler are ignored,
    except CALL_COMMENT, for which MissingHandlerError is raised.
    """

    def __init__(self) -> None:
        self._handlers: dict[tuple[str, CallbackEvent], Callback] = {}

    def add(self, event: CallbackEvent, name: str, func: Callback) -> None:
        """Register ``func`` for ``event`` and ``name``."""
        self._handlers[(name, event)] = func

    def find(self, event: CallbackEvent, name: str) -> Callback | None:
        """Return the handler for ``event`` and ``name``, or None."""
        return self._handlers.get((name, event))

    def __call__(self, session: Any, event: CallbackEvent, name: str) -> Any:
        handler = self._handlers.get((name, event))
        if handler is None:
            if event is CallbackEvent.CALL_COMMENT:
                raise MissingHandlerError()
            return None
        return handler(session, event, name)