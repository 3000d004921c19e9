# src/taskpulse/core/errors.py

from __future__ import annotations

import sqlite3


class TaskPulseError(Exception):
    """Base class for errors surfaced to callers of mutating operations."""


class NotFoundError(TaskPulseError, LookupError):
    pass


class PermissionDeniedError(TaskPulseError):
    pass


class InvalidTransitionError(TaskPulseError, ValueError):
    """A lifecycle operation is not allowed from the task's current status."""


class PersistenceError(TaskPulseError, RuntimeError):
    """
    The store could not complete a write or read.

    Raised for any sqlite3 error, lock timeouts included, so callers do not
    depend on the storage driver. No partial state is committed.
    """


def friendly_error_message(exc: BaseException) -> str:
    """Single advisory message shown to a user when an operation fails."""
    if isinstance(exc, NotFoundError):
        return str(exc) or "Not found."
    if isinstance(exc, PermissionDeniedError):
        return str(exc) or "You are not allowed to do that."
    if isinstance(exc, InvalidTransitionError):
        return str(exc) or "This action is not allowed right now."
    if isinstance(exc, (PersistenceError, sqlite3.Error)):
        return "Could not save your change. Please try again."
    if isinstance(exc, ValueError):
        return str(exc) or "Invalid request."
    return "Something went wrong. Please try again."
