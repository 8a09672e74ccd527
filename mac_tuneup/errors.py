"""Exceptions raised by the optimization engine."""

from __future__ import annotations


class TuneupError(Exception):
    """Base class for all mac-tuneup errors."""


class UnknownActionError(TuneupError, LookupError):
    """An action key was requested that the registry does not know."""

    def __init__(self, key: str) -> None:
        super().__init__(f"unknown action: {key}")
        self.key = key


class CommandTimeout(TuneupError):
    """An external command outlived its time bound and was killed."""

    def __init__(self, argv, timeout: float) -> None:
        super().__init__(f"{argv[0] if argv else '?'} timed out after {timeout:g}s")
        self.argv = list(argv)
        self.timeout = timeout


class ActionTimeout(TuneupError):
    """An action exhausted its deadline."""


class InvalidTransition(TuneupError):
    """The update state machine was asked to make a move it does not allow."""
