"""Errors raised by the engine and their failure categories."""

from __future__ import annotations

from collections.abc import Iterator
from enum import Enum


class FailureCategory(Enum):
    """Category of a failure, with its metrics status and exit code."""

    COMPOSE_PARSE = ("failure-compose-parse", 15)
    FILE_NOT_FOUND = ("failure-file-not-found", 14)
    CMD_SYNTAX = ("failure-cmd-syntax", 16)
    BUILD = ("failure-build", 17)
    PULL = ("failure-pull", 18)

    def __init__(self, status: str, exit_code: int) -> None:
        self.status = status
        self.exit_code = exit_code


class NotFoundError(Exception):
    """A requested resource does not exist."""


def _chain(err: BaseException | None) -> Iterator[BaseException]:
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.err if isinstance(err, ComposeError) else err.__cause__


class ComposeError(Exception):
    """Wraps an error with an optional failure category."""

    def __init__(self, err: BaseException, category: FailureCategory | None = None) -> None:
        super().__init__(str(err))
        self.err = err
        self.category = category
        self.__cause__ = err

    def __str__(self) -> str:
        return str(self.err)

    def failure_category(self) -> FailureCategory:
        if self.category is not None:
            return self.category
        for cause in _chain(self.err):
            if isinstance(cause, OSError) and cause.filename is not None:
                return FailureCategory.FILE_NOT_FOUND
        if is_not_found(self.err):
            return FailureCategory.FILE_NOT_FOUND
        return FailureCategory.COMPOSE_PARSE


def wrap_compose_error(err: BaseException | None) -> ComposeError | None:
    if err is None:
        return None
    return ComposeError(err)


def wrap_categorised_compose_error(
    err: BaseException | None, failure: FailureCategory
) -> ComposeError | None:
    if err is None:
        return None
    return ComposeError(err, failure)


def is_not_found(err: BaseException | None) -> bool:
    """Whether the error, or anything it wraps, is a NotFoundError."""
    return any(isinstance(cause, NotFoundError) for cause in _chain(err))