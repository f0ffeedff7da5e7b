from __future__ import annotations

from typing import Optional


class ForemanError(Exception):
    """Base error for foreman.

    ``code`` is a SQLSTATE-like five character code; it is what job and run
    logs record for a failed call.
    """

    code = "XX000"

    def __init__(self, message: str, detail: Optional[str] = None, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.hint = hint


class ConfigError(ForemanError):
    """Config validation error."""

    code = "F0000"


class CronFieldError(ForemanError):
    """A single crontab field could not be parsed."""

    def __init__(
        self,
        message: str,
        field: str,
        detail: Optional[str] = None,
        hint: Optional[str] = None,
    ):
        super().__init__(message, detail=detail, hint=hint)
        self.field = field


class GrammarError(CronFieldError):
    code = "22P02"


class RangeError(CronFieldError):
    code = "22023"


class InvalidScheduleError(ForemanError):
    """Neither a crontab nor a (list of) timestamp(s)."""

    code = "23514"


class AuthorizationError(ForemanError):
    code = "42501"


class UniquenessConflictError(ForemanError):
    code = "23505"


class JobDefinitionError(ForemanError):
    code = "23502"


class JobNotFoundError(ForemanError):
    code = "P0002"


def error_fields(exc: BaseException) -> tuple:
    """Return (code, message, detail, hint) for logging a failed call."""
    if isinstance(exc, ForemanError):
        return exc.code, exc.message, exc.detail, exc.hint
    return ForemanError.code, str(exc) or exc.__class__.__name__, None, None
