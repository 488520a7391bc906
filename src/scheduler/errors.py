"""Scheduler error taxonomy and exception types."""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    """Failure codes an executor can report for one attempt."""

    CHANNEL_NOT_FOUND = "CHANNEL_NOT_FOUND"
    CHANNEL_DISCONNECTED = "CHANNEL_DISCONNECTED"
    INVALID_SETTINGS = "INVALID_SETTINGS"
    CONFLICT_WITH_DEAL = "CONFLICT_WITH_DEAL"
    TELEGRAM_API_ERROR = "TELEGRAM_API_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    CONTENT_GENERATION_FAILED = "CONTENT_GENERATION_FAILED"

    @property
    def is_retryable(self) -> bool:
        return self not in _TERMINAL_CODES


_TERMINAL_CODES = frozenset({
    ErrorCode.CHANNEL_NOT_FOUND,
    ErrorCode.CHANNEL_DISCONNECTED,
    ErrorCode.INVALID_SETTINGS,
    ErrorCode.CONFLICT_WITH_DEAL,
})

RETRYABLE = "retryable"
TERMINAL = "terminal"


def classify(code: ErrorCode | str | None) -> str:
    """Return ``"retryable"`` or ``"terminal"`` for an error code.

    Unknown or missing codes are treated as generic delivery errors, which
    are retryable.
    """
    try:
        resolved = ErrorCode(code)
    except ValueError:
        return RETRYABLE
    return RETRYABLE if resolved.is_retryable else TERMINAL


class CronError(ValueError):
    """A cron expression or timezone cannot be used."""


class UnschedulableError(CronError):
    """No occurrence matches within the search horizon."""


class DeliveryError(Exception):
    """Raised by notification channels with a classified error code."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.TELEGRAM_API_ERROR) -> None:
        super().__init__(message)
        self.code = code
