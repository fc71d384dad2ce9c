"""Exceptions raised by the fitness tracker core.

Read paths never raise for unknown ids; they return ``None`` or an empty
list. Everything below is raised only for conditions the caller has to
react to.
"""

from typing import Any, Dict, Optional


class FitnessCoreError(Exception):
    """Base class for all errors raised by the core."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(FitnessCoreError, ValueError):
    """Rejected input; raised before anything is written."""


class NotLoggedInError(FitnessCoreError):
    """A per-user operation ran without a resolved user id."""

    def __init__(self, message: str = "user not logged in") -> None:
        super().__init__(message)


class TransactionFailure(FitnessCoreError):
    """A write aborted and was rolled back.

    When ``timed_out`` is set the lock was never acquired; callers should
    treat the outcome as unknown and re-query before retrying.
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message, details)
        self.timed_out = timed_out


class MigrationError(FitnessCoreError):
    """A schema migration step could not complete."""
