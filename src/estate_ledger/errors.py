"""Exception taxonomy shared by every layer of the engine."""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all domain errors raised by the engine."""


class ValidationError(LedgerError):
    """Raised when caller input is missing or invalid.

    Covers bad date ranges, non-positive amounts, unsupported operations and
    attempts to cancel something twice.
    """


class NotFoundError(LedgerError):
    """Raised when a counterparty, item or document reference is unknown."""


class ConflictError(LedgerError):
    """Raised when an optimistic-concurrency check fails on a counter update.

    The reconciler retries these internally; callers only see one after the
    retry budget is exhausted and may retry the whole operation.
    """


class ComputationError(LedgerError):
    """Raised when a stored record holds a malformed numeric or date field."""


__all__ = [
    "LedgerError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "ComputationError",
]
