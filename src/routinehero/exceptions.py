"""Custom exception hierarchy for the Routine Hero package."""

from __future__ import annotations


class RoutineHeroError(Exception):
    """Base class for all Routine Hero specific errors."""


class BadRequestError(RoutineHeroError):
    """Raised when a request is missing required identifiers or fields."""


class NotFoundError(RoutineHeroError):
    """Raised when a family, child or routine lookup fails."""


class InvalidReferenceError(NotFoundError):
    """Raised when a completion names a routine that does not exist."""


class PinRejectedError(RoutineHeroError):
    """Raised when a parent PIN does not match the stored digest."""


class PinLockedError(PinRejectedError):
    """Raised when PIN verification is throttled after repeated failures."""


class StoreFailureError(RoutineHeroError):
    """Raised when the underlying persistence call fails."""


class ConcurrentUpdateError(StoreFailureError):
    """Raised when a child row keeps changing underneath a progression update."""
