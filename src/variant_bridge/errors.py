"""
Exception taxonomy for the bridge job queue.

Each error maps to one HTTP status in ``main``; services raise these instead
of ``HTTPException`` so they stay usable outside a request.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all service errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(BridgeError):
    """Missing or malformed input, rejected before any mutation."""

    status_code = 400


class NotFoundError(BridgeError):
    status_code = 404


class ConflictError(BridgeError):
    """A request collides with the current state of a record."""

    status_code = 409


class InvalidTransitionError(ConflictError):
    """A terminal job was asked to move to another status."""


class StorageError(BridgeError):
    """Blob store call failed."""

    status_code = 502


class PersistenceError(BridgeError):
    """Database transaction failed and was rolled back."""

    status_code = 500
