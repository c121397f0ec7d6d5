from __future__ import annotations


class FsqaError(Exception):
    """Base class for errors raised by the scoring engine."""


class ValidationError(FsqaError, ValueError):
    """Malformed or out-of-range input. Never retried."""


class NotFoundError(FsqaError, LookupError):
    """A referenced session, question or facility does not exist."""


class PersistenceError(FsqaError):
    """
    The database failed. The message stays generic; the driver error is
    chained as __cause__ and logged, never shown to the caller.
    """

    def __init__(self, message: str = "Storage operation failed. Please retry."):
        super().__init__(message)
