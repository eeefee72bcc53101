"""Error taxonomy shared by the scheduler, the dealer and the reconciler."""

from __future__ import annotations


class EngineError(Exception):
    """Base for every error the engine raises on purpose."""


class DataUnavailable(EngineError):
    """Candle or indicator data could not be fetched or computed."""


class OracleError(EngineError):
    """The decision oracle failed or returned something unusable."""


class VenueError(EngineError):
    """A venue call failed.

    ``reference`` is the transaction / order reference when the venue had
    already accepted the submission; ``timed_out`` marks confirmation
    timeouts, the only case the reconciler will try to recover.
    """

    def __init__(self, message: str, reference: str | None = None, timed_out: bool = False) -> None:
        super().__init__(message)
        self.reference = reference
        self.timed_out = timed_out


class UncertainSettlement(EngineError):
    """The venue accepted a submission but could not say whether it settled."""

    def __init__(self, reference: str, message: str = "") -> None:
        super().__init__(message or f"Settlement unknown for {reference}")
        self.reference = reference


class WrongPassword(EngineError):
    """Decryption failed. Fatal for the current operation only."""


class TaskValidationError(EngineError, ValueError):
    pass


class CycleCancelled(EngineError):
    """Raised at a checkpoint once cancellation was requested. Not an error condition."""
