# =============================================================================
# UA Session -- Error Types
# =============================================================================

from __future__ import annotations

from .constants import SESSION_FATAL_STATUS, UNRECOVERABLE_STATUS
from .types import FaultSeverity


class UASessionError(Exception):
    """Base exception for all session engine errors."""


class UAConnectionError(UASessionError):
    """Channel-level errors (cannot connect, connection lost)."""


class UATimeoutError(UASessionError):
    """Operation timed out."""


class ServiceFault(UASessionError):
    """A service call completed with a bad status code.

    Args:
        status_code: Symbolic status name, e.g. ``"BadSessionIdInvalid"``.
        message: Optional diagnostic text from the server.
    """

    def __init__(self, status_code: str, message: str = "") -> None:
        self.status_code = status_code
        self.message = message
        text = f"{status_code}: {message}" if message else status_code
        super().__init__(text)

    @property
    def severity(self) -> FaultSeverity:
        return classify_fault(self)


class SessionFatalError(UASessionError):
    """The session is unusable until it is reactivated or recreated."""


class UnrecoverableError(UASessionError):
    """Identity or certificate rejected; the session cannot be recovered."""


class SessionFailedError(UASessionError):
    """Raised for operations on a session in the FAILED state."""


class SessionClosedError(UASessionError):
    """Raised for operations on a closed session."""


class TransferError(UASessionError):
    """A subscription could not be transferred, recreated or deleted."""


def classify_fault(exc: BaseException) -> FaultSeverity:
    """Map an exception raised by the RPC layer to a fault severity."""
    if isinstance(exc, UnrecoverableError):
        return FaultSeverity.UNRECOVERABLE
    if isinstance(exc, (SessionFatalError, UAConnectionError)):
        return FaultSeverity.SESSION_FATAL
    if isinstance(exc, ServiceFault):
        if exc.status_code in UNRECOVERABLE_STATUS:
            return FaultSeverity.UNRECOVERABLE
        if exc.status_code in SESSION_FATAL_STATUS:
            return FaultSeverity.SESSION_FATAL
    return FaultSeverity.TRANSIENT
