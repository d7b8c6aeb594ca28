from typing import Optional


class BookingStatusError(Exception):
    """Base class for errors raised by the polling and verification engine"""


class TransportError(BookingStatusError):
    """The injected fetch or verify operation failed to produce a response"""

    def __init__(
        self, message: str, *, retryable: bool = True, status: Optional[int] = None
    ):
        self.message = message
        self.retryable = retryable
        self.status = status
        super().__init__(message)

    @classmethod
    def wrap(cls, exc: Exception) -> "TransportError":
        if isinstance(exc, TransportError):
            return exc
        error = cls(str(exc) or type(exc).__name__)
        error.__cause__ = exc
        return error


class MalformedStatusError(TransportError):
    pass


class VerificationFailure(BookingStatusError):
    """The payment backend reported a definite failed payment"""

    def __init__(self, message: str, reference: Optional[str] = None):
        self.message = message
        self.reference = reference
        super().__init__(message)


class VerificationTimeout(BookingStatusError, TimeoutError):
    """The verification budget ran out before any definite outcome"""


class VerificationStopped(BookingStatusError):
    """The verification was stopped by the caller before it resolved"""


class PollingLimitError(BookingStatusError):
    pass


class UnknownSessionError(BookingStatusError, KeyError):
    pass
