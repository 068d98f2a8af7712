"""
Domain errors raised by the booking, ledger and dispute services.

Each error carries the HTTP status it maps to and a message that is safe to
show to the caller.  server.create_app registers a single handler that renders
them as ``{"error": message, "code": ClassName}``.
"""


class BookingError(Exception):
    status_code = 400

    def __init__(self, message=None, **details):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details

    @property
    def code(self):
        return self.__class__.__name__

    def to_dict(self):
        payload = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(BookingError):
    status_code = 400


class Unauthorized(BookingError):
    status_code = 403


class NotFound(BookingError):
    status_code = 404


class InvalidTransition(BookingError):
    """Current status (or row version) does not match the transition's from-state."""
    status_code = 409


class DisputeAlreadyOpen(BookingError):
    status_code = 409


class DisputeWindowExpired(BookingError):
    status_code = 409


class PhotosInsufficient(BookingError):
    status_code = 422


class RefundAmountOutOfRange(BookingError):
    status_code = 422


class LedgerOperationFailed(BookingError):
    status_code = 502
