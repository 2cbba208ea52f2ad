# clinicbook/core/errors.py
"""
Error taxonomy for the appointment negotiation core.

Every failure is deterministic for a given input, so nothing here is retried by
the engine. Callers map ``kind`` to a user-visible message and ``http_status``
to a response code.
"""


class NegotiationError(Exception):
    """Base class for all negotiation failures."""

    kind = "NegotiationError"
    http_status = 400

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"error_kind": self.kind, "message": self.message}


class ValidationError(NegotiationError):
    """Malformed creation input or transition payload. Caller-fixable."""

    kind = "ValidationError"
    http_status = 422


class NotFoundError(NegotiationError):
    """Appointment id does not exist."""

    kind = "NotFoundError"
    http_status = 404


class UnauthorizedTransitionError(NegotiationError):
    """Actor is not allowed to issue the command on this appointment."""

    kind = "UnauthorizedTransitionError"
    http_status = 403


class InvalidTransitionError(NegotiationError):
    """Command is not valid for the appointment's current status."""

    kind = "InvalidTransitionError"
    http_status = 409


class ConcurrencyConflictError(NegotiationError):
    """Stale version: reload the appointment and retry, or tell the user."""

    kind = "ConcurrencyConflictError"
    http_status = 412


class ConfirmedAppointmentElapsedError(NegotiationError):
    """Cancellation attempted after the confirmed start time."""

    kind = "ConfirmedAppointmentElapsedError"
    http_status = 422
