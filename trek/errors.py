"""
Error taxonomy shared by every state-machine operation.

Each error carries a stable machine-readable ``kind`` plus a human-readable
message; the HTTP layer renders both.
"""


class TrekError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message}


class ValidationError(TrekError):
    kind = "validation_error"
    status_code = 400


class NotFoundError(ValidationError):
    kind = "not_found"
    status_code = 404


class AuthorizationError(TrekError):
    kind = "authorization_error"
    status_code = 403


class StateConflictError(TrekError):
    kind = "state_conflict"
    status_code = 409


class PaymentError(TrekError):
    kind = "payment_error"
    status_code = 402
