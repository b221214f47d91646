"""Error taxonomy shared by services and routes.

Every error carries the HTTP status it maps to and a short machine code.
The app factory registers a handler that renders them as JSON.
"""


class KudiError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message=None, **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.code, "message": self.message}
        body.update(self.details)
        return body


class ConfigError(RuntimeError):
    """Raised at startup when required configuration is missing."""


class ValidationError(KudiError):
    status_code = 400
    code = "validation_error"


class AuthenticationError(KudiError):
    status_code = 401
    code = "unauthorized"


class AuthorizationError(KudiError):
    status_code = 403
    code = "forbidden"


class NotFoundError(KudiError):
    status_code = 404
    code = "not_found"


class InvalidStateTransition(KudiError):
    status_code = 400
    code = "invalid_state_transition"

    def __init__(self, current, requested, message=None):
        current = getattr(current, "value", current)
        requested = getattr(requested, "value", requested)
        super().__init__(
            message or f"cannot move from {current} to {requested}",
            current_state=current,
            requested_state=requested,
        )
        self.current = current
        self.requested = requested


class InsufficientStock(KudiError):
    status_code = 400
    code = "insufficient_stock"


class AlreadyDone(KudiError):
    """The requested end state already holds; callers answer 200."""

    status_code = 200
    code = "already_done"

    def __init__(self, message=None, order=None, **details):
        super().__init__(message, **details)
        self.order = order

    def to_dict(self) -> dict:
        body = {"message": self.message, "idempotent": True}
        body.update(self.details)
        if self.order is not None:
            body["order"] = self.order.to_dict()
        return body


class AlreadyCompleted(AlreadyDone):
    code = "already_completed"


class AlreadyReleased(AlreadyDone):
    code = "already_released"


class AlreadyHeld(AlreadyDone):
    code = "already_held"


class GatewayError(KudiError):
    status_code = 502
    code = "gateway_error"


class PersistenceError(KudiError):
    status_code = 500
    code = "internal_error"

    def to_dict(self) -> dict:
        # database details never leave the process
        return {"error": self.code, "message": "internal server error"}
