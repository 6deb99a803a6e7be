"""
Structured errors raised by the access-control core.

Every error carries a machine-readable ``kind`` and a human message. The HTTP
layer renders them through the handler registered in ``main``; nothing in the
core raises ``HTTPException`` directly.
"""
from typing import Any


class AccessControlError(Exception):
    kind = "error"
    status_code = 400

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        body = {"error": self.kind, "detail": self.message}
        body.update(self.extra)
        return body


class PermissionDenied(AccessControlError):
    kind = "permission_denied"
    status_code = 403


class NotFound(AccessControlError):
    kind = "not_found"
    status_code = 404


class InvalidState(AccessControlError):
    kind = "invalid_state"
    status_code = 409


class Expired(AccessControlError):
    kind = "expired"
    status_code = 410


class AlreadyConsumed(AccessControlError):
    """Invitation already reached ``accepted`` or ``revoked``."""
    kind = "already_consumed"
    status_code = 409

    def __init__(self, status: str, message: str | None = None):
        super().__init__(message or f"Invitation is {status}", status=status)
        self.status = status


class EmailMismatch(AccessControlError):
    kind = "email_mismatch"
    status_code = 403


class ValidationError(AccessControlError):
    kind = "validation_error"
    status_code = 400


class ConsistencyViolation(AccessControlError):
    kind = "consistency_violation"
    status_code = 409


class StorageError(AccessControlError):
    kind = "storage_error"
    status_code = 503
