"""
Error taxonomy for the ShipStation integration.

Services raise IntegrationError subclasses; the app-level exception handler in
main.py turns them into the JSON error body, and the job worker turns them into
queue transitions. Each error carries an ErrorKind so callers can decide on
retry without matching on exception classes.
"""
import enum
from dataclasses import dataclass, field
from typing import Any, Optional


class ErrorKind(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    INTEGRATION_DISABLED = "integration_disabled"
    MALFORMED_PAYLOAD = "malformed_payload"
    VALIDATION_FAILURE = "validation_failure"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    RETRY_EXHAUSTED = "retry_exhausted"


# Only transient failures go back to the queue
RETRYABLE_KINDS = frozenset({ErrorKind.TRANSIENT})


class IntegrationError(Exception):
    kind: ErrorKind = ErrorKind.TRANSIENT
    status_code: int = 500
    code: str = "GENERAL_ERROR"

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class Unauthenticated(IntegrationError):
    kind = ErrorKind.UNAUTHENTICATED
    status_code = 401
    code = "UNAUTHORIZED"


class IntegrationDisabled(IntegrationError):
    kind = ErrorKind.INTEGRATION_DISABLED
    status_code = 403
    code = "INTEGRATION_DISABLED"


class MalformedPayload(IntegrationError):
    kind = ErrorKind.MALFORMED_PAYLOAD
    status_code = 400
    code = "MALFORMED_PAYLOAD"


class ValidationFailure(IntegrationError):
    kind = ErrorKind.VALIDATION_FAILURE
    status_code = 400
    code = "VALIDATION_ERROR"


class ResourceNotFound(IntegrationError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404
    code = "NOT_FOUND"


class TransientInfrastructureFailure(IntegrationError):
    kind = ErrorKind.TRANSIENT
    status_code = 500
    code = "TRANSIENT_FAILURE"


class RetryExhausted(IntegrationError):
    """Recorded when a job is dead-lettered. Never raised to an HTTP client."""
    kind = ErrorKind.RETRY_EXHAUSTED
    status_code = 500
    code = "RETRY_EXHAUSTED"


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of a job handler: ok, or a failure kind plus message."""
    ok: bool
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, message: str = "", **data: Any) -> "HandlerResult":
        return cls(ok=True, message=message, data=data)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "HandlerResult":
        return cls(ok=False, error_kind=kind, message=message)

    @classmethod
    def from_error(cls, exc: IntegrationError) -> "HandlerResult":
        return cls(ok=False, error_kind=exc.kind, message=exc.message)

    @property
    def retryable(self) -> bool:
        return not self.ok and self.error_kind in RETRYABLE_KINDS
