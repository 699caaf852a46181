# Error taxonomy for the TrustWork core
# Every failure surfaced by a command handler is one of these, keyed by a stable tag

from typing import Any, Dict, Optional


class TrustWorkError(Exception):
    """Base class for all tagged domain errors."""

    tag = "Error"
    status_code = 400

    def __init__(self, detail: str = "", **extra: Any):
        super().__init__(detail or self.tag)
        self.detail = detail or self.tag
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.tag, "detail": self.detail}
        body.update(self.extra)
        return body


class Unauthenticated(TrustWorkError):
    tag = "Unauthenticated"
    status_code = 401


class Unauthorized(TrustWorkError):
    tag = "Unauthorized"
    status_code = 403


class InvalidSignature(TrustWorkError):
    """Gateway callback whose signature does not match the shared secret."""
    tag = "InvalidSignature"
    status_code = 400


class ValidationFailed(TrustWorkError):
    tag = "ValidationFailed"
    status_code = 422

    def __init__(self, fields: Dict[str, str], detail: str = "Input validation failed"):
        super().__init__(detail, fields=fields)
        self.fields = fields


class NotFound(TrustWorkError):
    tag = "NotFound"
    status_code = 404


class Conflict(TrustWorkError):
    """Optimistic-version clash; the caller should re-read and retry."""
    tag = "Conflict"
    status_code = 409


class IllegalTransition(TrustWorkError):
    tag = "IllegalTransition"
    status_code = 409

    def __init__(self, from_state: Optional[str], to_state: Optional[str], detail: str = ""):
        super().__init__(
            detail or f"Cannot move from {from_state} to {to_state}",
            **{"from": from_state, "to": to_state},
        )
        self.from_state = from_state
        self.to_state = to_state


class OutOfOrder(IllegalTransition):
    tag = "OutOfOrder"


class StaleState(TrustWorkError):
    tag = "StaleState"
    status_code = 409

    def __init__(self, expected: Optional[str], actual: Optional[str]):
        super().__init__(
            f"Expected status {expected} but found {actual}; re-read and retry",
            expected=expected,
            actual=actual,
        )
        self.expected = expected
        self.actual = actual


class GatewayError(TrustWorkError):
    tag = "GatewayError"
    status_code = 502

    def __init__(self, detail: str, retryable: bool = False):
        super().__init__(detail, retryable=retryable)
        self.retryable = retryable


class Timeout(TrustWorkError):
    tag = "Timeout"
    status_code = 504
