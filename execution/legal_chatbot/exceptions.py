"""
Error taxonomy for the Legal Chatbot orchestrator.

Validation and access errors short-circuit a request before any side effect.
Backend failures are per-source and are folded into the answer envelope by the
aggregator. Anything else is an internal error and is caught at the HTTP
boundary.
"""

from typing import Optional


class ChatbotError(Exception):
    """Base class for all orchestrator errors."""


class QueryValidationError(ChatbotError):
    """Raised when a raw ask request cannot be turned into a query plan."""

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


# Access denial reasons
AUTHENTICATION_REQUIRED = "AuthenticationRequired"
ENTITLEMENT_REQUIRED = "EntitlementRequired"


class AccessDenied(ChatbotError):
    """Raised when a caller may not use the chatbot."""

    STATUS_CODES = {
        AUTHENTICATION_REQUIRED: 401,
        ENTITLEMENT_REQUIRED: 402,
    }
    MESSAGES = {
        AUTHENTICATION_REQUIRED: "Authentication required",
        ENTITLEMENT_REQUIRED: "Chatbot access requires active subscription",
    }

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or self.MESSAGES.get(reason, reason))
        self.reason = reason
        self.message = message or self.MESSAGES.get(reason, reason)

    @property
    def status_code(self) -> int:
        return self.STATUS_CODES.get(self.reason, 401)


# Backend failure kinds
TIMEOUT = "Timeout"
BACKEND_UNAVAILABLE = "BackendUnavailable"
SYNTHESIS_FAILED = "SynthesisFailed"

FAILURE_KINDS = frozenset({TIMEOUT, BACKEND_UNAVAILABLE, SYNTHESIS_FAILED})


class BackendFailure(ChatbotError):
    """Typed failure raised by a backend adapter."""

    def __init__(self, kind: str, source: str, message: str = ""):
        if kind not in FAILURE_KINDS:
            raise ValueError(f"Unknown backend failure kind: {kind}")
        super().__init__(message or kind)
        self.kind = kind
        self.source = source
        self.message = message or kind

    def describe(self) -> str:
        """Short human-readable form, e.g. ``legislation (Timeout)``."""
        return f"{self.source} ({self.kind})"

    def to_dict(self) -> dict:
        return {"source": self.source, "kind": self.kind, "message": self.message}


class RecordValidationError(ChatbotError):
    """Raised when a feedback or saved-answer payload is invalid."""

    def __init__(self, errors: list[str]):
        super().__init__(", ".join(errors))
        self.errors = errors


class RecordNotFound(ChatbotError):
    """Raised when an owner-scoped record does not exist."""
