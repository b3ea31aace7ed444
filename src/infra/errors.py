"""Custom exception hierarchy for the bug tracker.

All application-specific exceptions inherit from TrackerError,
which carries an error code for RPC error frame mapping.
"""

from __future__ import annotations


class TrackerError(Exception):
    """Base exception for all tracker errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class SubscriptionError(TrackerError):
    """Live query channel could not be established or was dropped.

    Surfaced to the caller, which may re-open the subscription.
    """

    def __init__(self, message: str, *, code: str = "SUBSCRIPTION_ERROR") -> None:
        super().__init__(message, code=code)


class WriteError(TrackerError):
    """Create/update rejected by the document store. Never retried automatically."""

    def __init__(self, message: str, *, code: str = "WRITE_ERROR") -> None:
        super().__init__(message, code=code)


class ValidationError(TrackerError):
    """Client-side precondition failed before any store call."""

    def __init__(self, message: str, *, code: str = "VALIDATION_ERROR") -> None:
        super().__init__(message, code=code)


class MalformedDocumentError(TrackerError):
    """A document in a snapshot could not be parsed into its entity type."""

    def __init__(self, doc_id: str, reason: str) -> None:
        super().__init__(f"Malformed document '{doc_id}': {reason}", code="MALFORMED_DOCUMENT")
        self.doc_id = doc_id
        self.reason = reason


class GatewayError(TrackerError):
    """Errors in the Gateway / WebSocket layer."""

    def __init__(self, message: str, *, code: str = "GATEWAY_ERROR") -> None:
        super().__init__(message, code=code)


class NotSignedInError(ValidationError):
    """Write attempted while SessionContext has no current user."""

    def __init__(self, message: str = "Sign-in required before writing") -> None:
        super().__init__(message, code="NOT_SIGNED_IN")
