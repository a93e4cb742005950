"""
Error taxonomy for the message distribution core.

Repository functions raise these; the HTTP layer in main.py maps them to
status codes. Store errors are always wrapped in StoreFailure with the
operation that failed.
"""


class GatewayError(Exception):
    """Base class for all errors raised by the gateway core."""


class ValidationError(GatewayError):
    """A required field is missing or a value is not acceptable."""


class InvalidStatus(ValidationError):
    """Status value outside the allowed set for the operation."""


class InvalidTransition(ValidationError):
    """Attempt to move a message from one terminal state to another."""


class DuplicateMessage(GatewayError):
    """An identical (to_number, body) was accepted within the dedup window."""


class NotFound(GatewayError):
    """Unknown message or device."""


class StoreFailure(GatewayError):
    """Any underlying store error, wrapped with operation context."""
