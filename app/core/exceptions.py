"""
Error taxonomy for the newsletter subsystem.

NotFoundError and InvalidStateTransition abort an operation and propagate to
the caller. DeliveryFailure never leaves the per-recipient dispatch loop.
"""
from typing import Any, Iterable, Optional


class NewsletterError(Exception):
    """Base class for newsletter errors."""


class NotFoundError(NewsletterError):
    """Referenced campaign or subscriber does not exist."""

    def __init__(self, resource: str, resource_id: Any):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} {resource_id} not found")


class InvalidStateTransition(NewsletterError):
    """Requested lifecycle operation is not legal from the current status."""

    def __init__(
        self,
        campaign_id: Any,
        current_status: Optional[str],
        operation: str,
        allowed: Iterable[str] = ()
    ):
        self.campaign_id = campaign_id
        self.current_status = getattr(current_status, "value", current_status)
        self.operation = operation
        self.allowed = [getattr(status, "value", status) for status in allowed]
        message = f"Cannot {operation} campaign {campaign_id} in status '{self.current_status}'"
        if self.allowed:
            message += f" (allowed: {', '.join(self.allowed)})"
        super().__init__(message)


class ValidationError(NewsletterError):
    """Malformed input rejected by the persistence layer."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class DeliveryFailure(NewsletterError):
    """A single recipient's send failed."""

    def __init__(self, email: str, reason: str):
        self.email = email
        self.reason = reason
        super().__init__(f"Delivery to {email} failed: {reason}")
