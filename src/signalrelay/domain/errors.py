# src/signalrelay/domain/errors.py
"""
Error taxonomy shared by the intake, delivery and payment layers.

ValidationError subclasses ValueError so callers that already translate
ValueError into a 400 keep working.
"""

from typing import Optional


class SignalRelayError(Exception):
    """Base class for all domain errors."""


class ValidationError(SignalRelayError, ValueError):
    """Malformed or missing input. Rejected before persistence, never retried."""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or [message]


class NotFoundError(SignalRelayError, LookupError):
    pass


class InvalidStateError(SignalRelayError):
    """The entity's current state forbids the requested transition."""

    def __init__(self, message: str, current: Optional[str] = None):
        super().__init__(message)
        self.current = current


class ExpiredError(SignalRelayError):
    """The entity's time-to-live has elapsed."""


class DeliveryError(SignalRelayError):
    def __init__(self, message: str, destination: Optional[str] = None):
        super().__init__(message)
        self.destination = destination


class TransientDeliveryError(DeliveryError):
    """Network, timeout, 5xx or flood-wait. Retried up to a bound."""

    def __init__(self, message: str, destination: Optional[str] = None, retry_after: Optional[float] = None):
        super().__init__(message, destination)
        self.retry_after = retry_after


class PermanentDeliveryError(DeliveryError):
    """Recipient unreachable (bot blocked, chat gone). Never retried."""
