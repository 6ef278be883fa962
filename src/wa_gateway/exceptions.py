"""Exception hierarchy for the session gateway.

Expected failures of component operations (rate limits, an already registered
account) are reported through result objects; these exceptions cover the cases
where a caller asked for something that cannot be done at all.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for gateway errors."""


class SessionNotReadyError(GatewayError):
    """No active session handle is available for the requested operation.

    Attributes:
        operation: Operation that needed the handle
        state: Connection state when the error occurred

    """

    def __init__(self, operation: str, state: str = "unknown") -> None:
        self.operation: str = operation
        self.state: str = state
        super().__init__(f"Session not ready for {operation} (state: {state})")


class InvalidPhoneError(GatewayError):
    """Phone number is missing or does not normalise to 8-15 digits."""

    def __init__(self, phone: str | None) -> None:
        self.phone: str | None = phone
        super().__init__(f"Invalid phone number: {phone!r}")


class SessionFactoryError(GatewayError):
    """The external library's session factory could not be resolved or loaded."""

    def __init__(self, target: str | None, reason: str) -> None:
        self.target: str | None = target
        self.reason: str = reason
        super().__init__(f"Cannot load session factory {target!r}: {reason}")
