"""Exception hierarchy for the pre-call diagnostics.

All custom exceptions inherit from PrecallError so callers can catch them
together. Connection-phase errors carry a ``continuable`` flag that tells the
controller whether another connection attempt makes sense.
"""

__all__ = [
    "ChannelBusyError",
    "InvalidTransitionError",
    "PrecallError",
    "PreconditionError",
    "TransportError",
]


class PrecallError(Exception):
    """Base exception for all pre-call diagnostic errors."""


class PreconditionError(PrecallError):
    """A diagnostic session could not be started."""


class TransportError(PrecallError):
    """The message channel failed to open or broke while in use.

    Attributes:
        continuable: True for timeout and negotiation class failures that
            may succeed on another attempt, False for fatal setup errors.
    """

    def __init__(self, message: str, continuable: bool = False):
        super().__init__(message)
        self.message = message
        self.continuable = continuable

    def __repr__(self) -> str:
        return f"TransportError({self.message!r}, continuable={self.continuable})"


class ChannelBusyError(PrecallError):
    """A consumer tried to register while another one still owns the channel."""


class InvalidTransitionError(PrecallError):
    """A measurement test was asked to make a transition its state forbids."""

    def __init__(self, current, requested):
        super().__init__(f"Invalid transition {current.value} -> {requested.value}")
        self.current = current
        self.requested = requested
