"""Error taxonomy shared by the complaint lifecycle and messaging layers."""

from __future__ import annotations


class ComplaintDeskError(Exception):
    """Base class for recoverable complaint desk failures."""


class PermissionDenied(ComplaintDeskError, PermissionError):
    """Raised when an actor attempts an operation their role does not allow."""


class ValidationFailed(ComplaintDeskError, ValueError):
    """Raised for empty/over-length text or invalid enumeration values."""


class NotFound(ComplaintDeskError, LookupError):
    """Raised when a complaint or message id does not exist."""


class TransportFailed(ComplaintDeskError, RuntimeError):
    """Raised when a streamed exchange fails at the network level."""


class MalformedFrame(ComplaintDeskError, ValueError):
    """A stream frame whose payload could not be parsed.

    Only used inside the stream decoder; the decoder recovers from it.
    """


class AssistantBusy(ComplaintDeskError, RuntimeError):
    """Raised when a new assistant turn is requested while one is in flight."""


__all__ = [
    "AssistantBusy",
    "ComplaintDeskError",
    "MalformedFrame",
    "NotFound",
    "PermissionDenied",
    "TransportFailed",
    "ValidationFailed",
]
