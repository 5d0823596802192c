"""Complaint desk application package."""

from __future__ import annotations

from .config import Settings
from .errors import (
    AssistantBusy,
    ComplaintDeskError,
    NotFound,
    PermissionDenied,
    TransportFailed,
    ValidationFailed,
)
from .stream_decoder import StreamDelta, StreamDone, StreamFrameDecoder

__all__ = [
    "AssistantBusy",
    "ComplaintDeskError",
    "NotFound",
    "PermissionDenied",
    "Settings",
    "StreamDelta",
    "StreamDone",
    "StreamFrameDecoder",
    "TransportFailed",
    "ValidationFailed",
    "create_app",
]


def __getattr__(name: str):  # pragma: no cover - small helper
    if name == "create_app":
        from .app import create_app

        return create_app
    raise AttributeError(f"module 'complaintdesk' has no attribute {name}")
