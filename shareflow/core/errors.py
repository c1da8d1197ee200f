"""Errors surfaced to a single requesting connection."""
from __future__ import annotations


class RelayError(Exception):
    """Base class for request rejections; ``message`` is sent as the ``error`` payload."""

    message = "Request rejected"

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InvalidInputError(RelayError):
    message = "Invalid input"


class RoomNotFoundError(RelayError):
    message = "Room not found"


class RoomFullError(RelayError):
    message = "Room is full"
