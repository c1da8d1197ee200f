"""Signaling frames, inbound request payloads and the signal envelope codec."""
from __future__ import annotations

import enum
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..core.errors import InvalidInputError

SIGNAL_EVENT_PREFIX = "webrtc:"


class SignalKind(str, enum.Enum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"

    @property
    def event(self) -> str:
        return f"{SIGNAL_EVENT_PREFIX}{self.value}"

    @classmethod
    def from_event(cls, event: str) -> "SignalKind | None":
        if not event.startswith(SIGNAL_EVENT_PREFIX):
            return None
        try:
            return cls(event[len(SIGNAL_EVENT_PREFIX):])
        except ValueError:
            return None


class SignalEnvelope(BaseModel):
    """Connection-setup message relayed between two peers without interpretation."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: SignalKind = Field(..., alias="type")
    from_id: str = Field(..., alias="from", min_length=1)
    to_id: str = Field(..., alias="to", min_length=1)
    payload: Any = Field(..., alias="data")

    @field_validator("payload")
    @classmethod
    def _require_payload(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("payload is required")
        return value

    @property
    def event(self) -> str:
        return self.kind.event

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class SignalRequest(BaseModel):
    """Inbound ``webrtc:*`` payload as sent by a peer."""

    to: str = Field(..., min_length=1)
    data: Any = Field(...)

    @field_validator("data")
    @classmethod
    def _require_data(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("data is required")
        return value


class RoomCreateRequest(BaseModel):
    host_name: str = Field(..., alias="hostName")
    room_code: str | None = Field(default=None, alias="roomCode")
    max_viewers: int | None = Field(default=None, alias="maxViewers")


class RoomJoinRequest(BaseModel):
    room_code: str = Field(..., alias="roomCode")
    user_name: str = Field(..., alias="userName")


def decode_signal(event: str, sender_id: str, payload: object) -> SignalEnvelope:
    """Build an envelope from an inbound ``webrtc:*`` frame, stamping the sender id."""

    kind = SignalKind.from_event(event)
    if kind is None:
        raise InvalidInputError("Invalid signal")
    try:
        request = SignalRequest.model_validate(payload)
    except ValidationError as exc:
        raise InvalidInputError("Invalid signal") from exc
    return SignalEnvelope(kind=kind, from_id=sender_id, to_id=request.to, payload=request.data)


def decode_frame(raw: str | bytes) -> tuple[str, Any]:
    """Split a JSON text frame into ``(event, data)``."""

    try:
        frame = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidInputError("Invalid message") from exc
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        raise InvalidInputError("Invalid message")
    return frame["event"], frame.get("data")


def encode_frame(event: str, data: Any = None) -> dict[str, Any]:
    return {"event": event, "data": data}
