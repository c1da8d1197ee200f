"""Peer-side driver that runs one negotiation engine per remote peer."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from ..core.config import settings
from ..schemas.signaling import SignalEnvelope, SignalKind
from ..services.negotiation import (
    Closed,
    DescriptionFactory,
    Effect,
    NegotiationEngine,
    RestartRequested,
    SendCandidate,
    SendDescription,
    SessionDescription,
)

logger = logging.getLogger(__name__)

FactoryProvider = Callable[[str], DescriptionFactory]


@dataclass(frozen=True, slots=True)
class Outbound:
    """A frame to send to the relay."""

    event: str
    data: Any = None


@dataclass(frozen=True, slots=True)
class PeerLost(Effect):
    """Connectivity to ``peer_id`` failed and the restart budget is spent."""


class PeerAgent:
    """Translate relay events into negotiation transitions and back.

    The host side owns one impolite engine per viewer and starts negotiation as
    soon as it streams to that viewer. The viewer side creates its polite engine
    lazily when the first offer or candidate from the host arrives. Every call
    returns a list of effects: ``Outbound`` frames for the relay and engine
    effects for the media layer.
    """

    def __init__(self, factory_for: FactoryProvider, *, restart_budget: int | None = None) -> None:
        self._factory_for = factory_for
        self._restart_budget = settings.peer_restart_budget if restart_budget is None else restart_budget
        self._engines: Dict[str, NegotiationEngine] = {}
        self._restarts: Dict[str, int] = {}
        self._viewers: list[str] = []
        self.local_id: Optional[str] = None
        self.room_code: Optional[str] = None
        self.is_host = False
        self.streaming = False
        self._handlers: Dict[str, Callable[[Any], list[object]]] = {
            "session:ready": self._on_ready,
            "room:created": self._on_room_created,
            "room:joined": self._on_room_joined,
            "room:updated": self._on_room_updated,
            "user:joined": self._on_user_joined,
            "user:left": self._on_user_left,
            "room:closed": self._on_room_closed,
            "host:disconnected": self._on_room_closed,
            "stream:started": self._on_stream_started,
            "stream:stopped": self._on_stream_stopped,
            SignalKind.OFFER.event: self._on_description,
            SignalKind.ANSWER.event: self._on_description,
            SignalKind.ICE_CANDIDATE.event: self._on_candidate,
        }

    @property
    def peers(self) -> list[str]:
        return list(self._engines)

    def engine(self, peer_id: str) -> Optional[NegotiationEngine]:
        return self._engines.get(peer_id)

    def handle(self, event: str, data: Any = None) -> list[object]:
        """Apply one relay event."""

        handler = self._handlers.get(event)
        if handler is None:
            return []
        return handler(data)

    def create_room(
        self, host_name: str, room_code: str | None = None, max_viewers: int | None = None
    ) -> list[object]:
        payload: dict[str, Any] = {"hostName": host_name}
        if room_code:
            payload["roomCode"] = room_code
        if max_viewers is not None:
            payload["maxViewers"] = max_viewers
        return [Outbound("room:create", payload)]

    def join_room(self, room_code: str, user_name: str) -> list[object]:
        return [Outbound("room:join", {"roomCode": room_code, "userName": user_name})]

    def start_stream(self) -> list[object]:
        """Host only: announce the stream and negotiate with every current viewer."""

        if not self.is_host:
            return []
        self.streaming = True
        effects: list[object] = [Outbound("stream:start", {})]
        for viewer_id in self._viewers:
            effects.extend(self._connect(viewer_id))
        return effects

    def stop_stream(self) -> list[object]:
        if not self.is_host:
            return []
        self.streaming = False
        return [*self._close_all(), Outbound("stream:stop", {})]

    def leave(self) -> list[object]:
        effects = [*self._close_all(), Outbound("room:leave", {})]
        self._reset_room()
        return effects

    def send_chat(self, message: str) -> list[object]:
        return [Outbound("chat:message", message)]

    def local_candidate(self, peer_id: str, candidate: Any) -> list[object]:
        engine = self._engines.get(peer_id)
        if engine is None:
            return []
        return self._translate(engine.add_local_candidate(candidate))

    def connectivity_changed(self, peer_id: str, state: str) -> list[object]:
        """Feed a transport connectivity change back into the pair's engine."""

        engine = self._engines.get(peer_id)
        if engine is None:
            return []
        if state == "connected":
            self._restarts.pop(peer_id, None)
        effects = self._translate(engine.connectivity_changed(state))
        if any(isinstance(effect, RestartRequested) for effect in effects):
            effects.extend(self._restart(peer_id, engine))
        return effects

    def _restart(self, peer_id: str, engine: NegotiationEngine) -> list[object]:
        attempts = self._restarts.get(peer_id, 0)
        if attempts >= self._restart_budget:
            logger.warning("Giving up on %s after %d restarts", peer_id, attempts)
            return [*self._close(peer_id), PeerLost(peer_id)]
        self._restarts[peer_id] = attempts + 1
        logger.info("Restarting connectivity to %s (attempt %d/%d)", peer_id, attempts + 1, self._restart_budget)
        return self._translate(engine.restart())

    def _on_ready(self, data: Any) -> list[object]:
        if isinstance(data, dict) and isinstance(data.get("id"), str):
            self.local_id = data["id"]
        return []

    def _on_room_created(self, data: Any) -> list[object]:
        if not isinstance(data, dict):
            return []
        self.is_host = True
        self.room_code = data.get("code")
        self.streaming = bool(data.get("isStreaming"))
        self._viewers = [viewer["id"] for viewer in data.get("viewers", [])]
        if not self.streaming:
            return []
        # Inherited a live room: viewers are waiting for an offer.
        effects: list[object] = []
        for viewer_id in self._viewers:
            effects.extend(self._connect(viewer_id))
        return effects

    def _on_room_joined(self, data: Any) -> list[object]:
        if not isinstance(data, dict):
            return []
        self.is_host = False
        self.room_code = data.get("code")
        self.streaming = bool(data.get("isStreaming"))
        return []

    def _on_room_updated(self, data: Any) -> list[object]:
        if self.is_host and isinstance(data, dict):
            self._viewers = [viewer["id"] for viewer in data.get("viewers", [])]
        return []

    def _on_user_joined(self, data: Any) -> list[object]:
        if not self.is_host or not isinstance(data, dict):
            return []
        viewer_id = data.get("id")
        if not viewer_id or viewer_id == self.local_id:
            return []
        if viewer_id not in self._viewers:
            self._viewers.append(viewer_id)
        if not self.streaming:
            return []
        return self._connect(viewer_id)

    def _on_user_left(self, data: Any) -> list[object]:
        if not isinstance(data, str):
            return []
        if data in self._viewers:
            self._viewers.remove(data)
        return self._close(data)

    def _on_room_closed(self, data: Any) -> list[object]:
        logger.info("Room %s closed: %s", self.room_code, data)
        effects = self._close_all()
        self._reset_room()
        return effects

    def _on_stream_started(self, data: Any) -> list[object]:
        self.streaming = True
        return []

    def _on_stream_stopped(self, data: Any) -> list[object]:
        self.streaming = False
        return self._close_all()

    def _on_description(self, data: Any) -> list[object]:
        envelope = self._decode(data)
        if envelope is None:
            return []
        try:
            description = SessionDescription.from_wire(envelope.payload)
        except ValueError:
            logger.warning("Dropping malformed description from %s", envelope.from_id)
            return []

        engine = self._engines.get(envelope.from_id)
        if engine is None:
            if envelope.kind is not SignalKind.OFFER or self.is_host:
                return []
            engine = self._open(envelope.from_id, initiator=False)
        return self._translate(engine.receive_remote_description(description))

    def _on_candidate(self, data: Any) -> list[object]:
        envelope = self._decode(data)
        if envelope is None:
            return []
        engine = self._engines.get(envelope.from_id)
        if engine is None:
            if self.is_host:
                return []
            engine = self._open(envelope.from_id, initiator=False)
        return self._translate(engine.receive_candidate(envelope.payload))

    def _connect(self, viewer_id: str) -> list[object]:
        engine = self._engines.get(viewer_id) or self._open(viewer_id, initiator=True)
        return self._translate(engine.start_negotiation())

    def _open(self, peer_id: str, *, initiator: bool) -> NegotiationEngine:
        engine = NegotiationEngine.for_pair(
            self.local_id or "",
            peer_id,
            initiator=initiator,
            factory=self._factory_for(peer_id),
        )
        self._engines[peer_id] = engine
        return engine

    def _close(self, peer_id: Any) -> list[object]:
        engine = self._engines.get(peer_id)
        if engine is None:
            return []
        return self._translate(engine.close())

    def _close_all(self) -> list[object]:
        effects: list[object] = []
        for peer_id in list(self._engines):
            effects.extend(self._close(peer_id))
        return effects

    def _reset_room(self) -> None:
        self.room_code = None
        self.is_host = False
        self.streaming = False
        self._viewers = []
        self._restarts.clear()

    def _translate(self, effects: list[Effect]) -> list[object]:
        translated: list[object] = []
        for effect in effects:
            if isinstance(effect, SendDescription):
                kind = SignalKind(effect.description.kind.value)
                payload = {"to": effect.peer_id, "data": effect.description.to_wire()}
                translated.append(Outbound(kind.event, payload))
            elif isinstance(effect, SendCandidate):
                payload = {"to": effect.peer_id, "data": effect.candidate}
                translated.append(Outbound(SignalKind.ICE_CANDIDATE.event, payload))
            else:
                if isinstance(effect, Closed):
                    self._engines.pop(effect.peer_id, None)
                    self._restarts.pop(effect.peer_id, None)
                translated.append(effect)
        return translated

    @staticmethod
    def _decode(data: Any) -> Optional[SignalEnvelope]:
        try:
            return SignalEnvelope.model_validate(data)
        except ValidationError:
            logger.warning("Dropping malformed signal: %r", data)
            return None
