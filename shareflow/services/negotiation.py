"""Per-peer-pair negotiation state machine.

Each pair of peers runs one engine. The stream initiator is *impolite* and the
recipient is *polite*; when both sides produce an offer at the same time the
polite side rolls its own offer back and answers, while the impolite side
ignores the colliding offer. ICE candidates that arrive before a remote
description are buffered and replayed, in receipt order, as soon as one is
applied.

Transitions are pure: ``transition(state, event, factory)`` returns the next
state and the effects the caller must carry out (apply a description, add a
candidate, send something to the peer). The engine never performs I/O.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Protocol

logger = logging.getLogger(__name__)

FAILED_STATES = frozenset({"failed"})
CLOSED_STATES = frozenset({"closed"})


class Role(str, enum.Enum):
    POLITE = "polite"
    IMPOLITE = "impolite"


class Phase(str, enum.Enum):
    IDLE = "idle"
    OFFERING = "offering"
    ANSWERING = "answering"
    STABLE = "stable"
    CLOSED = "closed"


class DescriptionKind(str, enum.Enum):
    OFFER = "offer"
    ANSWER = "answer"


@dataclass(frozen=True, slots=True)
class SessionDescription:
    kind: DescriptionKind
    sdp: str

    def to_wire(self) -> dict[str, str]:
        return {"type": self.kind.value, "sdp": self.sdp}

    @classmethod
    def from_wire(cls, data: Any) -> "SessionDescription":
        if not isinstance(data, dict) or not isinstance(data.get("sdp"), str):
            raise ValueError("session description needs a string 'sdp'")
        return cls(kind=DescriptionKind(data.get("type")), sdp=data["sdp"])


class DescriptionFactory(Protocol):
    """Seam to the media stack that produces local descriptions."""

    def create_offer(self, *, ice_restart: bool = False) -> SessionDescription:
        ...

    def create_answer(self, offer: SessionDescription) -> SessionDescription:
        ...


@dataclass(frozen=True, slots=True)
class NegotiationState:
    local_id: str
    remote_id: str
    role: Role
    phase: Phase = Phase.IDLE
    remote_description_applied: bool = False
    pending_candidates: tuple[Any, ...] = ()


# Events


@dataclass(frozen=True, slots=True)
class StartNegotiation:
    pass


@dataclass(frozen=True, slots=True)
class Renegotiate:
    ice_restart: bool = False


@dataclass(frozen=True, slots=True)
class RemoteDescription:
    description: SessionDescription


@dataclass(frozen=True, slots=True)
class RemoteCandidate:
    candidate: Any


@dataclass(frozen=True, slots=True)
class LocalCandidate:
    candidate: Any


@dataclass(frozen=True, slots=True)
class ConnectivityChanged:
    state: str


@dataclass(frozen=True, slots=True)
class Close:
    pass


# Effects


@dataclass(frozen=True, slots=True)
class Effect:
    peer_id: str


@dataclass(frozen=True, slots=True)
class SetLocalDescription(Effect):
    description: SessionDescription


@dataclass(frozen=True, slots=True)
class SetRemoteDescription(Effect):
    description: SessionDescription


@dataclass(frozen=True, slots=True)
class RollbackLocalDescription(Effect):
    pass


@dataclass(frozen=True, slots=True)
class AddIceCandidate(Effect):
    candidate: Any


@dataclass(frozen=True, slots=True)
class SendDescription(Effect):
    description: SessionDescription


@dataclass(frozen=True, slots=True)
class SendCandidate(Effect):
    candidate: Any


@dataclass(frozen=True, slots=True)
class RestartRequested(Effect):
    pass


@dataclass(frozen=True, slots=True)
class Closed(Effect):
    pass


Transition = tuple[NegotiationState, list[Effect]]


def _enter(state: NegotiationState, phase: Phase, **changes: Any) -> NegotiationState:
    if phase is not state.phase:
        logger.debug(
            "%s->%s (%s): %s -> %s",
            state.local_id,
            state.remote_id,
            state.role.value,
            state.phase.value,
            phase.value,
        )
    return replace(state, phase=phase, **changes)


def _offer(state: NegotiationState, factory: DescriptionFactory, *, ice_restart: bool) -> Transition:
    offer = factory.create_offer(ice_restart=ice_restart)
    peer = state.remote_id
    return _enter(state, Phase.OFFERING), [SetLocalDescription(peer, offer), SendDescription(peer, offer)]


def _apply_remote(state: NegotiationState, description: SessionDescription, phase: Phase) -> Transition:
    """Apply a remote description, then replay buffered candidates in receipt order."""

    peer = state.remote_id
    effects: list[Effect] = [SetRemoteDescription(peer, description)]
    effects.extend(AddIceCandidate(peer, candidate) for candidate in state.pending_candidates)
    return _enter(state, phase, remote_description_applied=True, pending_candidates=()), effects


def _on_start(state: NegotiationState, event: StartNegotiation, factory: DescriptionFactory) -> Transition:
    if state.role is not Role.IMPOLITE or state.phase is not Phase.IDLE:
        logger.debug(
            "Ignoring start for %s->%s in %s as %s",
            state.local_id,
            state.remote_id,
            state.phase.value,
            state.role.value,
        )
        return state, []
    return _offer(state, factory, ice_restart=False)


def _on_renegotiate(state: NegotiationState, event: Renegotiate, factory: DescriptionFactory) -> Transition:
    if state.phase not in (Phase.IDLE, Phase.STABLE):
        return state, []
    return _offer(state, factory, ice_restart=event.ice_restart)


def _on_remote_description(
    state: NegotiationState, event: RemoteDescription, factory: DescriptionFactory
) -> Transition:
    description = event.description
    peer = state.remote_id

    if description.kind is DescriptionKind.ANSWER:
        if state.phase is not Phase.OFFERING:
            logger.debug("Ignoring answer from %s in %s", peer, state.phase.value)
            return state, []
        return _apply_remote(state, description, Phase.STABLE)

    effects: list[Effect] = []
    if state.phase is Phase.OFFERING:
        if state.role is Role.IMPOLITE:
            logger.debug("Glare with %s: keeping our offer", peer)
            return state, []
        logger.debug("Glare with %s: rolling back our offer", peer)
        effects.append(RollbackLocalDescription(peer))

    state, applied = _apply_remote(state, description, Phase.ANSWERING)
    effects.extend(applied)
    answer = factory.create_answer(description)
    effects.extend([SetLocalDescription(peer, answer), SendDescription(peer, answer)])
    return _enter(state, Phase.STABLE), effects


def _on_remote_candidate(
    state: NegotiationState, event: RemoteCandidate, factory: DescriptionFactory
) -> Transition:
    if not state.remote_description_applied:
        return replace(state, pending_candidates=(*state.pending_candidates, event.candidate)), []
    return state, [AddIceCandidate(state.remote_id, event.candidate)]


def _on_local_candidate(
    state: NegotiationState, event: LocalCandidate, factory: DescriptionFactory
) -> Transition:
    return state, [SendCandidate(state.remote_id, event.candidate)]


def _on_connectivity(
    state: NegotiationState, event: ConnectivityChanged, factory: DescriptionFactory
) -> Transition:
    if event.state in CLOSED_STATES:
        return _on_close(state, Close(), factory)
    if event.state in FAILED_STATES:
        logger.info("Connectivity to %s failed", state.remote_id)
        return state, [RestartRequested(state.remote_id)]
    return state, []


def _on_close(state: NegotiationState, event: Close, factory: DescriptionFactory) -> Transition:
    return _enter(state, Phase.CLOSED, pending_candidates=()), [Closed(state.remote_id)]


_HANDLERS: Dict[type, Callable[[NegotiationState, Any, DescriptionFactory], Transition]] = {
    StartNegotiation: _on_start,
    Renegotiate: _on_renegotiate,
    RemoteDescription: _on_remote_description,
    RemoteCandidate: _on_remote_candidate,
    LocalCandidate: _on_local_candidate,
    ConnectivityChanged: _on_connectivity,
    Close: _on_close,
}


def transition(state: NegotiationState, event: object, factory: DescriptionFactory) -> Transition:
    """Compute the next state and effects. Events after close are dropped."""

    if state.phase is Phase.CLOSED:
        return state, []
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"Unsupported negotiation event: {event!r}")
    return handler(state, event, factory)


class NegotiationEngine:
    """Hold the state of one peer pair and feed events through ``transition``."""

    def __init__(self, local_id: str, remote_id: str, role: Role, factory: DescriptionFactory) -> None:
        self._state = NegotiationState(local_id=local_id, remote_id=remote_id, role=role)
        self._factory = factory

    @classmethod
    def for_pair(
        cls, local_id: str, remote_id: str, *, initiator: bool, factory: DescriptionFactory
    ) -> "NegotiationEngine":
        role = Role.IMPOLITE if initiator else Role.POLITE
        return cls(local_id, remote_id, role, factory)

    @property
    def state(self) -> NegotiationState:
        return self._state

    @property
    def phase(self) -> Phase:
        return self._state.phase

    @property
    def role(self) -> Role:
        return self._state.role

    @property
    def remote_id(self) -> str:
        return self._state.remote_id

    @property
    def closed(self) -> bool:
        return self._state.phase is Phase.CLOSED

    def start_negotiation(self) -> list[Effect]:
        return self._apply(StartNegotiation())

    def renegotiate(self, *, ice_restart: bool = False) -> list[Effect]:
        return self._apply(Renegotiate(ice_restart=ice_restart))

    def restart(self) -> list[Effect]:
        return self.renegotiate(ice_restart=True)

    def receive_remote_description(self, description: SessionDescription) -> list[Effect]:
        return self._apply(RemoteDescription(description))

    def receive_candidate(self, candidate: Any) -> list[Effect]:
        return self._apply(RemoteCandidate(candidate))

    def add_local_candidate(self, candidate: Any) -> list[Effect]:
        return self._apply(LocalCandidate(candidate))

    def connectivity_changed(self, state: str) -> list[Effect]:
        return self._apply(ConnectivityChanged(state))

    def close(self) -> list[Effect]:
        return self._apply(Close())

    def _apply(self, event: object) -> list[Effect]:
        self._state, effects = transition(self._state, event, self._factory)
        return effects
