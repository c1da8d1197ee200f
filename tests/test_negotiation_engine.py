"""Tests for the per-pair negotiation engine."""
from __future__ import annotations

import pytest

from shareflow.services.negotiation import (
    AddIceCandidate,
    Closed,
    DescriptionKind,
    NegotiationEngine,
    NegotiationState,
    Phase,
    RestartRequested,
    Role,
    RollbackLocalDescription,
    SendCandidate,
    SendDescription,
    SessionDescription,
    SetLocalDescription,
    SetRemoteDescription,
    StartNegotiation,
    transition,
)


class StubFactory:
    """Produce predictable descriptions tagged with the local peer name."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.offers = 0

    def create_offer(self, *, ice_restart: bool = False) -> SessionDescription:
        self.offers += 1
        suffix = "-restart" if ice_restart else ""
        return SessionDescription(DescriptionKind.OFFER, f"{self.name}-offer-{self.offers}{suffix}")

    def create_answer(self, offer: SessionDescription) -> SessionDescription:
        return SessionDescription(DescriptionKind.ANSWER, f"{self.name}-answer-to-{offer.sdp}")


def _offer(sdp: str) -> SessionDescription:
    return SessionDescription(DescriptionKind.OFFER, sdp)


def _answer(sdp: str) -> SessionDescription:
    return SessionDescription(DescriptionKind.ANSWER, sdp)


def _pair() -> tuple[NegotiationEngine, NegotiationEngine]:
    host = NegotiationEngine.for_pair("host", "viewer", initiator=True, factory=StubFactory("host"))
    viewer = NegotiationEngine.for_pair("viewer", "host", initiator=False, factory=StubFactory("viewer"))
    return host, viewer


def _sent(effects: list) -> SessionDescription:
    return next(effect.description for effect in effects if isinstance(effect, SendDescription))


def test_roles_follow_initiator() -> None:
    host, viewer = _pair()

    assert host.role is Role.IMPOLITE
    assert viewer.role is Role.POLITE
    assert host.phase is viewer.phase is Phase.IDLE


def test_impolite_start_sends_offer_once() -> None:
    host, _ = _pair()

    effects = host.start_negotiation()

    offer = _offer("host-offer-1")
    assert effects == [SetLocalDescription("viewer", offer), SendDescription("viewer", offer)]
    assert host.phase is Phase.OFFERING
    assert host.start_negotiation() == []


def test_polite_side_does_not_start() -> None:
    _, viewer = _pair()

    assert viewer.start_negotiation() == []
    assert viewer.phase is Phase.IDLE


def test_offer_in_idle_is_answered() -> None:
    _, viewer = _pair()

    effects = viewer.receive_remote_description(_offer("host-offer-1"))

    answer = _answer("viewer-answer-to-host-offer-1")
    assert effects == [
        SetRemoteDescription("host", _offer("host-offer-1")),
        SetLocalDescription("host", answer),
        SendDescription("host", answer),
    ]
    assert viewer.phase is Phase.STABLE


def test_answer_completes_offer() -> None:
    host, _ = _pair()
    host.start_negotiation()

    effects = host.receive_remote_description(_answer("viewer-answer"))

    assert effects == [SetRemoteDescription("viewer", _answer("viewer-answer"))]
    assert host.phase is Phase.STABLE


def test_answer_without_outstanding_offer_is_ignored() -> None:
    host, viewer = _pair()

    assert viewer.receive_remote_description(_answer("stray")) == []
    assert viewer.phase is Phase.IDLE
    assert viewer.state.remote_description_applied is False

    host.start_negotiation()
    host.receive_remote_description(_answer("first"))
    assert host.receive_remote_description(_answer("duplicate")) == []
    assert host.phase is Phase.STABLE


def test_impolite_side_ignores_colliding_offer() -> None:
    host, _ = _pair()
    host.start_negotiation()

    effects = host.receive_remote_description(_offer("viewer-offer-1"))

    assert effects == []
    assert host.phase is Phase.OFFERING


def test_polite_side_rolls_back_and_answers_colliding_offer() -> None:
    _, viewer = _pair()
    viewer.renegotiate()
    assert viewer.phase is Phase.OFFERING

    effects = viewer.receive_remote_description(_offer("host-offer-1"))

    answer = _answer("viewer-answer-to-host-offer-1")
    assert effects == [
        RollbackLocalDescription("host"),
        SetRemoteDescription("host", _offer("host-offer-1")),
        SetLocalDescription("host", answer),
        SendDescription("host", answer),
    ]
    assert viewer.phase is Phase.STABLE


@pytest.mark.parametrize("order", ["impolite_offer_first", "polite_offer_first"])
def test_glare_converges_on_impolite_offer(order: str) -> None:
    host, viewer = _pair()
    host_offer = _sent(host.start_negotiation())
    viewer_offer = _sent(viewer.renegotiate())

    viewer_effects: list = []
    host_effects: list = []
    if order == "impolite_offer_first":
        viewer_effects += viewer.receive_remote_description(host_offer)
        host_effects += host.receive_remote_description(viewer_offer)
    else:
        host_effects += host.receive_remote_description(viewer_offer)
        viewer_effects += viewer.receive_remote_description(host_offer)
    answer = _sent(viewer_effects)
    host_effects += host.receive_remote_description(answer)

    assert host.phase is viewer.phase is Phase.STABLE
    assert [e.description for e in viewer_effects if isinstance(e, SetRemoteDescription)] == [host_offer]
    assert [e.description for e in host_effects if isinstance(e, SetRemoteDescription)] == [answer]
    assert answer.sdp == "viewer-answer-to-host-offer-1"


def test_candidates_are_buffered_until_remote_description() -> None:
    _, viewer = _pair()

    assert viewer.receive_candidate({"candidate": "c1"}) == []
    assert viewer.receive_candidate({"candidate": "c2"}) == []
    assert viewer.state.pending_candidates == ({"candidate": "c1"}, {"candidate": "c2"})

    effects = viewer.receive_remote_description(_offer("host-offer-1"))

    answer = _answer("viewer-answer-to-host-offer-1")
    assert effects == [
        SetRemoteDescription("host", _offer("host-offer-1")),
        AddIceCandidate("host", {"candidate": "c1"}),
        AddIceCandidate("host", {"candidate": "c2"}),
        SetLocalDescription("host", answer),
        SendDescription("host", answer),
    ]
    assert viewer.state.pending_candidates == ()
    assert viewer.receive_candidate({"candidate": "c3"}) == [AddIceCandidate("host", {"candidate": "c3"})]


def test_impolite_side_buffers_candidates_until_answer() -> None:
    host, _ = _pair()
    host.start_negotiation()

    assert host.receive_candidate("c1") == []

    effects = host.receive_remote_description(_answer("viewer-answer"))

    assert effects == [SetRemoteDescription("viewer", _answer("viewer-answer")), AddIceCandidate("viewer", "c1")]


def test_local_candidates_are_sent() -> None:
    host, _ = _pair()

    assert host.add_local_candidate("c-local") == [SendCandidate("viewer", "c-local")]


def test_failed_connectivity_requests_restart_without_offering() -> None:
    host, _ = _pair()
    host.start_negotiation()
    host.receive_remote_description(_answer("viewer-answer"))

    effects = host.connectivity_changed("failed")

    assert effects == [RestartRequested("viewer")]
    assert host.phase is Phase.STABLE

    restart = host.restart()
    assert _sent(restart).sdp == "host-offer-2-restart"
    assert host.phase is Phase.OFFERING


def test_other_connectivity_states_are_ignored() -> None:
    host, _ = _pair()

    assert host.connectivity_changed("checking") == []
    assert host.connectivity_changed("connected") == []


def test_closed_connectivity_closes_engine() -> None:
    host, _ = _pair()

    assert host.connectivity_changed("closed") == [Closed("viewer")]
    assert host.closed is True


def test_close_is_idempotent_and_drops_later_events() -> None:
    _, viewer = _pair()
    viewer.receive_candidate("c1")

    assert viewer.close() == [Closed("host")]
    assert viewer.close() == []
    assert viewer.state.pending_candidates == ()
    assert viewer.receive_remote_description(_offer("host-offer-1")) == []
    assert viewer.receive_candidate("c2") == []
    assert viewer.renegotiate() == []
    assert viewer.connectivity_changed("failed") == []
    assert viewer.phase is Phase.CLOSED


def test_transition_does_not_mutate_input_state() -> None:
    state = NegotiationState(local_id="host", remote_id="viewer", role=Role.IMPOLITE)

    next_state, effects = transition(state, StartNegotiation(), StubFactory("host"))

    assert state.phase is Phase.IDLE
    assert next_state.phase is Phase.OFFERING
    assert len(effects) == 2


def test_unknown_event_is_rejected() -> None:
    state = NegotiationState(local_id="host", remote_id="viewer", role=Role.IMPOLITE)

    with pytest.raises(TypeError):
        transition(state, object(), StubFactory("host"))
