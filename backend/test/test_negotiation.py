"""협상 엔진(NegotiationEngine, NegotiationSession)과 SignalingClient 테스트.

RTCPeerConnection 대신 FakeConnection을 주입하여 호출 순서만 검증합니다.
"""

import json

import pytest
from aiortc.mediastreams import AudioStreamTrack
from aiortc.sdp import candidate_from_sdp
from websockets.exceptions import ConnectionClosedOK

from modules.signaling.protocol import (
    CandidatePayload,
    PeerJoinedMessage,
    PeerLeftMessage,
    SignalMessage,
    WelcomeMessage,
)
import modules.webrtc.client as client_module
from modules.webrtc import (
    NegotiationEngine,
    SessionRole,
    SignalingClient,
    ice_candidate_from_payload,
)

from conftest import make_candidate


class Outbox:
    """엔진이 보낸 signal 기록."""

    def __init__(self):
        self.signals = []

    async def __call__(self, peer_id, payload):
        self.signals.append((peer_id, payload))

    def to(self, peer_id):
        return [payload for to, payload in self.signals if to == peer_id]


@pytest.fixture
def outbox():
    return Outbox()


@pytest.fixture
def engine(outbox, connection_factory):
    return NegotiationEngine(outbox, connection_factory=connection_factory)


def signal(sender, payload):
    return SignalMessage(sender=sender, payload=payload)


def offer_from(sender):
    return signal(sender, {"type": "offer", "sdp": f"offer-from-{sender}"})


def answer_from(sender):
    return signal(sender, {"type": "answer", "sdp": f"answer-from-{sender}"})


async def test_welcome_creates_offerer_session_per_peer(outbox, connection_factory, connections):
    track = AudioStreamTrack()
    engine = NegotiationEngine(outbox, local_tracks=lambda: [track], connection_factory=connection_factory)

    await engine.handle_message(WelcomeMessage(id="me", peers=["b", "c"]))

    assert engine.local_id == "me"
    assert set(engine.sessions) == {"b", "c"}
    assert all(s.role is SessionRole.OFFERER for s in engine.sessions.values())
    assert outbox.to("b") == [{"type": "offer", "sdp": "offer-sdp"}]
    assert outbox.to("c") == [{"type": "offer", "sdp": "offer-sdp"}]
    for connection in connections:
        assert connection.names() == ["addTrack", "createOffer", "setLocalDescription"]
        assert connection.calls[0][1] is track


async def test_empty_welcome_and_peer_joined_create_no_session(engine, outbox):
    await engine.handle_message(WelcomeMessage(id="me", peers=[]))
    await engine.handle_message(PeerJoinedMessage(peer_id="b"))

    assert engine.sessions == {}
    assert outbox.signals == []


async def test_peer_joined_before_welcome_is_left_to_offer(engine, outbox, connections):
    # b became ready while we were still connecting, so b already offers to us
    await engine.handle_message(PeerJoinedMessage(peer_id="b"))
    await engine.handle_message(PeerJoinedMessage(peer_id="gone"))
    await engine.handle_message(PeerLeftMessage(peer_id="gone"))
    await engine.handle_message(WelcomeMessage(id="me", peers=["b", "c"]))

    assert set(engine.sessions) == {"c"}
    assert outbox.to("b") == []

    await engine.handle_message(offer_from("b"))

    assert engine.get_session("b").role is SessionRole.ANSWERER
    assert outbox.to("b") == [{"type": "answer", "sdp": "answer-sdp"}]


async def test_offer_arriving_before_welcome_is_answered(engine, outbox):
    await engine.handle_message(PeerJoinedMessage(peer_id="b"))
    await engine.handle_message(offer_from("b"))
    await engine.handle_message(WelcomeMessage(id="me", peers=["b"]))

    assert engine.get_session("b").role is SessionRole.ANSWERER
    assert [p["type"] for p in outbox.to("b")] == ["answer"]


async def test_offer_creates_answerer_session_in_order(outbox, connection_factory, connections):
    track = AudioStreamTrack()
    engine = NegotiationEngine(outbox, local_tracks=lambda: [track], connection_factory=connection_factory)
    await engine.handle_message(WelcomeMessage(id="me", peers=[]))

    await engine.handle_message(offer_from("b"))

    session = engine.get_session("b")
    assert session.role is SessionRole.ANSWERER
    assert session.remote_description_set and session.local_description_set
    assert connections[0].names() == ["setRemoteDescription", "addTrack", "createAnswer", "setLocalDescription"]
    assert connections[0].calls[0][1].sdp == "offer-from-b"
    assert outbox.to("b") == [{"type": "answer", "sdp": "answer-sdp"}]


async def test_candidates_before_answer_are_buffered_then_drained_in_order(engine, connections):
    await engine.handle_message(WelcomeMessage(id="me", peers=["b"]))
    for index in (1, 2, 3):
        await engine.handle_message(signal("b", make_candidate(index)))

    session = engine.get_session("b")
    assert len(session.pending_candidates) == 3
    assert "addIceCandidate" not in connections[0].names()

    await engine.handle_message(answer_from("b"))

    assert connections[0].applied_candidate_ips() == ["192.168.1.1", "192.168.1.2", "192.168.1.3"]
    names = connections[0].names()
    assert names.index("setRemoteDescription") < names.index("addIceCandidate")
    assert len(session.pending_candidates) == 0


async def test_candidate_after_remote_description_is_applied_immediately(engine, connections):
    await engine.handle_message(offer_from("b"))
    await engine.handle_message(signal("b", make_candidate(7)))

    assert connections[0].applied_candidate_ips() == ["192.168.1.7"]
    assert len(engine.get_session("b").pending_candidates) == 0


async def test_candidate_for_unknown_peer_is_dropped(engine, connections):
    await engine.handle_message(signal("stranger", make_candidate(1)))

    assert engine.sessions == {}
    assert connections == []


async def test_unmatched_and_duplicate_answers_are_ignored(engine, connections):
    # No session at all
    await engine.handle_message(answer_from("b"))
    assert engine.sessions == {}

    # Answerer session does not accept an answer
    await engine.handle_message(offer_from("c"))
    await engine.handle_message(answer_from("c"))
    assert connections[0].names().count("setRemoteDescription") == 1

    # Second answer for an offerer session
    await engine.handle_message(WelcomeMessage(id="me", peers=["d"]))
    await engine.handle_message(answer_from("d"))
    await engine.handle_message(answer_from("d"))
    assert connections[1].names().count("setRemoteDescription") == 1


async def test_duplicate_offer_is_ignored(engine, outbox, connections):
    await engine.handle_message(offer_from("b"))
    await engine.handle_message(offer_from("b"))

    assert len(connections) == 1
    assert len(outbox.to("b")) == 1


async def test_unparseable_signal_payload_is_ignored(engine, connections):
    await engine.handle_message(signal("b", {"type": "rollback"}))
    await engine.handle_message(signal("b", "hello"))

    assert engine.sessions == {}
    assert connections == []


async def test_peer_left_tears_down_session(outbox, connection_factory, connections):
    closed = []

    async def on_session_closed(peer_id):
        closed.append(peer_id)

    engine = NegotiationEngine(outbox, connection_factory=connection_factory, on_session_closed=on_session_closed)
    await engine.handle_message(WelcomeMessage(id="me", peers=["b"]))
    await engine.handle_message(signal("b", make_candidate(1)))
    session = engine.get_session("b")

    await engine.handle_message(PeerLeftMessage(peer_id="b"))
    await engine.handle_message(PeerLeftMessage(peer_id="b"))
    await engine.handle_message(PeerLeftMessage(peer_id="never-seen"))

    assert engine.get_session("b") is None
    assert session.closed
    assert len(session.pending_candidates) == 0
    assert connections[0].names().count("close") == 1
    assert closed == ["b"]


async def test_failed_connection_state_tears_down_session(engine, connections):
    await engine.handle_message(WelcomeMessage(id="me", peers=["b"]))
    connection = connections[0]

    connection.connectionState = "connected"
    await connection.emit("connectionstatechange")
    assert engine.get_session("b") is not None

    connection.connectionState = "failed"
    await connection.emit("connectionstatechange")
    assert engine.get_session("b") is None
    assert "close" in connection.names()


async def test_stale_connection_event_does_not_close_newer_session(engine, connections):
    await engine.handle_message(WelcomeMessage(id="me", peers=["b"]))
    stale = connections[0]
    await engine.handle_message(PeerLeftMessage(peer_id="b"))
    await engine.handle_message(offer_from("b"))

    stale.connectionState = "failed"
    await stale.emit("connectionstatechange")

    assert engine.get_session("b") is not None
    assert engine.get_session("b").connection is connections[1]


async def test_remote_description_failure_abandons_only_that_session(engine, connections):
    await engine.handle_message(WelcomeMessage(id="me", peers=["b", "c"]))
    connections[0].fail_on.add("setRemoteDescription")

    await engine.handle_message(answer_from("b"))
    await engine.handle_message(answer_from("c"))

    assert engine.get_session("b") is None
    assert engine.get_session("c").remote_description_set


async def test_offer_failure_closes_session(engine, outbox, connection_factory, connections):
    def failing_factory():
        connection = connection_factory()
        connection.fail_on.add("createOffer")
        return connection

    engine.connection_factory = failing_factory
    await engine.handle_message(WelcomeMessage(id="me", peers=["b"]))

    assert engine.sessions == {}
    assert outbox.signals == []
    assert "close" in connections[0].names()


async def test_local_candidate_is_sent_immediately(engine, outbox, connections):
    await engine.handle_message(WelcomeMessage(id="me", peers=["b"]))
    candidate = candidate_from_sdp("1 1 udp 2130706431 10.0.0.5 40000 typ host")
    candidate.sdpMid = "0"
    candidate.sdpMLineIndex = 0

    # Before any answer
    await connections[0].emit("icecandidate", candidate)
    await connections[0].emit("icecandidate", None)

    sent = outbox.to("b")[-1]
    assert sent["candidate"].startswith("candidate:1 1 udp 2130706431 10.0.0.5 40000 typ host")
    assert sent["sdpMid"] == "0"
    assert sent["sdpMLineIndex"] == 0
    assert len(outbox.to("b")) == 2


async def test_remote_track_is_reported(outbox, connection_factory, connections):
    received = []

    async def on_remote_track(peer_id, track):
        received.append((peer_id, track))

    engine = NegotiationEngine(outbox, connection_factory=connection_factory, on_remote_track=on_remote_track)
    await engine.handle_message(offer_from("b"))
    track = AudioStreamTrack()

    await connections[0].emit("track", track)

    assert received == [("b", track)]
    assert engine.get_session("b").remote_tracks == [track]


async def test_roles_are_complementary_between_two_engines(connection_factory):
    engines = {}

    def relay_from(sender):
        async def send(peer_id, payload):
            await engines[peer_id].handle_message(SignalMessage(sender=sender, payload=payload))
        return send

    engines["a"] = NegotiationEngine(relay_from("a"), connection_factory=connection_factory)
    engines["b"] = NegotiationEngine(relay_from("b"), connection_factory=connection_factory)

    await engines["a"].handle_message(WelcomeMessage(id="a", peers=[]))
    await engines["b"].handle_message(WelcomeMessage(id="b", peers=["a"]))
    await engines["a"].handle_message(PeerJoinedMessage(peer_id="b"))

    b_side = engines["b"].get_session("a")
    a_side = engines["a"].get_session("b")
    assert b_side.role is SessionRole.OFFERER
    assert a_side.role is SessionRole.ANSWERER
    assert a_side.remote_description_set and a_side.local_description_set
    assert b_side.remote_description_set and b_side.local_description_set


def test_candidate_payload_conversion():
    assert ice_candidate_from_payload(CandidatePayload(candidate="")) is None
    assert ice_candidate_from_payload(CandidatePayload(candidate="candidate:garbage")) is None

    candidate = ice_candidate_from_payload(CandidatePayload(**make_candidate(4)))
    assert candidate.ip == "192.168.1.4"
    assert candidate.port == 50004
    assert candidate.sdpMid == "0"


class FakeWebSocket:
    def __init__(self, frames):
        self.frames = frames
        self.sent = []

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame

    async def send(self, data):
        self.sent.append(json.loads(data))


async def test_signaling_client_feeds_engine_in_order(connection_factory, connections):
    client = SignalingClient("ws://test/websocket", connection_factory=connection_factory)
    ws = FakeWebSocket([
        b"\x00binary",
        "not json",
        json.dumps({"type": "welcome", "id": "me", "peers": ["b"]}),
        json.dumps({"type": "signal", "from": "b", "payload": make_candidate(2)}),
        json.dumps({"type": "signal", "from": "b", "payload": {"type": "answer", "sdp": "x"}}),
    ])
    client._ws = ws

    await client.receive_loop(ws)

    assert client.local_id == "me"
    assert ws.sent == [{"type": "signal", "to": "b", "payload": {"type": "offer", "sdp": "offer-sdp"}}]
    assert connections[0].applied_candidate_ips() == ["192.168.1.2"]


async def test_signaling_client_send_without_connection_raises():
    client = SignalingClient("ws://test/websocket")

    with pytest.raises(ConnectionError):
        await client._send_signal("b", {"candidate": ""})


class FakeRelayConnection(FakeWebSocket):
    """websockets.connect() 대역. 프레임을 모두 보낸 뒤 연결 종료를 알립니다."""

    def __init__(self, frames):
        super().__init__(frames)
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.closed = True

    async def _iterate(self):
        for frame in self.frames:
            yield frame
        raise ConnectionClosedOK(None, None)

    async def close(self):
        self.closed = True


async def test_signaling_client_run_sends_ready_and_cleans_up(monkeypatch, connection_factory, connections):
    closed = []

    async def on_session_closed(peer_id):
        closed.append(peer_id)

    relay = FakeRelayConnection([
        json.dumps({"type": "welcome", "id": "me", "peers": ["b", "c"]}),
    ])
    opened = []

    def fake_connect(url, **kwargs):
        opened.append(url)
        return relay

    monkeypatch.setattr(client_module.websockets, "connect", fake_connect)
    client = SignalingClient("ws://test/websocket/room", connection_factory=connection_factory,
                             on_session_closed=on_session_closed)

    await client.run()

    assert opened == ["ws://test/websocket/room"]
    assert relay.sent[0] == {"type": "ready"}
    assert [m["to"] for m in relay.sent[1:]] == ["b", "c"]
    assert client.engine.sessions == {}
    assert sorted(closed) == ["b", "c"]
    assert all("close" in connection.names() for connection in connections)
    assert client._ws is None
    assert relay.closed
