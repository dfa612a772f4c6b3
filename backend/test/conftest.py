"""테스트 공용 가짜 객체.

FakeTransport: 룸 참가자의 WebSocket 대역 (전송 내용 기록, 실패 주입)
FakeConnection: RTCPeerConnection 대역 (호출 순서 기록, 이벤트 핸들러 보관)
"""

import asyncio
import json

import pytest
from aiortc import RTCSessionDescription


class FakeTransport:
    def __init__(self, fail: bool = False):
        self.raw = []
        self.closed = False
        self.fail = fail

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise ConnectionError("broken pipe")
        self.raw.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed = True

    @property
    def sent(self):
        return [json.loads(text) for text in self.raw]

    def of_type(self, message_type: str):
        return [m for m in self.sent if m["type"] == message_type]


class FakeConnection:
    def __init__(self):
        self.calls = []
        self.handlers = {}
        self.localDescription = None
        self.remoteDescription = None
        self.connectionState = "new"
        self.fail_on = set()

    def on(self, event):
        def decorator(fn):
            self.handlers[event] = fn
            return fn
        return decorator

    async def emit(self, event, *args):
        await self.handlers[event](*args)

    def _record(self, name, arg=None):
        self.calls.append((name, arg))
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")

    def addTrack(self, track):
        self._record("addTrack", track)

    async def createOffer(self):
        self._record("createOffer")
        return RTCSessionDescription(sdp="offer-sdp", type="offer")

    async def createAnswer(self):
        self._record("createAnswer")
        return RTCSessionDescription(sdp="answer-sdp", type="answer")

    async def setLocalDescription(self, description):
        self._record("setLocalDescription", description)
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self._record("setRemoteDescription", description)
        self.remoteDescription = description

    async def addIceCandidate(self, candidate):
        self._record("addIceCandidate", candidate)

    async def close(self):
        self._record("close")
        self.connectionState = "closed"

    def names(self):
        return [name for name, _ in self.calls]

    def applied_candidate_ips(self):
        return [arg.ip for name, arg in self.calls if name == "addIceCandidate"]


def make_candidate(index: int) -> dict:
    """브라우저 RTCIceCandidateInit 형식의 host 후보."""
    return {
        "candidate": f"candidate:{index} 1 udp 2130706431 192.168.1.{index} {50000 + index} typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


async def settle(room, rounds: int = 3) -> None:
    """룸 이벤트와 writer 태스크가 모두 처리될 때까지 진행시킵니다."""
    for _ in range(rounds):
        await room.flush()
        for _ in range(5):
            await asyncio.sleep(0)


@pytest.fixture
def connections():
    return []


@pytest.fixture
def connection_factory(connections):
    def factory():
        connection = FakeConnection()
        connections.append(connection)
        return connection
    return factory
