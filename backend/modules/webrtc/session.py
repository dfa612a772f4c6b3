"""피어별 협상 세션 모듈.

원격 피어 하나와의 세션 디스크립션 교환 상태와, 원격 디스크립션이
적용되기 전에 도착한 연결 후보(ICE candidate)의 버퍼를 관리합니다.

Invariants:
    - pending_candidates에는 remote_description_set이 True가 되기 전에
      받은 후보만 들어감
    - 원격 디스크립션 적용 직후 도착 순서대로 한 번만 비워지고, 그 뒤로는 비어 있음
    - 어떤 후보도 원격 디스크립션보다 먼저 전송 계층에 적용되지 않음
"""

import logging
from collections import deque
from enum import Enum
from typing import Any, Deque, List, Optional

from aiortc import MediaStreamTrack, RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..signaling.protocol import CandidatePayload, SessionDescriptionPayload

logger = logging.getLogger(__name__)


class SessionRole(str, Enum):
    """피어 쌍에서 로컬 측이 맡는 역할."""
    OFFERER = "offerer"
    ANSWERER = "answerer"


def ice_candidate_from_payload(payload: CandidatePayload) -> Optional[RTCIceCandidate]:
    """브라우저 형식의 후보를 aiortc RTCIceCandidate로 변환합니다.

    Args:
        payload: {candidate, sdpMid, sdpMLineIndex}

    Returns:
        RTCIceCandidate. end-of-candidates(빈 문자열)이거나 해석할 수 없으면 None
    """
    candidate_str = payload.candidate
    if candidate_str.startswith("candidate:"):
        candidate_str = candidate_str[10:]
    if not candidate_str:
        return None

    try:
        candidate = candidate_from_sdp(candidate_str)
    except (AssertionError, ValueError, IndexError) as e:
        # aiortc asserts on a short candidate line
        logger.warning(f"[WebRTC] 해석할 수 없는 ICE 후보 무시: {e}")
        return None

    candidate.sdpMid = payload.sdp_mid
    candidate.sdpMLineIndex = payload.sdp_mline_index
    return candidate


def ice_candidate_to_payload(candidate: RTCIceCandidate) -> dict:
    """aiortc RTCIceCandidate를 브라우저 RTCIceCandidateInit 형식으로 변환합니다."""
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


class NegotiationSession:
    """원격 피어 하나와의 협상 세션.

    Attributes:
        peer_id (str): 원격 피어 ID
        role (SessionRole): 로컬 측 역할 (offerer/answerer)
        connection: 미디어 세션 핸들 (RTCPeerConnection)
        local_description_set (bool): 로컬 디스크립션 설정 여부
        remote_description_set (bool): 원격 디스크립션 적용 여부
        pending_candidates (Deque[CandidatePayload]): 적용 대기 중인 원격 후보
        remote_tracks (List[MediaStreamTrack]): 수신한 원격 미디어 트랙
        closed (bool): 정리 완료 여부
    """

    def __init__(self, peer_id: str, role: SessionRole, connection: Any):
        self.peer_id = peer_id
        self.role = role
        self.connection = connection
        self.local_description_set = False
        self.remote_description_set = False
        self.pending_candidates: Deque[CandidatePayload] = deque()
        self.remote_tracks: List[MediaStreamTrack] = []
        self.closed = False

    def __repr__(self) -> str:
        return (f"NegotiationSession(peer={self.peer_id[:8]}, role={self.role.value}, "
                f"local={self.local_description_set}, remote={self.remote_description_set}, "
                f"pending={len(self.pending_candidates)})")

    async def set_local_description(self, description: RTCSessionDescription) -> RTCSessionDescription:
        """로컬 디스크립션을 설정하고 실제 적용된 디스크립션을 반환합니다.

        aiortc는 setLocalDescription 중에 후보 수집을 마치고 SDP에 포함시키므로,
        반환값(connection.localDescription)을 전송해야 합니다.
        """
        await self.connection.setLocalDescription(description)
        self.local_description_set = True
        return self.connection.localDescription or description

    async def apply_remote_description(self, payload: SessionDescriptionPayload) -> None:
        """원격 디스크립션을 적용한 뒤 대기 중인 후보를 순서대로 적용합니다.

        Args:
            payload: offer 또는 answer
        """
        await self.connection.setRemoteDescription(
            RTCSessionDescription(sdp=payload.sdp, type=payload.type)
        )
        self.remote_description_set = True
        if self.pending_candidates:
            logger.info(f"[WebRTC] 피어 {self.peer_id[:8]} 대기 후보 {len(self.pending_candidates)}개 적용")
        await self._drain_candidates()

    async def add_remote_candidate(self, candidate: CandidatePayload) -> None:
        """원격 후보를 즉시 적용하거나, 원격 디스크립션 전이면 버퍼에 넣습니다."""
        if self.remote_description_set and not self.pending_candidates:
            await self._apply_candidate(candidate)
        else:
            # A drain in progress picks this up in arrival order
            self.pending_candidates.append(candidate)
            logger.debug(f"[WebRTC] 피어 {self.peer_id[:8]} 후보 버퍼링 ({len(self.pending_candidates)}개)")

    async def _drain_candidates(self) -> None:
        while self.pending_candidates and not self.closed:
            candidate = self.pending_candidates.popleft()
            await self._apply_candidate(candidate)

    async def _apply_candidate(self, payload: CandidatePayload) -> None:
        candidate = ice_candidate_from_payload(payload)
        if candidate is None:
            return
        await self.connection.addIceCandidate(candidate)

    async def close(self) -> None:
        """미디어 전송 계층을 닫고 버퍼를 비웁니다. 여러 번 호출해도 안전합니다."""
        if self.closed:
            return
        self.closed = True
        self.pending_candidates.clear()
        await self.connection.close()
