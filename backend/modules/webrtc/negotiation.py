"""WebRTC 협상 엔진 모듈.

로컬 참가자 한 명이 관찰하는 룸 이벤트(welcome, peer-joined, peer-left,
signal)를 받아 원격 피어마다 직접 연결된 미디어 세션을 만들어 냅니다.

역할 결정 규칙 (glare 방지):
    - welcome의 peers 목록으로 알게 된 피어 → 로컬이 offerer (먼저 offer 전송)
    - offer signal로 처음 알게 된 피어 → 로컬이 answerer
    - peer-joined만으로는 세션을 만들지 않음 (새 참가자가 welcome을 받고 offer를 보냄)
    - welcome보다 먼저 peer-joined로 알게 된 피어 → 로컬이 answerer
      (그 피어의 welcome에 로컬이 이미 포함되어 있으므로 그쪽이 offer를 보냄)

WebRTC Flow:
    Offerer:
        1. 세션 생성 → 로컬 트랙 추가
        2. offer 생성 → local description 설정
        3. offer를 signal로 전송
        4. answer 수신 → remote description 적용 → 대기 후보 적용
    Answerer:
        1. offer 수신 → 세션 생성
        2. remote description 적용 → 대기 후보 적용
        3. 로컬 트랙 추가 → answer 생성 → local description 설정
        4. answer를 signal로 전송

Note:
    - 로컬 트랙은 세션 생성 시점에만 추가됨 (재협상 미지원)
    - 세션이 없는 피어의 후보는 버려짐 (엔진 수준 버퍼 없음)
    - 협상 오류는 해당 세션만 정리하고 엔진 전체에는 영향 없음

Examples:
    >>> async def send_signal(peer_id, payload):
    ...     await ws.send(SignalRequest(to=peer_id, payload=payload).model_dump_json())
    >>> engine = NegotiationEngine(send_signal, local_tracks=lambda: [audio_track])
    >>> await engine.handle_message(decode_server_message(raw))
    >>> await engine.close_all()

See Also:
    session.py: 피어별 협상 세션과 후보 버퍼
    client.py: 시그널링 서버 연결
    aiortc Documentation: https://aiortc.readthedocs.io/
"""
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from aiortc import MediaStreamTrack, RTCConfiguration, RTCIceServer, RTCPeerConnection

from ..signaling.protocol import (
    CandidatePayload,
    PeerJoinedMessage,
    PeerLeftMessage,
    SessionDescriptionPayload,
    SignalMessage,
    WelcomeMessage,
    parse_signal_payload,
)
from .config import connection_config, ice_config
from .session import NegotiationSession, SessionRole, ice_candidate_to_payload

logger = logging.getLogger(__name__)

SendSignal = Callable[[str, dict], Awaitable[None]]


def create_peer_connection() -> RTCPeerConnection:
    """ICE 서버 설정(STUN/TURN)이 적용된 RTCPeerConnection을 생성합니다."""
    ice_servers = []

    if ice_config.STUN_SERVER_URL:
        ice_servers.append(RTCIceServer(urls=[ice_config.STUN_SERVER_URL]))

    # Google STUN 서버 (백업용)
    for stun_url in ice_config.DEFAULT_STUN_SERVERS:
        ice_servers.append(RTCIceServer(urls=[stun_url]))

    if ice_config.has_turn_server:
        ice_servers.append(RTCIceServer(
            urls=[ice_config.TURN_SERVER_URL],
            username=ice_config.TURN_USERNAME,
            credential=ice_config.TURN_CREDENTIAL
        ))

    return RTCPeerConnection(configuration=RTCConfiguration(iceServers=ice_servers))


class NegotiationEngine:
    """로컬 참가자 한 명을 위한 피어별 협상 상태 머신.

    협상 단계 사이의 await 동안 다른 세션의 이벤트가 끼어들 수 있으므로,
    각 await 이후에는 세션이 아직 유효한지(_is_current) 확인합니다.

    Attributes:
        send_signal (SendSignal): (peer_id, payload)를 릴레이로 보내는 코루틴 함수
        local_tracks (Callable[[], List[MediaStreamTrack]]): 현재 로컬 트랙 목록
        connection_factory (Callable[[], Any]): 미디어 세션 핸들 생성 함수
        local_id (Optional[str]): welcome으로 받은 자신의 ID
        sessions (Dict[str, NegotiationSession]): 피어 ID → 세션
        on_remote_track_callback: (peer_id, track) 원격 트랙 수신 시 호출
        on_session_closed_callback: (peer_id) 세션 정리 시 호출

    Thread Safety:
        - 단일 이벤트 루프 전용 (sessions는 엔진만 수정)
    """

    def __init__(
        self,
        send_signal: SendSignal,
        local_tracks: Optional[Callable[[], List[MediaStreamTrack]]] = None,
        connection_factory: Optional[Callable[[], Any]] = None,
        on_remote_track: Optional[Callable[[str, MediaStreamTrack], Awaitable[None]]] = None,
        on_session_closed: Optional[Callable[[str], Awaitable[None]]] = None,
    ):
        self.send_signal = send_signal
        self.local_tracks = local_tracks or (lambda: [])
        self.connection_factory = connection_factory or create_peer_connection
        self.on_remote_track_callback = on_remote_track
        self.on_session_closed_callback = on_session_closed

        self.local_id: Optional[str] = None

        # peer_id -> NegotiationSession
        self.sessions: Dict[str, NegotiationSession] = {}

        # Peers announced by peer-joined before our welcome; they send the offer
        self._joined_before_welcome: Set[str] = set()

    def get_session(self, peer_id: str) -> Optional[NegotiationSession]:
        return self.sessions.get(peer_id)

    def _is_current(self, session: NegotiationSession) -> bool:
        return self.sessions.get(session.peer_id) is session

    # ------------------------------------------------------------
    # 릴레이 메시지 처리
    # ------------------------------------------------------------

    async def handle_message(self, message) -> None:
        """릴레이에서 받은 메시지 하나를 처리합니다.

        Args:
            message: decode_server_message()의 결과
                (WelcomeMessage, PeerJoinedMessage, PeerLeftMessage, SignalMessage)
        """
        if isinstance(message, WelcomeMessage):
            await self._on_welcome(message)
        elif isinstance(message, PeerJoinedMessage):
            # The newcomer sees us in its welcome and sends the offer
            if self.local_id is None:
                self._joined_before_welcome.add(message.peer_id)
            logger.info(f"[WebRTC] 피어 {message.peer_id[:8]} 입장, offer 대기")
        elif isinstance(message, PeerLeftMessage):
            self._joined_before_welcome.discard(message.peer_id)
            await self.close_session(message.peer_id, reason="peer-left")
        elif isinstance(message, SignalMessage):
            await self._on_signal(message.sender, message.payload)

    async def _on_welcome(self, message: WelcomeMessage) -> None:
        self.local_id = message.id
        logger.info(f"[WebRTC] welcome 수신: id={message.id[:8]}, 기존 피어 {len(message.peers)}명")

        # A peer that joined while we were still connecting already
        # listed us in its own welcome, so it is the offerer
        answer_only = self._joined_before_welcome
        self._joined_before_welcome = set()

        for peer_id in message.peers:
            if peer_id == self.local_id or peer_id in self.sessions or peer_id in answer_only:
                continue
            await self._start_offer(peer_id)

    async def _on_signal(self, sender: str, payload: Any) -> None:
        parsed = parse_signal_payload(payload)
        if parsed is None:
            logger.debug(f"[WebRTC] 피어 {sender[:8]}의 해석할 수 없는 signal 무시")
            return

        if isinstance(parsed, SessionDescriptionPayload):
            if parsed.type == "offer":
                await self._accept_offer(sender, parsed)
            else:
                await self._complete_offer(sender, parsed)
        elif isinstance(parsed, CandidatePayload):
            await self._on_remote_candidate(sender, parsed)

    # ------------------------------------------------------------
    # 세션 생성
    # ------------------------------------------------------------

    def _create_session(self, peer_id: str, role: SessionRole) -> NegotiationSession:
        session = NegotiationSession(peer_id, role, self.connection_factory())
        self.sessions[peer_id] = session
        self._register_handlers(session)
        logger.info(f"[WebRTC] 세션 생성: peer={peer_id[:8]}, role={role.value}")
        return session

    def _register_handlers(self, session: NegotiationSession) -> None:
        """연결 이벤트 핸들러(icecandidate, connectionstatechange, track)를 등록합니다.

        Note:
            aiortc는 icecandidate를 발생시키지 않습니다. setLocalDescription 중에
            후보 수집을 마치고 SDP에 포함시키므로, trickle 핸들러는 후보를 따로
            보내는 연결 구현(테스트의 가짜 연결 등)에서만 호출됩니다.
        """
        pc = session.connection
        peer_id = session.peer_id

        @pc.on("icecandidate")
        async def on_ice_candidate(candidate):
            """로컬 후보는 세션 상태와 관계없이 즉시 전송."""
            if candidate is None or not self._is_current(session):
                return
            try:
                await self.send_signal(peer_id, ice_candidate_to_payload(candidate))
            except Exception as e:
                logger.warning(f"[WebRTC] 피어 {peer_id[:8]}에 ICE 후보 전송 실패: {e}")

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            logger.info(f"[WebRTC] 피어 {peer_id[:8]} 연결 상태: {pc.connectionState}")
            if pc.connectionState in connection_config.TEARDOWN_STATES:
                await self.close_session(peer_id, reason=f"transport {pc.connectionState}", expected=session)

        @pc.on("track")
        async def on_track(track: MediaStreamTrack):
            logger.info(f"[WebRTC] 피어 {peer_id[:8]} {track.kind} 트랙 수신")
            session.remote_tracks.append(track)

            @track.on("ended")
            async def on_ended():
                logger.info(f"[WebRTC] 피어 {peer_id[:8]} {track.kind} 트랙 종료")

            if self.on_remote_track_callback and self._is_current(session):
                await self.on_remote_track_callback(peer_id, track)

    def _attach_local_tracks(self, session: NegotiationSession) -> None:
        tracks = self.local_tracks()
        for track in tracks:
            session.connection.addTrack(track)
        logger.debug(f"[WebRTC] 피어 {session.peer_id[:8]}에 로컬 트랙 {len(tracks)}개 추가")

    async def _send_description(self, session: NegotiationSession, description) -> None:
        await self.send_signal(session.peer_id, {"type": description.type, "sdp": description.sdp})
        logger.info(f"[WebRTC] 피어 {session.peer_id[:8]}에 {description.type} 전송")

    # ------------------------------------------------------------
    # Offerer
    # ------------------------------------------------------------

    async def _start_offer(self, peer_id: str) -> None:
        session = self._create_session(peer_id, SessionRole.OFFERER)
        try:
            self._attach_local_tracks(session)

            offer = await session.connection.createOffer()
            if not self._is_current(session):
                return

            description = await session.set_local_description(offer)
            if not self._is_current(session):
                return

            await self._send_description(session, description)
        except Exception as e:
            logger.error(f"[WebRTC] 피어 {peer_id[:8]} offer 생성 실패: {e}")
            await self.close_session(peer_id, reason="offer failed", expected=session)

    async def _complete_offer(self, peer_id: str, answer: SessionDescriptionPayload) -> None:
        session = self.sessions.get(peer_id)
        if session is None or session.role is not SessionRole.OFFERER or session.remote_description_set:
            logger.debug(f"[WebRTC] 피어 {peer_id[:8]}의 answer에 맞는 offerer 세션 없음, 무시")
            return

        try:
            await session.apply_remote_description(answer)
            logger.info(f"[WebRTC] 피어 {peer_id[:8]} answer 적용 완료")
        except Exception as e:
            logger.error(f"[WebRTC] 피어 {peer_id[:8]} answer 적용 실패: {e}")
            await self.close_session(peer_id, reason="answer failed", expected=session)

    # ------------------------------------------------------------
    # Answerer
    # ------------------------------------------------------------

    async def _accept_offer(self, peer_id: str, offer: SessionDescriptionPayload) -> None:
        if peer_id in self.sessions:
            logger.warning(f"[WebRTC] 피어 {peer_id[:8]} 세션이 이미 있음, offer 무시 (재협상 미지원)")
            return

        session = self._create_session(peer_id, SessionRole.ANSWERER)
        try:
            await session.apply_remote_description(offer)
            if not self._is_current(session):
                return

            self._attach_local_tracks(session)

            answer = await session.connection.createAnswer()
            if not self._is_current(session):
                return

            description = await session.set_local_description(answer)
            if not self._is_current(session):
                return

            await self._send_description(session, description)
        except Exception as e:
            logger.error(f"[WebRTC] 피어 {peer_id[:8]} offer 처리 실패: {e}")
            await self.close_session(peer_id, reason="offer handling failed", expected=session)

    # ------------------------------------------------------------
    # 연결 후보
    # ------------------------------------------------------------

    async def _on_remote_candidate(self, peer_id: str, candidate: CandidatePayload) -> None:
        session = self.sessions.get(peer_id)
        if session is None:
            # TODO: decide whether to buffer per peer id until the offer arrives
            logger.debug(f"[WebRTC] 세션 없는 피어 {peer_id[:8]}의 ICE 후보 무시")
            return

        try:
            await session.add_remote_candidate(candidate)
        except Exception as e:
            logger.error(f"[WebRTC] 피어 {peer_id[:8]} ICE 후보 적용 실패: {e}")
            await self.close_session(peer_id, reason="candidate failed", expected=session)

    # ------------------------------------------------------------
    # 정리
    # ------------------------------------------------------------

    async def close_session(
        self,
        peer_id: str,
        reason: str = "closed",
        expected: Optional[NegotiationSession] = None,
    ) -> bool:
        """세션을 정리합니다.

        미디어 전송 계층을 닫고, 버퍼된 후보를 버리고, 세션 맵에서 제거합니다.
        협상이 끝나지 않은 세션이나 이미 정리된 피어에 대해 호출해도 안전합니다.

        Args:
            peer_id (str): 원격 피어 ID
            reason (str): 로그용 정리 사유
            expected (Optional[NegotiationSession]): 지정 시 현재 세션이 이 객체일 때만 정리

        Returns:
            bool: 실제로 세션을 정리했으면 True
        """
        session = self.sessions.get(peer_id)
        if session is None or (expected is not None and session is not expected):
            return False

        del self.sessions[peer_id]
        try:
            await session.close()
        except Exception as e:
            logger.error(f"[WebRTC] 피어 {peer_id[:8]} 연결 종료 중 오류: {e}")

        logger.info(f"[WebRTC] 피어 {peer_id[:8]} 세션 정리 ({reason})")

        if self.on_session_closed_callback:
            await self.on_session_closed_callback(peer_id)
        return True

    async def close_all(self) -> None:
        """모든 세션을 정리합니다 (클라이언트 종료 시)."""
        for peer_id in list(self.sessions):
            await self.close_session(peer_id, reason="shutdown")
