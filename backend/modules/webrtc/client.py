"""시그널링 클라이언트 모듈.

시그널링 서버(룸 릴레이)에 WebSocket으로 접속하여, 수신한 메시지를
NegotiationEngine에 순서대로 전달하고 엔진이 만든 signal을 릴레이로 보냅니다.

Flow:
    1. WebSocket 연결
    2. 연결 직후 ready 전송
    3. welcome / peer-joined / peer-left / signal 수신 → 엔진에 전달
    4. 연결 종료 시 모든 협상 세션 정리
"""

import logging
from typing import Any, Awaitable, Callable, List, Optional

import websockets

from ..signaling.protocol import ReadyMessage, SignalRequest, decode_server_message
from .config import connection_config
from .negotiation import NegotiationEngine

logger = logging.getLogger(__name__)


class SignalingClient:
    """룸 릴레이에 접속하는 참가자 한 명.

    Attributes:
        url (str): 릴레이 WebSocket 주소 (예: ws://localhost:8000/websocket)
        engine (NegotiationEngine): 피어별 협상 엔진

    Examples:
        >>> client = SignalingClient("ws://localhost:8000/websocket",
        ...                          local_tracks=lambda: [player.audio])
        >>> await client.run()  # 연결이 끊길 때까지 실행
    """

    def __init__(
        self,
        url: str = connection_config.SIGNALING_URL,
        local_tracks: Optional[Callable[[], List[Any]]] = None,
        on_remote_track: Optional[Callable[[str, Any], Awaitable[None]]] = None,
        on_session_closed: Optional[Callable[[str], Awaitable[None]]] = None,
        connection_factory: Optional[Callable[[], Any]] = None,
    ):
        self.url = url
        self.engine = NegotiationEngine(
            self._send_signal,
            local_tracks=local_tracks,
            connection_factory=connection_factory,
            on_remote_track=on_remote_track,
            on_session_closed=on_session_closed,
        )
        self._ws = None

    @property
    def local_id(self) -> Optional[str]:
        return self.engine.local_id

    async def run(self) -> None:
        """릴레이에 접속해 연결이 끊길 때까지 메시지를 처리합니다."""
        logger.info(f"[Signaling] 릴레이 접속 중: {self.url}")
        try:
            async with websockets.connect(self.url, ping_interval=20, ping_timeout=10) as ws:
                self._ws = ws
                logger.info("[Signaling] 릴레이 연결됨, ready 전송")
                await ws.send(ReadyMessage().model_dump_json())
                await self.receive_loop(ws)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"[Signaling] 릴레이 연결 종료: {e}")
        finally:
            self._ws = None
            await self.engine.close_all()

    async def receive_loop(self, ws) -> None:
        """수신 프레임을 디코딩해 전송 순서대로 엔진에 전달합니다."""
        async for raw in ws:
            if not isinstance(raw, str):
                continue
            message = decode_server_message(raw)
            if message is None:
                logger.debug("[Signaling] 잘못된 릴레이 메시지 무시")
                continue
            await self.engine.handle_message(message)

    async def close(self) -> None:
        """연결을 닫습니다. run()은 세션을 정리한 뒤 반환됩니다."""
        if self._ws is not None:
            await self._ws.close()

    async def _send_signal(self, peer_id: str, payload: dict) -> None:
        if self._ws is None:
            raise ConnectionError("릴레이에 연결되어 있지 않음")
        await self._ws.send(SignalRequest(to=peer_id, payload=payload).model_dump_json())
