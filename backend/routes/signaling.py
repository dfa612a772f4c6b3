"""WebRTC 시그널링 WebSocket 라우터.

룸 릴레이를 위한 WebSocket 엔드포인트를 제공합니다.
연결을 수락하고 수신 프레임을 룸 액터에 넘기는 일만 하며,
멤버십 변경과 릴레이는 모두 SignalingRoom이 처리합니다.
"""

import logging
from typing import Optional, TYPE_CHECKING

from fastapi import APIRouter, WebSocket
from fastapi.responses import PlainTextResponse

from modules.signaling import signaling_config

if TYPE_CHECKING:
    from modules import RoomManager

logger = logging.getLogger(__name__)

router = APIRouter()

# 글로벌 매니저 참조 (app.py에서 설정됨)
_room_manager: Optional["RoomManager"] = None


def init_managers(room_manager: "RoomManager"):
    """매니저 인스턴스를 초기화합니다.

    app.py에서 호출하여 글로벌 매니저 참조를 설정합니다.

    Args:
        room_manager: RoomManager 인스턴스
    """
    global _room_manager
    _room_manager = room_manager
    logger.info("시그널링 라우터 매니저 초기화 완료")


def get_room_manager() -> Optional["RoomManager"]:
    """설정된 RoomManager를 반환합니다."""
    return _room_manager


async def _serve_participant(websocket: WebSocket, room_name: str):
    """WebSocket 하나를 룸 참가자로 등록하고 연결이 끊길 때까지 프레임을 전달합니다.

    Args:
        websocket: FastAPI WebSocket 연결 객체
        room_name: 참가할 룸 이름

    Note:
        - 텍스트가 아닌 프레임은 무시됨
        - 정상 종료와 오류 종료 모두 같은 정리 경로(room.disconnect)를 탐
    """
    if _room_manager is None:
        logger.error("매니저가 초기화되지 않음")
        await websocket.close(code=1011, reason="Server not ready")
        return

    await websocket.accept()

    room = _room_manager.get_or_create_room(room_name)
    participant = room.connect(websocket)
    peer_id = participant.peer_id
    reason = "close"

    logger.info(f"피어 {peer_id} 연결됨 (룸: '{room_name}')")

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break

            text = message.get("text")
            if text is None:
                continue
            room.receive(peer_id, text)

    except Exception as e:
        reason = "error"
        logger.error(f"피어 {peer_id}의 WebSocket 연결 중 오류: {e}")
    finally:
        room.disconnect(peer_id, reason=reason)
        logger.info(f"피어 {peer_id} 연결 끊김 ({reason})")


@router.websocket(signaling_config.PATH)
async def websocket_endpoint(websocket: WebSocket):
    """고정 룸(SIGNALING_ROOM_NAME)의 릴레이 엔드포인트.

    처리하는 메시지 타입:
        - ready: welcome 수신 및 다른 참가자에게 peer-joined 알림
        - signal: 지정된 피어에게 payload 릴레이
    """
    await _serve_participant(websocket, signaling_config.ROOM_NAME)


@router.websocket(signaling_config.PATH + "/{room_name}")
async def room_websocket_endpoint(websocket: WebSocket, room_name: str):
    """룸 이름을 경로로 지정하는 릴레이 엔드포인트."""
    await _serve_participant(websocket, room_name)


@router.get(signaling_config.PATH)
@router.get(signaling_config.PATH + "/{room_name}")
async def upgrade_required():
    """WebSocket 업그레이드 없이 릴레이 경로로 들어온 요청은 426으로 거절."""
    return PlainTextResponse("Expected WebSocket", status_code=426)
