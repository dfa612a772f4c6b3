"""Health Check API 라우터.

서비스 상태 확인을 위한 엔드포인트들을 제공합니다.
"""

from fastapi import APIRouter

from .signaling import get_room_manager

router = APIRouter(prefix="/api/health", tags=["health"])


@router.get("")
async def health_check():
    """시그널링 서비스 상태를 확인합니다.

    Returns:
        dict: 전체 상태와 룸/참가자 수
            - status (str): "ok" 또는 "not_initialized"
            - rooms (int): 생성된 룸 수
            - participants (int): 전체 참가자 수
    """
    room_manager = get_room_manager()
    if room_manager is None:
        return {"status": "not_initialized", "rooms": 0, "participants": 0}

    rooms = room_manager.get_room_list()
    return {
        "status": "ok",
        "rooms": len(rooms),
        "participants": sum(room["peer_count"] for room in rooms),
    }
