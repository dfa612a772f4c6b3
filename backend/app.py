"""FastAPI WebRTC Signaling Server with Room Support.

이 모듈은 룸 기반 WebRTC 비디오/오디오 통화를 위한 시그널링 서버를
제공합니다. FastAPI와 WebSocket을 사용하여 참가자 간 연결 설정 메시지를
중계하며, 미디어는 참가자끼리 직접 주고받습니다 (서버는 미디어를 보지 않음).

주요 기능:
    - 룸 기반 참가자 관리 (입장/ready/퇴장)
    - welcome / peer-joined / peer-left 알림
    - offer/answer, ICE candidate를 담은 signal 릴레이
    - ICE 서버 목록 제공 (TURN credentials는 서버 환경변수에서만 관리)

Architecture:
    - Mesh 패턴: 참가자 쌍마다 직접 RTCPeerConnection
    - RoomManager: 룸별 액터(SignalingRoom)로 멤버십과 릴레이를 직렬화
    - WebSocket: 실시간 시그널링 메시지 전송
"""
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

# Load 환경변수 from config/.env (모듈 설정보다 먼저)
load_dotenv(Path(__file__).parent / "config" / ".env")

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from modules import RoomManager, ice_config, signaling_config
from modules.logging_config import setup_logging
from routes import health_router, signaling_router, init_signaling_managers

ENV = os.getenv("ENV", "development")

setup_logging()
logger = logging.getLogger(__name__)
logger.info(f"환경: {ENV}")

# 개발 환경에서는 로컬 네트워크 origin 허용
CORS_ALLOW_ORIGIN_REGEX = os.getenv(
    "CORS_ALLOW_ORIGIN_REGEX",
    r"^http://(localhost|127\.0\.0\.1|192\.168\.\d{1,3}\.\d{1,3}|172\.\d{1,3}\.\d{1,3}\.\d{1,3}):\d+$",
)


# 글로벌 매니저 인스턴스
room_manager = RoomManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI 앱의 생명주기를 관리하는 컨텍스트 매니저.

    룸은 첫 접속 시 생성되므로 시작 시에는 로그만 남기고,
    종료 시 모든 룸을 닫아 참가자 연결과 룸 태스크를 정리합니다.

    Args:
        app (FastAPI): FastAPI 애플리케이션 인스턴스

    Yields:
        None: 앱이 실행되는 동안 제어를 반환
    """
    logger.info(f"WebRTC 시그널링 서버 시작 중... (경로: {signaling_config.PATH}, "
                f"룸: '{signaling_config.ROOM_NAME}')")

    yield

    logger.info("서버 종료 중...")
    await room_manager.close_all()


app = FastAPI(title="WebRTC Signaling Server with Rooms", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=CORS_ALLOW_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 라우터 등록
app.include_router(health_router)
app.include_router(signaling_router)

# WebSocket 시그널링 라우터에 매니저 인스턴스 전달
init_signaling_managers(room_manager)


@app.get("/")
async def root():
    """서버 상태 확인 엔드포인트 (Health check).

    Returns:
        dict: 서버 상태 정보
            - status (str): 서버 상태
            - service (str): 서비스 이름
    """
    return {"status": "ok", "service": "WebRTC Signaling Server with Rooms"}


@app.get("/api/rooms")
async def get_rooms_api():
    """활성화된 모든 룸의 목록을 조회합니다.

    Returns:
        dict: {"rooms": [{room_name, peer_count, peers}, ...]}
    """
    return {"rooms": room_manager.get_room_list()}


@app.get("/api/ice-servers")
async def get_ice_servers():
    """브라우저 RTCPeerConnection에 넣을 ICE 서버 목록을 제공합니다.

    TURN credentials는 Backend 환경 변수에서만 관리하고
    이 엔드포인트를 통해서만 클라이언트에 전달합니다.

    Returns:
        list: ICE server 설정 리스트 (STUN + 설정된 경우 TURN)

    Examples:
        [
            {"urls": "stun:stun.l.google.com:19302"},
            {"urls": "turn:turn.example.com:3478", "username": "u", "credential": "p"}
        ]
    """
    if ice_config.has_turn_server:
        logger.info("ICE 서버 제공: STUN + TURN")
    else:
        logger.info("ICE 서버 제공: STUN만 (TURN 미설정)")
    return ice_config.as_dicts()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level="info",
    )
