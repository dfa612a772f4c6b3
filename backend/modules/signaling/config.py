"""시그널링 모듈 설정.

룸 이름, 릴레이 경로, 참가자별 송신 큐 크기 등 환경변수 기반 설정.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


@dataclass(frozen=True)
class SignalingConfig:
    """시그널링 릴레이 설정."""

    # 고정 경로(/websocket)로 접속하면 들어가는 룸
    ROOM_NAME: str = os.getenv("SIGNALING_ROOM_NAME", "default-room")

    # 릴레이 WebSocket 경로
    PATH: str = os.getenv("SIGNALING_PATH", "/websocket")

    # 참가자별 송신 큐 최대 크기 (초과 시 연결 종료로 처리)
    OUTBOX_SIZE: int = int(os.getenv("SIGNALING_OUTBOX_SIZE", "256"))


signaling_config = SignalingConfig()

logger.info(f"[Signaling Config] 룸: {signaling_config.ROOM_NAME}, 경로: {signaling_config.PATH}")
