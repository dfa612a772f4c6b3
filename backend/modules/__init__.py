"""Backend modules package.

이 패키지는 룸 기반 WebRTC 시그널링 시스템의 핵심 모듈을 포함합니다.

Modules:
    signaling: 룸 참가자 관리 및 시그널링 메시지 릴레이 (서버 측)
    webrtc: 피어별 협상 엔진 및 시그널링 클라이언트 (클라이언트 측)
    logging_config: 로깅 설정
"""

from .signaling import RoomManager, SignalingRoom, signaling_config
from .webrtc import NegotiationEngine, SignalingClient, ice_config

__all__ = [
    # Signaling
    "RoomManager",
    "SignalingRoom",
    "signaling_config",
    # WebRTC
    "NegotiationEngine",
    "SignalingClient",
    "ice_config",
]
