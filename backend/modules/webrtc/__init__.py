"""WebRTC 모듈.

클라이언트 측 피어 협상 엔진과 시그널링 클라이언트를 제공합니다.

Classes:
    NegotiationEngine: 피어별 협상 세션 관리 (offerer/answerer 역할 결정)
    NegotiationSession: 원격 피어 하나와의 협상 상태와 후보 버퍼
    SessionRole: offerer / answerer
    SignalingClient: 릴레이 WebSocket 연결 + 엔진 구동

Config:
    ice_config: ICE 서버 설정
    connection_config: 피어 연결 설정
"""

from .session import NegotiationSession, SessionRole, ice_candidate_from_payload, ice_candidate_to_payload
from .negotiation import NegotiationEngine, create_peer_connection
from .client import SignalingClient
from .config import (
    ice_config,
    connection_config,
    ICEServerConfig,
    ConnectionConfig,
)

__all__ = [
    # Classes
    "NegotiationEngine",
    "NegotiationSession",
    "SessionRole",
    "SignalingClient",
    "create_peer_connection",
    "ice_candidate_from_payload",
    "ice_candidate_to_payload",
    # Config
    "ice_config",
    "connection_config",
    "ICEServerConfig",
    "ConnectionConfig",
]
