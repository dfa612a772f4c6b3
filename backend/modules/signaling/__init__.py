"""시그널링 모듈.

룸 기반 참가자 관리와 시그널링 메시지 릴레이 기능을 제공합니다.

Classes:
    RoomManager: 룸 이름 → SignalingRoom 관리
    SignalingRoom: 룸 하나의 멤버십과 릴레이를 직렬화하는 액터
    Participant: 참가자 데이터 클래스
    ParticipantState: 참가자 상태 (connected/ready/closed)

Protocol:
    decode_client_message / decode_server_message: 와이어 메시지 디코딩
    parse_signal_payload: signal payload를 디스크립션/후보로 구분

Config:
    signaling_config: 룸 이름, 릴레이 경로, 송신 큐 크기
"""

from .config import signaling_config, SignalingConfig
from .protocol import (
    ReadyMessage,
    SignalRequest,
    WelcomeMessage,
    PeerJoinedMessage,
    PeerLeftMessage,
    SignalMessage,
    SessionDescriptionPayload,
    CandidatePayload,
    decode_client_message,
    decode_server_message,
    parse_signal_payload,
)
from .room_manager import RoomManager, SignalingRoom, Participant, ParticipantState

__all__ = [
    # Classes
    "RoomManager",
    "SignalingRoom",
    "Participant",
    "ParticipantState",
    # Protocol
    "ReadyMessage",
    "SignalRequest",
    "WelcomeMessage",
    "PeerJoinedMessage",
    "PeerLeftMessage",
    "SignalMessage",
    "SessionDescriptionPayload",
    "CandidatePayload",
    "decode_client_message",
    "decode_server_message",
    "parse_signal_payload",
    # Config
    "signaling_config",
    "SignalingConfig",
]
