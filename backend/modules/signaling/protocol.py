"""시그널링 메시지 프로토콜 정의.

참가자와 릴레이 서버, 그리고 릴레이를 거친 참가자 간에 주고받는
제어 메시지의 와이어 스키마를 정의합니다. 모든 메시지는 ``type`` 필드로
구분되는 JSON 객체입니다.

Client → Relay:
    - ready: 초기 피어 목록을 받을 준비 완료
    - signal {to, payload}: 특정 피어에게 payload 전달 요청

Relay → Client:
    - welcome {id, peers}
    - peer-joined {peerId}
    - peer-left {peerId}
    - signal {from, payload}

signal의 payload는 릴레이 입장에서 불투명(opaque)하며, 협상 계층에서는
세션 디스크립션({type, sdp}) 또는 연결 후보({candidate, ...})로 해석됩니다.

Note:
    - 디코딩 실패(JSON 오류, 필수 필드 누락, 알 수 없는 type)는 예외로
      전파되지 않고 None으로 반환됩니다. 호출자는 조용히 버리면 됩니다.
"""

import json
import logging
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


# ============================================================
# Client → Relay
# ============================================================

class ReadyMessage(BaseModel):
    """초기 피어 목록 수신 준비 완료 메시지."""
    type: Literal["ready"] = "ready"


class SignalRequest(BaseModel):
    """특정 피어에게 payload를 전달해 달라는 요청."""
    type: Literal["signal"] = "signal"
    to: str = Field(..., min_length=1, description="수신 피어 ID")
    payload: Any = Field(..., description="릴레이가 해석하지 않는 payload")


ClientMessage = Annotated[
    Union[ReadyMessage, SignalRequest],
    Field(discriminator="type"),
]


# ============================================================
# Relay → Client
# ============================================================

class _ServerModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_json(self) -> str:
        """alias(camelCase) 기준으로 직렬화합니다."""
        return self.model_dump_json(by_alias=True)


class WelcomeMessage(_ServerModel):
    """입장한 참가자에게 자신의 ID와 기존 피어 목록을 알려주는 메시지."""
    type: Literal["welcome"] = "welcome"
    id: str
    peers: List[str] = Field(default_factory=list)


class PeerJoinedMessage(_ServerModel):
    """새 참가자 입장 알림."""
    type: Literal["peer-joined"] = "peer-joined"
    peer_id: str = Field(..., alias="peerId")


class PeerLeftMessage(_ServerModel):
    """참가자 퇴장 알림."""
    type: Literal["peer-left"] = "peer-left"
    peer_id: str = Field(..., alias="peerId")


class SignalMessage(_ServerModel):
    """다른 피어가 보낸 payload (발신자 ID 포함)."""
    type: Literal["signal"] = "signal"
    sender: str = Field(..., alias="from")
    payload: Any


ServerMessage = Annotated[
    Union[WelcomeMessage, PeerJoinedMessage, PeerLeftMessage, SignalMessage],
    Field(discriminator="type"),
]


# ============================================================
# signal payload (협상 계층)
# ============================================================

class SessionDescriptionPayload(BaseModel):
    """세션 디스크립션 (offer/answer)."""
    type: Literal["offer", "answer"]
    sdp: str


class CandidatePayload(BaseModel):
    """연결 후보 (ICE candidate). 브라우저의 RTCIceCandidateInit 형식."""
    model_config = ConfigDict(populate_by_name=True)

    candidate: str
    sdp_mid: Optional[str] = Field(default=None, alias="sdpMid")
    sdp_mline_index: Optional[int] = Field(default=None, alias="sdpMLineIndex")

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True)


SignalPayload = Union[SessionDescriptionPayload, CandidatePayload]


_client_adapter: TypeAdapter = TypeAdapter(ClientMessage)
_server_adapter: TypeAdapter = TypeAdapter(ServerMessage)


def _load_json(raw: Union[str, bytes]) -> Optional[Any]:
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


def decode_client_message(raw: Union[str, bytes]) -> Optional[Union[ReadyMessage, SignalRequest]]:
    """클라이언트가 보낸 텍스트 프레임을 메시지 객체로 변환합니다.

    Args:
        raw: 수신한 JSON 텍스트

    Returns:
        ReadyMessage 또는 SignalRequest. 프로토콜 오류이면 None

    Examples:
        >>> decode_client_message('{"type": "ready"}')
        ReadyMessage(type='ready')
        >>> decode_client_message('{"type": "signal", "payload": {}}') is None
        True
    """
    data = _load_json(raw)
    if data is None:
        return None
    try:
        return _client_adapter.validate_python(data)
    except ValidationError as e:
        logger.debug(f"[Signaling] 잘못된 클라이언트 메시지 무시: {e.error_count()}개 오류")
        return None


def decode_server_message(raw: Union[str, bytes]):
    """릴레이가 보낸 텍스트 프레임을 메시지 객체로 변환합니다.

    Returns:
        WelcomeMessage, PeerJoinedMessage, PeerLeftMessage, SignalMessage 중 하나.
        프로토콜 오류이면 None
    """
    data = _load_json(raw)
    if data is None:
        return None
    try:
        return _server_adapter.validate_python(data)
    except ValidationError as e:
        logger.debug(f"[Signaling] 잘못된 서버 메시지 무시: {e.error_count()}개 오류")
        return None


def parse_signal_payload(payload: Any) -> Optional[SignalPayload]:
    """signal payload를 세션 디스크립션 또는 연결 후보로 구분합니다.

    디스크립션 타입 필드(``type``/``sdp``)가 있으면 세션 디스크립션,
    ``candidate`` 필드가 있으면 연결 후보로 해석합니다.

    Args:
        payload: signal 메시지의 payload (dict 예상)

    Returns:
        SessionDescriptionPayload, CandidatePayload 또는 None (해석 불가)
    """
    if not isinstance(payload, dict):
        return None
    try:
        if "sdp" in payload or "type" in payload:
            return SessionDescriptionPayload.model_validate(payload)
        if "candidate" in payload:
            return CandidatePayload.model_validate(payload)
    except ValidationError as e:
        logger.debug(f"[Signaling] 해석할 수 없는 signal payload: {e.error_count()}개 오류")
    return None
