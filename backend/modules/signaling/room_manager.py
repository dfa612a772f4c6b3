"""룸 기반 시그널링 릴레이 모듈.

이 모듈은 룸(방)의 참가자 목록을 관리하고, 참가자 간에 주소가 지정된
시그널링 메시지를 중계합니다. 미디어는 절대 다루지 않습니다.

주요 기능:
    - 룸 생성 (이름으로 처음 참조될 때 자동 생성)
    - 빈 룸 자동 삭제 (고정 룸 SIGNALING_ROOM_NAME 제외)
    - 참가자 입장/준비/퇴장 상태 관리 (Connected → Ready → Closed)
    - welcome / peer-joined / peer-left 알림
    - signal 메시지 릴레이 (payload는 해석하지 않음)

Architecture:
    - SignalingRoom: 룸 하나당 asyncio 태스크 하나가 이벤트 큐를 소비하는 액터
        - 모든 멤버십 변경과 릴레이가 하나의 태스크에서 순서대로 처리됨
        - 락이 필요 없음 (룸 내부 상태를 동시에 수정하는 주체가 없음)
    - Participant: 참가자별 송신 큐(outbox) + writer 태스크
        - 룸 액터는 큐에 넣기만 하고 네트워크 I/O를 기다리지 않음
        - 느리거나 죽은 피어가 룸 전체를 멈추지 않음
    - RoomManager: 룸 이름 → SignalingRoom 매핑

Classes:
    ParticipantState: 참가자 상태
    Participant: 참가자 정보를 담는 데이터 클래스
    SignalingRoom: 룸 액터
    RoomManager: 룸 관리 클래스

Examples:
    기본 사용법:
        >>> manager = RoomManager()
        >>> room = manager.get_or_create_room("default-room")
        >>> participant = room.connect(websocket)
        >>> room.receive(participant.peer_id, '{"type": "ready"}')
        >>> room.disconnect(participant.peer_id)

See Also:
    protocol.py: 메시지 스키마
    routes/signaling.py: WebSocket 엔드포인트
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set, Union

from .config import signaling_config
from .protocol import (
    PeerJoinedMessage,
    PeerLeftMessage,
    ReadyMessage,
    SignalMessage,
    SignalRequest,
    WelcomeMessage,
    decode_client_message,
)

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """참가자와의 양방향 제어 채널 (FastAPI WebSocket과 호환)."""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class ParticipantState(str, Enum):
    """참가자 상태."""
    CONNECTED = "connected"
    READY = "ready"
    CLOSED = "closed"


@dataclass
class Participant:
    """룸에 접속한 참가자를 나타내는 데이터 클래스.

    Attributes:
        peer_id (str): 룸이 발급한 고유 식별자 (UUID)
        transport (Transport): 참가자와의 WebSocket 연결 객체
        state (ParticipantState): 현재 상태
        outbox (asyncio.Queue): 전송 대기 중인 JSON 텍스트
        writer_task (Optional[asyncio.Task]): outbox를 비우는 태스크
    """
    peer_id: str
    transport: Transport
    state: ParticipantState = ParticipantState.CONNECTED
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    writer_task: Optional[asyncio.Task] = None


# ============================================================
# 룸 이벤트
# ============================================================

@dataclass(frozen=True)
class _Joined:
    participant: Participant


@dataclass(frozen=True)
class _Inbound:
    peer_id: str
    raw: str


@dataclass(frozen=True)
class _Departed:
    peer_id: str
    reason: str


_RoomEvent = Union[_Joined, _Inbound, _Departed]


class SignalingRoom:
    """룸 하나의 상태를 단독으로 소유하는 액터.

    connect/receive/disconnect는 이벤트를 큐에 넣기만 하고 즉시 반환합니다.
    실제 상태 전이는 룸 태스크(_run)가 하나씩 순서대로 수행하므로,
    각 참가자는 "내가 ready가 된 시점에 누가 있었는지"를 일관되게 봅니다.

    Attributes:
        name (str): 룸 이름
        participants (Dict[str, Participant]): peer_id → Participant
        outbox_size (int): 참가자별 송신 큐 최대 크기
        on_empty (Optional[Callable[[str], None]]): 마지막 참가자가 나가 룸이 비었을 때 호출

    Thread Safety:
        - asyncio 단일 스레드 환경 전용
        - participants는 룸 태스크만 수정함
    """

    def __init__(
        self,
        name: str,
        outbox_size: int = signaling_config.OUTBOX_SIZE,
        on_empty: Optional[Callable[[str], None]] = None,
    ):
        self.name = name
        self.outbox_size = outbox_size
        self.on_empty = on_empty
        self.participants: Dict[str, Participant] = {}
        self._events: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

        # Keep references so close tasks are not garbage collected
        self._background: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_idle(self) -> bool:
        """참가자가 없고 처리 대기 중인 이벤트도 없으면 True."""
        return not self.participants and self._events.empty()

    @property
    def peer_count(self) -> int:
        return len(self.participants)

    def get_peer_ids(self) -> List[str]:
        return list(self.participants)

    def start(self) -> None:
        """룸 태스크를 시작합니다. 이미 실행 중이면 아무 작업도 하지 않습니다."""
        if not self.is_running:
            self._task = asyncio.create_task(self._run(), name=f"room:{self.name}")
            logger.info(f"[Signaling] 룸 '{self.name}' 시작")

    async def close(self) -> None:
        """룸을 종료합니다.

        룸 태스크를 취소하고 남아 있는 모든 참가자의 연결을 닫습니다.
        peer-left는 보내지 않습니다 (룸 자체가 사라지므로).
        """
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        participants = list(self.participants.values())
        self.participants.clear()
        for participant in participants:
            participant.state = ParticipantState.CLOSED
            if participant.writer_task is not None:
                participant.writer_task.cancel()
        await asyncio.gather(
            *(self._close_transport(p) for p in participants),
            *self._background,
            return_exceptions=True,
        )
        logger.info(f"[Signaling] 룸 '{self.name}' 종료 (참가자 {len(participants)}명 연결 해제)")

    def new_identity(self) -> str:
        """현재 참가자와 겹치지 않는 새 peer ID를 발급합니다."""
        while True:
            peer_id = str(uuid.uuid4())
            if peer_id not in self.participants:
                return peer_id

    # ------------------------------------------------------------
    # 외부 입력 (큐에 넣기만 함)
    # ------------------------------------------------------------

    def connect(self, transport: Transport) -> Participant:
        """새 연결을 받아 참가자를 만들고 입장 이벤트를 큐에 넣습니다.

        Args:
            transport (Transport): 이미 수락(accept)된 WebSocket

        Returns:
            Participant: 발급된 peer_id를 가진 참가자 객체
        """
        participant = Participant(
            peer_id=self.new_identity(),
            transport=transport,
            outbox=asyncio.Queue(maxsize=self.outbox_size),
        )
        self._events.put_nowait(_Joined(participant))
        return participant

    def receive(self, peer_id: str, raw: str) -> None:
        """참가자가 보낸 텍스트 프레임 하나를 큐에 넣습니다."""
        self._events.put_nowait(_Inbound(peer_id, raw))

    def disconnect(self, peer_id: str, reason: str = "close") -> None:
        """참가자의 연결 종료(정상 종료/오류 모두)를 큐에 넣습니다.

        같은 참가자에 대해 여러 번 호출되어도 peer-left는 한 번만 전송됩니다.
        """
        self._events.put_nowait(_Departed(peer_id, reason))

    async def flush(self) -> None:
        """지금까지 큐에 들어간 모든 이벤트가 처리될 때까지 기다립니다."""
        await self._events.join()

    # ------------------------------------------------------------
    # 룸 태스크
    # ------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            event = await self._events.get()
            try:
                self._handle(event)
            except Exception as e:
                logger.error(f"[Signaling] 룸 '{self.name}' 이벤트 처리 중 오류: {e}", exc_info=True)
            finally:
                self._events.task_done()

            if self.on_empty is not None and self.is_idle:
                self.on_empty(self.name)

    def _handle(self, event: _RoomEvent) -> None:
        if isinstance(event, _Joined):
            self._on_joined(event.participant)
        elif isinstance(event, _Inbound):
            self._on_inbound(event.peer_id, event.raw)
        elif isinstance(event, _Departed):
            self._on_departed(event.peer_id, event.reason)

    def _on_joined(self, participant: Participant) -> None:
        self.participants[participant.peer_id] = participant
        participant.writer_task = asyncio.create_task(
            self._write_loop(participant), name=f"writer:{participant.peer_id[:8]}"
        )
        logger.info(f"[Signaling] 피어 {participant.peer_id[:8]} 접속 (룸: '{self.name}', "
                    f"참가자 {len(self.participants)}명)")

    def _on_inbound(self, peer_id: str, raw: str) -> None:
        sender = self.participants.get(peer_id)
        if sender is None:
            # Already departed
            return

        message = decode_client_message(raw)
        if message is None:
            logger.debug(f"[Signaling] 피어 {peer_id[:8]}의 잘못된 메시지 무시")
            return

        if isinstance(message, ReadyMessage):
            self._on_ready(sender)
        elif isinstance(message, SignalRequest):
            self._relay(sender, message)

    def _on_ready(self, participant: Participant) -> None:
        """Connected → Ready 전이.

        ready를 보낸 참가자에게 welcome(자신의 ID + 다른 참가자 목록)을 보내고,
        다른 참가자들에게 peer-joined를 보냅니다. 두 동작은 룸 이벤트 스트림
        기준으로 하나의 단계로 처리됩니다.
        """
        if participant.state is not ParticipantState.CONNECTED:
            logger.debug(f"[Signaling] 피어 {participant.peer_id[:8]}의 중복 ready 무시")
            return

        participant.state = ParticipantState.READY
        others = [p for p in self.participants.values() if p.peer_id != participant.peer_id]

        self._deliver(participant, WelcomeMessage(
            id=participant.peer_id,
            peers=[p.peer_id for p in others],
        ))

        joined = PeerJoinedMessage(peer_id=participant.peer_id)
        for peer in others:
            self._deliver(peer, joined)

        logger.info(f"[Signaling] 피어 {participant.peer_id[:8]} ready (기존 피어 {len(others)}명)")

    def _relay(self, sender: Participant, message: SignalRequest) -> None:
        target = self.participants.get(message.to)
        if target is None:
            logger.debug(f"[Signaling] 수신자 {message.to[:8]} 없음, signal 폐기 (발신: {sender.peer_id[:8]})")
            return

        self._deliver(target, SignalMessage(sender=sender.peer_id, payload=message.payload))
        logger.debug(f"[Signaling] signal 릴레이: {sender.peer_id[:8]} -> {target.peer_id[:8]}")

    def _on_departed(self, peer_id: str, reason: str) -> None:
        """any → Closed 전이. 참가자를 제거하고 peer-left를 브로드캐스트합니다."""
        participant = self.participants.pop(peer_id, None)
        if participant is None:
            logger.debug(f"[Signaling] 피어 {peer_id[:8]} 이미 정리됨 ({reason})")
            return

        participant.state = ParticipantState.CLOSED
        if participant.writer_task is not None:
            participant.writer_task.cancel()
        self._spawn(self._close_transport(participant))

        left = PeerLeftMessage(peer_id=peer_id)
        for peer in self.participants.values():
            self._deliver(peer, left)

        logger.info(f"[Signaling] 피어 {peer_id[:8]} 퇴장 ({reason}). "
                    f"룸 '{self.name}' 참가자 {len(self.participants)}명")

    # ------------------------------------------------------------
    # 전송
    # ------------------------------------------------------------

    def _deliver(self, participant: Participant, message) -> None:
        """참가자의 송신 큐에 메시지를 넣습니다 (네트워크 I/O를 기다리지 않음)."""
        try:
            participant.outbox.put_nowait(message.to_json())
        except asyncio.QueueFull:
            logger.warning(f"[Signaling] 피어 {participant.peer_id[:8]} 송신 큐 가득 참, 연결 종료 처리")
            self.disconnect(participant.peer_id, reason="outbox_full")

    async def _write_loop(self, participant: Participant) -> None:
        while True:
            text = await participant.outbox.get()
            try:
                await participant.transport.send_text(text)
            except Exception as e:
                logger.warning(f"[Signaling] 피어 {participant.peer_id[:8]}에 전송 실패: {e}")
                self.disconnect(participant.peer_id, reason="send_failed")
                return

    async def _close_transport(self, participant: Participant) -> None:
        try:
            await participant.transport.close()
        except Exception as e:
            # Transport may already be closed by the client
            logger.debug(f"[Signaling] 피어 {participant.peer_id[:8]} 연결 닫기 생략: {e}")

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


class RoomManager:
    """룸 이름으로 SignalingRoom을 관리하는 클래스.

    룸은 처음 참조될 때 생성됩니다. 고정 룸(SIGNALING_ROOM_NAME)은 프로세스가
    끝날 때까지 유지되고, 그 밖의 룸은 마지막 참가자가 나가면 자동 삭제됩니다.

    Attributes:
        rooms (Dict[str, SignalingRoom]): 룸 이름 → SignalingRoom
        outbox_size (int): 새로 만드는 룸의 참가자별 송신 큐 크기
        persistent_rooms (Set[str]): 비어도 삭제하지 않는 룸 이름

    Examples:
        >>> manager = RoomManager()
        >>> room = manager.get_or_create_room("default-room")
        >>> manager.get_room_count("default-room")
        0
        >>> await manager.close_all()
    """

    def __init__(
        self,
        outbox_size: int = signaling_config.OUTBOX_SIZE,
        persistent_rooms: Optional[Iterable[str]] = None,
    ):
        self.rooms: Dict[str, SignalingRoom] = {}
        self.outbox_size = outbox_size
        if persistent_rooms is None:
            persistent_rooms = (signaling_config.ROOM_NAME,)
        self.persistent_rooms: Set[str] = set(persistent_rooms)
        self._background: Set[asyncio.Task] = set()

    def create_room(self, room_name: str) -> SignalingRoom:
        """새로운 룸을 생성합니다. 이미 있으면 기존 룸을 반환합니다.

        Args:
            room_name (str): 생성할 룸의 이름

        Returns:
            SignalingRoom: 생성된(또는 기존) 룸. 아직 시작되지 않았을 수 있음
        """
        if room_name not in self.rooms:
            on_empty = None if room_name in self.persistent_rooms else self._on_room_empty
            self.rooms[room_name] = SignalingRoom(room_name, outbox_size=self.outbox_size, on_empty=on_empty)
            logger.info(f"Room '{room_name}' created")
        return self.rooms[room_name]

    def get_or_create_room(self, room_name: str) -> SignalingRoom:
        """룸을 조회하고, 없으면 생성한 뒤 룸 태스크를 시작합니다.

        실행 중인 이벤트 루프 안에서 호출해야 합니다.

        Args:
            room_name (str): 룸 이름

        Returns:
            SignalingRoom: 실행 중인 룸
        """
        room = self.create_room(room_name)
        room.start()
        return room

    def get_room(self, room_name: str) -> Optional[SignalingRoom]:
        return self.rooms.get(room_name)

    def get_room_count(self, room_name: str) -> int:
        """특정 룸의 현재 참가자 수. 룸이 없으면 0."""
        room = self.rooms.get(room_name)
        return room.peer_count if room else 0

    def get_room_list(self) -> List[dict]:
        """모든 룸의 정보를 리스트로 반환합니다.

        Returns:
            List[dict]: 룸 정보 딕셔너리의 리스트
                - room_name (str): 룸 이름
                - peer_count (int): 현재 참가자 수
                - peers (List[dict]): peer_id, state
        """
        return [
            {
                "room_name": room_name,
                "peer_count": room.peer_count,
                "peers": [{"peer_id": p.peer_id, "state": p.state.value}
                          for p in room.participants.values()],
            }
            for room_name, room in self.rooms.items()
        ]

    async def close_room(self, room_name: str) -> bool:
        """룸을 명시적으로 종료하고 제거합니다.

        Returns:
            bool: 룸이 존재해서 종료했으면 True
        """
        room = self.rooms.pop(room_name, None)
        if room is None:
            return False
        await room.close()
        logger.info(f"Room '{room_name}' deleted")
        return True

    def _on_room_empty(self, room_name: str) -> None:
        # Room task cannot await its own close
        task = asyncio.create_task(self._close_if_idle(room_name))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _close_if_idle(self, room_name: str) -> None:
        room = self.rooms.get(room_name)
        # A connect() queued since the room emptied keeps it alive
        if room is None or not room.is_idle:
            return
        logger.info(f"Room '{room_name}' is empty, closing")
        await self.close_room(room_name)

    async def close_all(self) -> None:
        """모든 룸을 종료합니다 (서버 종료 시)."""
        for room_name in list(self.rooms):
            await self.close_room(room_name)
