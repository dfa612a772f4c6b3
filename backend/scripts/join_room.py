"""룸 참가 스크립트.

시그널링 서버에 참가자로 접속하여 룸의 다른 참가자들과 WebRTC 세션을 맺습니다.
미디어 파일(또는 장치)을 로컬 트랙으로 보내고, 수신한 원격 트랙은 버리거나
파일로 저장합니다.

Usage:
    uv run python scripts/join_room.py
    uv run python scripts/join_room.py --url ws://localhost:8000/websocket/상담실1
    uv run python scripts/join_room.py --play sample.mp4
    uv run python scripts/join_room.py --play /dev/video0 --format v4l2
    uv run python scripts/join_room.py --record recordings/
"""

import asyncio
import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, List

# backend 모듈 import를 위한 경로 추가
sys.path.insert(0, str(Path(__file__).parent.parent))

from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder

from modules.logging_config import setup_logging
from modules.webrtc import SignalingClient, connection_config

logger = logging.getLogger(__name__)


async def run(url: str, play: str = None, media_format: str = None, record_dir: str = None) -> None:
    player = MediaPlayer(play, format=media_format) if play else None

    def local_tracks() -> List:
        if player is None:
            return []
        return [track for track in (player.audio, player.video) if track is not None]

    # peer_id -> sinks consuming that peer's remote tracks
    sinks: Dict[str, List] = {}

    async def on_remote_track(peer_id: str, track) -> None:
        if record_dir:
            Path(record_dir).mkdir(parents=True, exist_ok=True)
            extension = "wav" if track.kind == "audio" else "mp4"
            sink = MediaRecorder(str(Path(record_dir) / f"{peer_id[:8]}-{track.kind}.{extension}"))
        else:
            sink = MediaBlackhole()
        sink.addTrack(track)
        await sink.start()
        sinks.setdefault(peer_id, []).append(sink)
        logger.info(f"피어 {peer_id[:8]} {track.kind} 트랙 수신 시작")

    async def on_session_closed(peer_id: str) -> None:
        for sink in sinks.pop(peer_id, []):
            await sink.stop()
        logger.info(f"피어 {peer_id[:8]} 세션 종료")

    client = SignalingClient(
        url,
        local_tracks=local_tracks,
        on_remote_track=on_remote_track,
        on_session_closed=on_session_closed,
    )
    try:
        await client.run()
    finally:
        for peer_id in list(sinks):
            await on_session_closed(peer_id)


def main():
    parser = argparse.ArgumentParser(description="Join a signaling room as a WebRTC participant")
    parser.add_argument("--url", default=connection_config.SIGNALING_URL, help="릴레이 WebSocket 주소")
    parser.add_argument("--play", help="로컬 트랙으로 보낼 미디어 파일 또는 장치")
    parser.add_argument("--format", dest="media_format", help="장치 입력 형식 (예: v4l2, avfoundation)")
    parser.add_argument("--record", dest="record_dir", help="수신 트랙을 저장할 디렉토리 (미지정 시 버림)")
    parser.add_argument("--verbose", "-v", action="store_true")
    args = parser.parse_args()

    setup_logging(level="DEBUG" if args.verbose else "INFO", log_file="")

    try:
        asyncio.run(run(args.url, play=args.play, media_format=args.media_format,
                        record_dir=args.record_dir))
    except KeyboardInterrupt:
        logger.info("종료")


if __name__ == "__main__":
    main()
