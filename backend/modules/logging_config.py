"""로깅 설정 모듈.

콘솔 출력과 로테이팅 파일 출력을 설정합니다.

사용 예시:
    from modules.logging_config import setup_logging

    # 애플리케이션 시작 시 한 번 호출
    setup_logging()
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE_PATH = os.getenv("LOG_FILE_PATH", "logs/server.log")


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """로깅 설정 초기화.

    Args:
        level: 로그 레벨 (기본: LOG_LEVEL 환경변수)
        log_file: 로그 파일 경로 (기본: LOG_FILE_PATH 환경변수, 빈 문자열이면 파일 출력 없음)
    """
    level = level or LOG_LEVEL
    log_file = LOG_FILE_PATH if log_file is None else log_file

    log_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(
        fmt='%(asctime)s | %(levelname)-8s | %(name)-25s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    # 콘솔 핸들러
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # 파일 핸들러 (10MB마다 새 파일, 최대 5개 백업)
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # 너무 상세한 로그 억제
    logging.getLogger("aioice").setLevel(logging.WARNING)
    logging.getLogger("aiortc").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)

    # uvicorn 로그 조정
    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    logging.info(f"로깅 설정 완료: level={level}, file={log_file or 'None'}")
