"""
서버 설정.
프로젝트 루트의 .env를 읽은 뒤 환경변수에서 값을 가져옵니다.
"""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

# 프로젝트 루트 (handwriting의 상위)
ROOT = Path(__file__).resolve().parent.parent
FRONTEND = ROOT / "frontend"
FRONTEND_STATIC = FRONTEND / "static"
FRONTEND_INDEX = FRONTEND / "index.html"

load_dotenv(ROOT / ".env")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# Gemini 연결 설정
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta").rstrip("/")
GEMINI_STREAMING = _env_bool("GEMINI_STREAMING", True)
GEMINI_TIMEOUT_SEC = float(os.getenv("GEMINI_TIMEOUT_SEC", "30"))

# CORS: 쉼표 구분 목록, 비어 있으면 모두 허용
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()] or ["*"]

# IP별 분당 /api/analyze 허용 횟수
RATE_LIMIT_WINDOW = 60.0
RATE_LIMIT_ANALYZE = int(os.getenv("RATE_LIMIT_ANALYZE", "20"))

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """앱 시작 시 한 번 호출. 이미 핸들러가 있으면 레벨만 맞춤."""
    root = logging.getLogger()
    lvl = getattr(logging, (level or LOG_LEVEL), logging.INFO)
    if not root.handlers:
        logging.basicConfig(level=lvl, format=LOG_FORMAT)
    root.setLevel(lvl)
    # httpx는 요청 URL을 INFO로 찍으므로 한 단계 올림
    logging.getLogger("httpx").setLevel(max(lvl, logging.WARNING))
