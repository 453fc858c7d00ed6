"""
손글씨 연습 백엔드.
- WebSocket: 연결 하나 = 연습 세션 하나. 드로잉 보드/선택기 이벤트를 받고 상태를 푸시
- REST: 언어 목록, 스트로크 이미지 변환, 단건 분석
"""
import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field, ValidationError

from . import config
from .ai_bridge import AnalysisError, GeminiStreamingAnalysis, collect_analysis
from .languages import LANGUAGE_DATA, characters_for, get_language_info, get_script
from .prompt import build_analysis_prompt
from .renderer import convert_strokes_to_image
from .session import PracticeSession
from .strokes import (
    CharacterChangeEvent,
    ClearEvent,
    DrawingStateChangeEvent,
    LanguageChangeEvent,
    Stroke,
    StrokeUpdateEvent,
    parse_event,
)

logger = logging.getLogger(__name__)


def new_analysis_client() -> GeminiStreamingAnalysis:
    """세션 하나에 붙일 분석 클라이언트. 테스트에서 교체 가능."""
    return GeminiStreamingAnalysis(config.GEMINI_API_KEY)


class SessionManager:
    def __init__(self):
        self.sessions: dict[int, PracticeSession] = {}

    def open(self, ws: WebSocket, session: PracticeSession) -> None:
        self.sessions[id(ws)] = session

    def close(self, ws: WebSocket) -> None:
        self.sessions.pop(id(ws), None)

    def __len__(self) -> int:
        return len(self.sessions)


manager = SessionManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.configure_logging()
    if not config.GEMINI_API_KEY:
        logger.warning("GEMINI_API_KEY 미설정: 분석 요청은 모두 실패합니다.")
    yield


app = FastAPI(title="Handwriting Practice - AI 피드백", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Rate limit: IP별 분당 허용 횟수
_rate_limit: dict[str, list[float]] = {}


def _get_client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _check_rate_limit(key: str, limit: int) -> None:
    now = time.time()
    times = _rate_limit.setdefault(key, [])
    times[:] = [t for t in times if now - t < config.RATE_LIMIT_WINDOW]
    if len(times) >= limit:
        raise HTTPException(status_code=429, detail="요청이 너무 많습니다. 잠시 후 다시 시도하세요.")
    times.append(now)


# 정적 파일 (프론트엔드)
if config.FRONTEND_STATIC.exists():
    app.mount("/static", StaticFiles(directory=str(config.FRONTEND_STATIC)), name="static")


@app.get("/")
async def index():
    if config.FRONTEND_INDEX.exists():
        return FileResponse(str(config.FRONTEND_INDEX))
    return {"message": "Handwriting Practice API. Connect a drawing client to /ws/session."}


@app.get("/favicon.ico", include_in_schema=False)
async def favicon():
    return Response(status_code=204)


@app.get("/health", include_in_schema=False)
@app.get("/api/health", include_in_schema=False)
async def health():
    """로드밸런서·모니터링용 상태 확인."""
    return {"status": "ok", "sessions": len(manager), "model": config.GEMINI_MODEL}


# ---------- REST API ----------

@app.get("/api/languages")
async def languages():
    """언어 선택기용 언어·난이도·글자 표."""
    return {"languages": LANGUAGE_DATA}


@app.get("/api/languages/{language}/{level}")
async def language_characters(language: str, level: str):
    """언어·난이도별 연습 글자와 문자 체계."""
    characters = characters_for(language, level)
    if not characters:
        raise HTTPException(status_code=404, detail=f"연습 글자가 없습니다: {language}/{level}")
    return {"language": language, "level": level, "script": get_script(language), "characters": characters}


class RenderRequest(BaseModel):
    strokes: list[Stroke] = Field(default_factory=list)


@app.post("/api/render")
async def render(req: RenderRequest):
    return {"image": await convert_strokes_to_image(req.strokes)}


class AnalyzeRequest(BaseModel):
    strokes: list[Stroke]
    language: str = "english"
    level: str = "beginner"
    character: str | None = "A"


@app.post("/api/analyze")
async def analyze(request: Request, req: AnalyzeRequest):
    """세션 없이 한 번만 분석. 결과 4칸·점수·원본 응답을 돌려줌."""
    _check_rate_limit(f"analyze:{_get_client_ip(request)}", config.RATE_LIMIT_ANALYZE)
    if not any(s.points for s in req.strokes):
        raise HTTPException(status_code=400, detail="분석할 스트로크가 없습니다.")
    info = get_language_info(req.language, req.level, req.character)
    image = await convert_strokes_to_image(req.strokes)
    try:
        result = await collect_analysis(new_analysis_client(), build_analysis_prompt(image, info))
    except AnalysisError as e:
        status = 429 if e.status_code == 429 else 502
        raise HTTPException(status_code=status, detail=str(e))
    return {"language_info": info.model_dump(), **result}


# ---------- WebSocket 세션 ----------

async def _dispatch(session: PracticeSession, event) -> None:
    if isinstance(event, LanguageChangeEvent):
        session.on_language_change(event)
    elif isinstance(event, CharacterChangeEvent):
        session.on_character_change(event)
    elif isinstance(event, StrokeUpdateEvent):
        await session.on_stroke_update(event.strokes)
    elif isinstance(event, DrawingStateChangeEvent):
        await session.on_drawing_state_change(event.is_drawing)
    elif isinstance(event, ClearEvent):
        session.clear()


def _log_task_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("세션 이벤트 처리 실패: %s", exc)


@app.websocket("/ws/session")
async def ws_session(ws: WebSocket):
    await ws.accept()
    outbox: asyncio.Queue = asyncio.Queue()
    session = PracticeSession(new_analysis_client(), listener=lambda snap: outbox.put_nowait({"type": "state", "state": snap}))
    manager.open(ws, session)
    tasks: set[asyncio.Task] = set()

    async def sender():
        while True:
            message = await outbox.get()
            await ws.send_json(message)

    send_task = asyncio.create_task(sender())
    outbox.put_nowait({"type": "state", "state": session.snapshot()})
    try:
        while True:
            raw = await ws.receive_text()
            try:
                event = parse_event(json.loads(raw))
            except json.JSONDecodeError as e:
                outbox.put_nowait({"type": "error", "detail": f"JSON 형식 오류: {e}"})
                continue
            except ValidationError as e:
                outbox.put_nowait({"type": "error", "detail": e.errors(include_url=False, include_context=False)})
                continue
            # 분석을 기다리는 동안에도 다음 입력을 받도록 이벤트마다 태스크로 처리
            task = asyncio.create_task(_dispatch(session, event))
            tasks.add(task)
            task.add_done_callback(tasks.discard)
            task.add_done_callback(_log_task_result)
    except WebSocketDisconnect:
        pass
    finally:
        manager.close(ws)
        for task in list(tasks):
            task.cancel()
        send_task.cancel()
        await asyncio.gather(send_task, *tasks, return_exceptions=True)


def run():
    """handwriting-server 진입점."""
    config.configure_logging()
    uvicorn.run("handwriting.main:app", host=config.HOST, port=config.PORT)
