"""
연습 세션 상태와 이벤트 처리.
웹소켓 연결 하나가 세션 하나이며, 세션마다 분석 클라이언트를 하나만 둡니다.

상태 변경은 모두 아래 apply_* 함수(새 SessionState 반환)를 거칩니다.
"""
import asyncio
import logging
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field

from .ai_bridge import AnalysisCallbacks, GeminiStreamingAnalysis, extract_text, parse_quality_score
from .languages import get_language_info
from .prompt import build_analysis_prompt
from .renderer import convert_strokes_to_image
from .strokes import (
    AnalysisResults,
    CharacterChangeInfo,
    LanguageChangeInfo,
    LanguageInfo,
    Stroke,
)

logger = logging.getLogger(__name__)


class SessionState(BaseModel):
    model_config = ConfigDict(frozen=True)

    language: str = "english"
    level: str = "beginner"
    character: str | None = "A"
    strokes: list[Stroke] = Field(default_factory=list)
    is_drawing: bool = False
    is_analyzing: bool = False
    analysis_results: AnalysisResults = Field(default_factory=AnalysisResults)
    raw_response: dict | None = None
    last_error: str | None = None


# ---------- 상태 전이 ----------

def clear_drawing(state: SessionState) -> SessionState:
    return state.model_copy(update={
        "strokes": [],
        "is_drawing": False,
        "analysis_results": AnalysisResults(),
        "is_analyzing": False,
    })


def apply_language_change(state: SessionState, info: LanguageChangeInfo) -> SessionState:
    changed = state.model_copy(update={
        "language": info.language,
        "level": info.level,
        "character": info.character,
    })
    return clear_drawing(changed)


def apply_character_change(state: SessionState, info: CharacterChangeInfo) -> SessionState:
    changed = state.model_copy(update={"character": info.character, "level": info.level})
    return clear_drawing(changed)


def apply_stroke_update(state: SessionState, strokes: list[Stroke]) -> SessionState:
    return state.model_copy(update={"strokes": list(strokes)})


def apply_drawing_state(state: SessionState, is_drawing: bool) -> SessionState:
    return state.model_copy(update={"is_drawing": is_drawing})


def merge_result(state: SessionState, slot: str, value: str) -> SessionState:
    return state.model_copy(update={"analysis_results": state.analysis_results.merge(slot, value)})


def set_raw_response(state: SessionState, payload: dict | None) -> SessionState:
    return state.model_copy(update={"raw_response": payload})


def language_info_of(state: SessionState) -> LanguageInfo:
    return get_language_info(state.language, state.level, state.character)


def snapshot_of(state: SessionState) -> dict:
    """위젯에 넘길 현재 상태 (JSON 직렬화 가능)."""
    data = state.model_dump(mode="json")
    data["language_info"] = language_info_of(state).model_dump(mode="json")
    text = extract_text(state.raw_response) if state.raw_response else ""
    data["quality_score"] = parse_quality_score(text)
    return data


class PracticeSession:
    """
    페이지 하나에 해당하는 세션 코디네이터.

    분석 호출은 직렬화하지 않습니다. 같은 맥락에서 겹친 호출의 결과는 칸별로
    나중에 도착한 값이 이깁니다. 언어·글자 변경이나 지우기 후에는 세대 번호가
    바뀌고, 이전 세대 호출의 콜백은 버립니다.
    """

    def __init__(
        self,
        client: GeminiStreamingAnalysis,
        listener: Callable[[dict], Any] | None = None,
        state: SessionState | None = None,
    ):
        self.client = client
        self.listener = listener
        self.state = state or SessionState()
        self.generation = 0
        self._in_flight = 0

    # ---------- 내부 ----------

    def _set(self, state: SessionState) -> None:
        self.state = state
        if self.listener:
            self.listener(self.snapshot())

    def _new_context(self, state: SessionState) -> None:
        self.generation += 1
        self._in_flight = 0
        self._set(state)

    def _is_current(self, generation: int) -> bool:
        if generation != self.generation:
            logger.debug("이전 세대(%s) 분석 결과 무시 (현재 %s)", generation, self.generation)
            return False
        return True

    def _callbacks(self, generation: int) -> AnalysisCallbacks:
        def _slot(slot: str):
            def handler(value: str) -> None:
                if self._is_current(generation):
                    self._set(merge_result(self.state, slot, value))
            return handler

        def on_raw_response(payload: dict) -> None:
            if self._is_current(generation):
                self._set(set_raw_response(self.state, payload))

        def on_error(exc: Exception) -> None:
            logger.error("분석 콜백 오류: %s", exc)
            if self._is_current(generation):
                self._set(self.state.model_copy(update={"last_error": str(exc)}))

        return AnalysisCallbacks(
            on_stroke_quality=_slot("stroke_quality"),
            on_letter_formation=_slot("letter_formation"),
            on_next_strokes=_slot("next_strokes"),
            on_common_mistakes=_slot("common_mistakes"),
            on_raw_response=on_raw_response,
            on_error=on_error,
        )

    def _begin(self) -> None:
        self._in_flight += 1
        self._set(self.state.model_copy(update={"is_analyzing": True, "last_error": None}))

    def _settle(self, generation: int, error: Exception | None = None) -> None:
        if generation != self.generation:
            return
        self._in_flight = max(0, self._in_flight - 1)
        update: dict[str, Any] = {"is_analyzing": self._in_flight > 0}
        if error is not None:
            update["last_error"] = str(error)
        self._set(self.state.model_copy(update=update))

    # ---------- 공개 API ----------

    @property
    def language_info(self) -> LanguageInfo:
        return language_info_of(self.state)

    def snapshot(self) -> dict:
        return snapshot_of(self.state)

    def on_language_change(self, info: LanguageChangeInfo) -> None:
        self._new_context(apply_language_change(self.state, info))

    def on_character_change(self, info: CharacterChangeInfo) -> None:
        self._new_context(apply_character_change(self.state, info))

    def clear(self) -> None:
        self._new_context(clear_drawing(self.state))

    async def on_stroke_update(self, strokes: list[Stroke]) -> None:
        """스트로크 목록 교체. 그리는 중이 아니면 바로 분석."""
        self._set(apply_stroke_update(self.state, strokes))
        if strokes and not self.state.is_drawing:
            logger.info("새 스트로크 분석 시작 (%d개)", len(strokes))
            await self.analyze_strokes(list(strokes), self.language_info)

    async def on_drawing_state_change(self, is_drawing: bool) -> None:
        """그리기 시작/종료. 종료 시 스트로크가 있으면 분석."""
        self._set(apply_drawing_state(self.state, is_drawing))
        if not is_drawing and self.state.strokes:
            logger.info("그리기 종료, 분석 시작")
            await self.analyze_strokes(list(self.state.strokes), self.language_info)

    async def analyze_strokes(self, strokes: list[Stroke], language_info: LanguageInfo) -> None:
        """이미지 변환 -> 요청 생성 -> Gemini 호출. 실패는 로그 후 다시 던짐."""
        if not strokes:
            return
        generation = self.generation
        self._begin()
        try:
            image_data = await convert_strokes_to_image(strokes)
            prompt = build_analysis_prompt(image_data, language_info)
            await self.client.analyze_with_gemini(prompt, self._callbacks(generation))
        except asyncio.CancelledError:
            self._settle(generation)
            raise
        except Exception as e:
            logger.error("스트로크 분석 실패: %s", e)
            self._settle(generation, e)
            raise
        self._settle(generation)
        logger.info("분석 완료")
