"""
손글씨 연습 세션의 데이터 타입 정의.
드로잉 보드·언어 선택기 등 클라이언트 위젯이 이 JSON 형식으로 이벤트를 보냅니다.
"""
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Stroke(BaseModel):
    """펜을 댄 순간부터 뗄 때까지의 한 획. 기록된 뒤에는 바뀌지 않음."""
    model_config = ConfigDict(frozen=True)

    points: list[tuple[float, float]] = Field(default_factory=list)


class LanguageChangeInfo(BaseModel):
    language: str
    level: str
    character: str | None = None


class CharacterChangeInfo(BaseModel):
    character: str | None = None
    level: str


class LanguageInfo(BaseModel):
    """현재 연습 맥락 (언어·문자 체계·난이도·글자). 읽기 전용."""
    model_config = ConfigDict(frozen=True)

    language: str
    script: str = "Unknown"
    level: str
    character: str | None = None


RESULT_SLOTS = ("stroke_quality", "letter_formation", "next_strokes", "common_mistakes")


class AnalysisResults(BaseModel):
    """피드백 4칸. 새로 도착한 값은 자기 칸만 덮어씀."""
    model_config = ConfigDict(frozen=True)

    stroke_quality: str | None = None
    letter_formation: str | None = None
    next_strokes: str | None = None
    common_mistakes: str | None = None

    def merge(self, slot: str, value: str) -> "AnalysisResults":
        if slot not in RESULT_SLOTS:
            raise ValueError(f"Unknown analysis slot: {slot}")
        return self.model_copy(update={slot: value})


# ---------- 클라이언트 -> 서버 이벤트 ----------

class LanguageChangeEvent(LanguageChangeInfo):
    type: Literal["languageChange"] = "languageChange"


class CharacterChangeEvent(CharacterChangeInfo):
    type: Literal["characterChange"] = "characterChange"


class StrokeUpdateEvent(BaseModel):
    type: Literal["strokeUpdate"] = "strokeUpdate"
    strokes: list[Stroke] = Field(default_factory=list)


class DrawingStateChangeEvent(BaseModel):
    type: Literal["drawingStateChange"] = "drawingStateChange"
    is_drawing: bool


class ClearEvent(BaseModel):
    type: Literal["clear"] = "clear"


SessionEvent = Annotated[
    LanguageChangeEvent | CharacterChangeEvent | StrokeUpdateEvent | DrawingStateChangeEvent | ClearEvent,
    Field(discriminator="type"),
]

_event_adapter = TypeAdapter(SessionEvent)


def parse_event(data: dict) -> SessionEvent:
    """웹소켓으로 받은 dict를 이벤트 모델로 변환. 잘못된 형식이면 ValidationError."""
    return _event_adapter.validate_python(data)
