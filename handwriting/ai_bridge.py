"""
AI 브릿지: 손글씨 분석 요청을 Gemini에 보내고 응답을 항목별 콜백으로 전달.
스트리밍(SSE)과 단일 응답 두 방식을 지원합니다.
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from . import config
from .strokes import RESULT_SLOTS

logger = logging.getLogger(__name__)


class AnalysisError(ValueError):
    """요청 자체를 보낼 수 없거나 응답을 쓸 수 없을 때."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class AnalysisCallbacks:
    on_stroke_quality: Callable[[str], None] | None = None
    on_letter_formation: Callable[[str], None] | None = None
    on_next_strokes: Callable[[str], None] | None = None
    on_common_mistakes: Callable[[str], None] | None = None
    on_raw_response: Callable[[dict], None] | None = None
    on_error: Callable[[Exception], None] | None = None

    def for_slot(self, slot: str) -> Callable[[str], None] | None:
        return getattr(self, f"on_{slot}", None)


# ---------- 응답 파싱 ----------

# 프롬프트가 요구하는 헤더 -> 결과 칸
SECTION_SLOTS = {
    "current stroke quality": "stroke_quality",
    "letter formation": "letter_formation",
    "next expected strokes": "next_strokes",
    "common mistakes to avoid": "common_mistakes",
    "overall quality score (%)": "overall_score",
    "overall quality score": "overall_score",
}

_HEADER_RE = re.compile(
    r"^[ \t]*(?:#{1,6}[ \t]*)?(?:\d+\.[ \t]*)?\*\*(?P<title>[^*\n]+?)\*\*[ \t]*:?[ \t]*",
    re.MULTILINE,
)
_PERCENT_RE = re.compile(r"(?<![\d.])(\d{1,3}(?:\.\d+)?)\s*%")
_OUT_OF_100_RE = re.compile(r"(?<![\d.])(\d{1,3}(?:\.\d+)?)\s*/\s*100\b")
# 스트림 중간에 끝까지 오지 않은 헤더 줄 ('**Letter Form', '#', '1.' 등)
_PARTIAL_HEADER_RE = re.compile(r"[ \t]*(?:#{1,6}[ \t]*)?(?:\d+\.?[ \t]*)?(?:\*(?:\*[^*\n]*\*?)?)?")


def _normalize_title(title: str) -> str:
    return " ".join(title.strip().rstrip(":").split()).lower()


def parse_sections(text: str) -> dict[str, str]:
    """'**헤더**' 기준으로 응답을 나눠 {칸 이름: 본문} 반환. 알 수 없는 굵은 글씨는 본문으로 남김."""
    headers = []
    for m in _HEADER_RE.finditer(text or ""):
        slot = SECTION_SLOTS.get(_normalize_title(m.group("title")))
        if slot:
            headers.append((slot, m.start(), m.end()))
    sections: dict[str, str] = {}
    for i, (slot, _start, end) in enumerate(headers):
        stop = headers[i + 1][1] if i + 1 < len(headers) else len(text)
        body = text[end:stop].strip()
        if body:
            sections[slot] = body
    return sections


def parse_quality_score(text: str | None) -> float | None:
    """응답에서 전체 점수(0~100%)를 찾음. 점수 항목이 있으면 그 안에서만 찾음."""
    if not text:
        return None
    sections = parse_sections(text)
    if "overall_score" in sections:
        source = sections["overall_score"]
    elif any(_normalize_title(m.group("title")) in ("overall quality score (%)", "overall quality score")
             for m in _HEADER_RE.finditer(text)):
        # 헤더는 있는데 본문이 비어 있음
        return None
    else:
        source = text
    for pattern in (_PERCENT_RE, _OUT_OF_100_RE):
        m = pattern.search(source)
        if m:
            value = float(m.group(1))
            if 0 <= value <= 100:
                return value
    return None


def trim_partial_header(text: str) -> str:
    """마지막 줄이 아직 덜 온 헤더처럼 보이면 그 줄을 잘라냄."""
    start = text.rfind("\n") + 1
    if _PARTIAL_HEADER_RE.fullmatch(text[start:]):
        return text[:start]
    return text


BLOCKING_FINISH_REASONS = ("SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII")


def extract_text(payload: dict) -> str:
    """generateContent 응답(또는 스트림 조각)에서 텍스트만 이어 붙임."""
    if not isinstance(payload, dict):
        raise AnalysisError("Gemini 응답이 JSON 객체가 아닙니다.")
    feedback = payload.get("promptFeedback") or {}
    if feedback.get("blockReason"):
        raise AnalysisError(f"Gemini가 요청을 차단했습니다: {feedback['blockReason']}")
    candidates = payload.get("candidates") or []
    if not candidates:
        return ""
    first = candidates[0] or {}
    parts = (first.get("content") or {}).get("parts") or []
    text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
    reason = first.get("finishReason")
    if not text and reason in BLOCKING_FINISH_REASONS:
        raise AnalysisError(f"Gemini가 응답을 중단했습니다: {reason}")
    return text


def _check_api_error(resp: httpx.Response) -> None:
    """HTTP 오류를 읽기 쉬운 AnalysisError로 변환."""
    if not resp.is_error:
        return
    status = resp.status_code
    body = ""
    try:
        body = (resp.text or "")[:300]
    except httpx.ResponseNotRead:
        pass
    if status == 400:
        raise AnalysisError(f"[400] Gemini가 요청 형식을 거부했습니다: {body!r}", status)
    if status in (401, 403):
        raise AnalysisError(
            f"[{status}] Gemini API 키가 유효하지 않거나 권한이 없습니다. GEMINI_API_KEY를 확인하세요.",
            status,
        )
    if status == 404:
        raise AnalysisError("[404] Gemini 모델을 찾을 수 없습니다. GEMINI_MODEL 값을 확인하세요.", status)
    if status == 429:
        raise AnalysisError("[429] Gemini 사용 한도 초과 또는 요청 제한. 잠시 후 다시 시도하세요.", status)
    if status >= 500:
        raise AnalysisError(f"[{status}] Gemini 서버 오류. 잠시 후 재시도하거나 서비스 상태를 확인하세요.", status)
    raise AnalysisError(f"[{status}] Gemini 요청 실패: {body!r}", status)


class _Dispatcher:
    """한 번의 분석 호출에 대한 콜백 전달. 오류 콜백 이후에는 아무것도 전달하지 않음."""

    def __init__(self, callbacks: AnalysisCallbacks):
        self.callbacks = callbacks
        self.sent: dict[str, str] = {}
        self.failed = False

    def sections(self, text: str, final: bool = True) -> None:
        if self.failed:
            return
        parsed = parse_sections(text if final else trim_partial_header(text))
        for slot in RESULT_SLOTS:
            value = parsed.get(slot)
            if not value or self.sent.get(slot) == value:
                continue
            self.sent[slot] = value
            handler = self.callbacks.for_slot(slot)
            if handler:
                handler(value)

    def raw(self, payload: dict) -> None:
        if not self.failed and self.callbacks.on_raw_response:
            self.callbacks.on_raw_response(payload)

    def error(self, exc: Exception) -> None:
        if self.failed:
            return
        self.failed = True
        logger.warning("Gemini 분석 응답 처리 실패: %s", exc)
        if self.callbacks.on_error:
            self.callbacks.on_error(exc)


def _aggregate_payload(last_chunk: dict, text: str) -> dict:
    """스트림 조각들을 단일 응답과 같은 모양으로 합침."""
    candidate = ((last_chunk.get("candidates") or [{}])[0]) or {}
    merged: dict[str, Any] = {
        "candidates": [
            {
                "content": {"role": "model", "parts": [{"text": text}]},
                "finishReason": candidate.get("finishReason"),
            }
        ],
    }
    for key in ("usageMetadata", "modelVersion"):
        if last_chunk.get(key) is not None:
            merged[key] = last_chunk[key]
    return merged


class GeminiStreamingAnalysis:
    """세션마다 하나씩 두고 재사용하는 Gemini 분석 클라이언트."""

    def __init__(
        self,
        api_key: str,
        model: str | None = None,
        streaming: bool | None = None,
        timeout: float | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key or ""
        self.model = (model or "").strip() or config.GEMINI_MODEL
        self.streaming = config.GEMINI_STREAMING if streaming is None else streaming
        self.timeout = timeout or config.GEMINI_TIMEOUT_SEC
        self.base_url = (base_url or config.GEMINI_BASE_URL).rstrip("/")
        self._transport = transport

    def _headers(self) -> dict:
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

    def _endpoint(self, method: str) -> str:
        return f"{self.base_url}/models/{self.model}:{method}"

    async def analyze_with_gemini(self, prompt: dict, callbacks: AnalysisCallbacks) -> None:
        """
        분석 요청 1회. 모든 콜백 호출이 끝난 뒤 반환.
        요청 자체를 보낼 수 없으면(키 없음, 연결 실패, HTTP 오류) AnalysisError.
        """
        if not self.api_key:
            raise AnalysisError("Gemini API 키가 필요합니다. GEMINI_API_KEY 환경변수를 설정하세요.")
        dispatch = _Dispatcher(callbacks)
        logger.info("Gemini 분석 요청: model=%s streaming=%s", self.model, self.streaming)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                if self.streaming:
                    await self._stream(client, prompt, dispatch)
                else:
                    await self._single(client, prompt, dispatch)
        except httpx.HTTPError as e:
            logger.error("Gemini 연결 실패: %s", e)
            raise AnalysisError(f"Gemini에 연결할 수 없습니다: {e}") from e

    async def _single(self, client: httpx.AsyncClient, prompt: dict, dispatch: _Dispatcher) -> None:
        resp = await client.post(self._endpoint("generateContent"), headers=self._headers(), json=prompt)
        _check_api_error(resp)
        try:
            payload = resp.json()
            text = extract_text(payload)
            if not text.strip():
                raise AnalysisError("Gemini 응답에 텍스트가 없습니다.")
        except ValueError as e:
            dispatch.error(e)
            return
        dispatch.sections(text)
        dispatch.raw(payload)

    async def _stream(self, client: httpx.AsyncClient, prompt: dict, dispatch: _Dispatcher) -> None:
        async with client.stream(
            "POST",
            self._endpoint("streamGenerateContent"),
            params={"alt": "sse"},
            headers=self._headers(),
            json=prompt,
        ) as resp:
            if resp.is_error:
                await resp.aread()
                _check_api_error(resp)
            text = ""
            last_chunk = None
            lines = resp.aiter_lines()
            while True:
                try:
                    line = await anext(lines)
                except StopAsyncIteration:
                    break
                except httpx.HTTPError as e:
                    dispatch.error(e)
                    return
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if not data:
                    continue
                try:
                    chunk = json.loads(data)
                    piece = extract_text(chunk)
                except ValueError as e:
                    dispatch.error(e)
                    return
                last_chunk = chunk
                if piece:
                    text += piece
                    dispatch.sections(text, final=False)
        if last_chunk is None or not text.strip():
            dispatch.error(AnalysisError("Gemini 스트림이 텍스트 없이 끝났습니다."))
            return
        dispatch.sections(text)
        dispatch.raw(_aggregate_payload(last_chunk, text))


async def collect_analysis(service: GeminiStreamingAnalysis, prompt: dict) -> dict:
    """콜백 대신 결과를 모아서 반환 (REST 단건 분석용). 응답 오류도 AnalysisError로 올림."""
    results: dict[str, str] = {}
    collected: dict[str, Any] = {"raw": None, "error": None}

    def _setter(slot):
        return lambda value: results.__setitem__(slot, value)

    callbacks = AnalysisCallbacks(
        on_stroke_quality=_setter("stroke_quality"),
        on_letter_formation=_setter("letter_formation"),
        on_next_strokes=_setter("next_strokes"),
        on_common_mistakes=_setter("common_mistakes"),
        on_raw_response=lambda payload: collected.__setitem__("raw", payload),
        on_error=lambda exc: collected.__setitem__("error", exc),
    )
    await service.analyze_with_gemini(prompt, callbacks)
    if collected["error"] is not None:
        raise AnalysisError(str(collected["error"])) from collected["error"]
    raw = collected["raw"]
    return {
        "analysis_results": results,
        "raw_response": raw,
        "quality_score": parse_quality_score(extract_text(raw)) if raw else None,
    }
