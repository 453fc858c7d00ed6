"""
Gemini 분석 클라이언트 검증 (httpx.MockTransport로 네트워크 없이).
"""
import asyncio
import json

import httpx
import pytest

from handwriting.ai_bridge import (
    AnalysisCallbacks,
    AnalysisError,
    GeminiStreamingAnalysis,
    collect_analysis,
    parse_quality_score,
    parse_sections,
    trim_partial_header,
)

REPLY = """**Current Stroke Quality**
Lines are steady.

**Letter Formation**
The apex is slightly off-center.

**Next Expected Strokes**
Add the horizontal crossbar.

**Common Mistakes to Avoid**
Do not make the legs uneven.

**Overall Quality Score (%)**
78%
"""

PROMPT = {"contents": [{"parts": [{"text": "hi"}]}], "generationConfig": {}}


def _payload(text: str) -> dict:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}, "finishReason": "STOP"}]}


def _sse(chunks: list[dict]) -> bytes:
    return "".join(f"data: {json.dumps(c)}\r\n\r\n" for c in chunks).encode()


class Recorder:
    def __init__(self):
        self.events: list[tuple[str, object]] = []

    def callbacks(self) -> AnalysisCallbacks:
        def rec(name):
            return lambda value: self.events.append((name, value))
        return AnalysisCallbacks(
            on_stroke_quality=rec("stroke_quality"),
            on_letter_formation=rec("letter_formation"),
            on_next_strokes=rec("next_strokes"),
            on_common_mistakes=rec("common_mistakes"),
            on_raw_response=rec("raw"),
            on_error=rec("error"),
        )

    def last(self, name):
        values = [v for n, v in self.events if n == name]
        return values[-1] if values else None

    def count(self, name):
        return sum(1 for n, _ in self.events if n == name)


def _client(handler, streaming: bool, api_key: str = "test-key") -> GeminiStreamingAnalysis:
    return GeminiStreamingAnalysis(
        api_key,
        model="gemini-test",
        streaming=streaming,
        base_url="https://gemini.test/v1beta",
        transport=httpx.MockTransport(handler),
    )


def test_parse_sections_maps_headers_to_slots():
    sections = parse_sections(REPLY)
    assert sections["stroke_quality"] == "Lines are steady."
    assert sections["letter_formation"] == "The apex is slightly off-center."
    assert sections["next_strokes"] == "Add the horizontal crossbar."
    assert sections["common_mistakes"] == "Do not make the legs uneven."
    assert sections["overall_score"] == "78%"


def test_parse_sections_tolerates_markdown_variants():
    text = "## **Current Stroke Quality:**\nGood.\n1. **Letter Formation**: **Note** keep it tall\n"
    sections = parse_sections(text)
    assert sections["stroke_quality"] == "Good."
    assert sections["letter_formation"] == "**Note** keep it tall"


def test_parse_quality_score():
    assert parse_quality_score(REPLY) == 78.0
    assert parse_quality_score("**Overall Quality Score (%)**\n85/100") == 85.0
    assert parse_quality_score("no score here") is None
    assert parse_quality_score(None) is None


def test_single_shot_fires_each_callback_once():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("x-goog-api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_payload(REPLY))

    rec = Recorder()
    asyncio.run(_client(handler, streaming=False).analyze_with_gemini(PROMPT, rec.callbacks()))

    assert seen["url"] == "https://gemini.test/v1beta/models/gemini-test:generateContent"
    assert seen["key"] == "test-key"
    assert seen["body"] == PROMPT
    for slot in ("stroke_quality", "letter_formation", "next_strokes", "common_mistakes", "raw"):
        assert rec.count(slot) == 1
    assert rec.last("next_strokes") == "Add the horizontal crossbar."
    assert rec.count("error") == 0


def test_streaming_delivers_incremental_updates_and_aggregated_raw():
    half = len(REPLY) // 2
    chunks = [_payload(REPLY[:half]), _payload(REPLY[half:])]
    chunks[-1]["usageMetadata"] = {"totalTokenCount": 42}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith(":streamGenerateContent")
        assert request.url.params["alt"] == "sse"
        return httpx.Response(200, content=_sse(chunks), headers={"content-type": "text/event-stream"})

    rec = Recorder()
    asyncio.run(_client(handler, streaming=True).analyze_with_gemini(PROMPT, rec.callbacks()))

    assert rec.last("stroke_quality") == "Lines are steady."
    assert rec.last("common_mistakes") == "Do not make the legs uneven."
    raw = rec.last("raw")
    assert raw["candidates"][0]["content"]["parts"][0]["text"] == REPLY
    assert raw["usageMetadata"] == {"totalTokenCount": 42}
    assert rec.count("raw") == 1
    assert rec.count("error") == 0


def test_http_error_raises_before_any_callback():
    def handler(request):
        return httpx.Response(429, json={"error": {"message": "quota"}})

    rec = Recorder()
    for streaming in (False, True):
        with pytest.raises(AnalysisError) as exc:
            asyncio.run(_client(handler, streaming=streaming).analyze_with_gemini(PROMPT, rec.callbacks()))
        assert exc.value.status_code == 429
    assert rec.events == []


def test_connection_failure_raises_analysis_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(AnalysisError):
        asyncio.run(_client(handler, streaming=False).analyze_with_gemini(PROMPT, AnalysisCallbacks()))


def test_missing_api_key_raises():
    with pytest.raises(AnalysisError):
        asyncio.run(_client(lambda r: httpx.Response(200), streaming=False, api_key="").analyze_with_gemini(
            PROMPT, AnalysisCallbacks()))


def test_blocked_stream_reports_error_once_and_stops():
    chunks = [_payload("**Current Stroke Quality**\nOk so far"), {"promptFeedback": {"blockReason": "SAFETY"}},
              _payload("\n**Letter Formation**\nlate")]

    def handler(request):
        return httpx.Response(200, content=_sse(chunks))

    rec = Recorder()
    asyncio.run(_client(handler, streaming=True).analyze_with_gemini(PROMPT, rec.callbacks()))

    assert rec.count("error") == 1
    assert rec.events[-1][0] == "error"
    assert rec.count("letter_formation") == 0
    assert rec.count("raw") == 0


def test_malformed_single_shot_reply_goes_to_error_callback():
    def handler(request):
        return httpx.Response(200, content=b"not json")

    rec = Recorder()
    asyncio.run(_client(handler, streaming=False).analyze_with_gemini(PROMPT, rec.callbacks()))
    assert [n for n, _ in rec.events] == ["error"]


def test_collect_analysis_returns_results_and_score():
    def handler(request):
        return httpx.Response(200, json=_payload(REPLY))

    result = asyncio.run(collect_analysis(_client(handler, streaming=False), PROMPT))
    assert result["analysis_results"]["letter_formation"] == "The apex is slightly off-center."
    assert result["quality_score"] == 78.0
    assert result["raw_response"] == _payload(REPLY)


def test_quality_score_stays_inside_score_section():
    text = "**Current Stroke Quality**\nAbout 30% of the line wobbles.\n\n**Overall Quality Score (%)**\nEighty-five percent"
    assert parse_quality_score(text) is None
    assert parse_quality_score("**Current Stroke Quality**\n30% wobbles\n\n**Overall Quality Score (%)**\n") is None
    # 점수 항목이 없으면 전체에서 찾음
    assert parse_quality_score("Score: 72%") == 72.0


def test_quality_score_does_not_match_inside_longer_numbers():
    assert parse_quality_score("**Overall Quality Score (%)**\n1000%") is None
    assert parse_quality_score("**Overall Quality Score (%)**\n1.5 of 2, 75%") == 75.0


def test_trim_partial_header():
    assert trim_partial_header("Steady.\n\n**Letter Form") == "Steady.\n\n"
    assert trim_partial_header("Steady.\n\n**Letter Formation*") == "Steady.\n\n"
    assert trim_partial_header("Steady.\n\n#") == "Steady.\n\n"
    assert trim_partial_header("Steady.\nStill wri") == "Steady.\nStill wri"
    assert trim_partial_header("Steady.\n* bullet") == "Steady.\n* bullet"


def test_streamed_header_split_across_chunks_does_not_leak():
    chunks = [_payload("**Current Stroke Quality**\nSteady.\n\n**Letter Form"), _payload("ation**\nTall.")]

    def handler(request):
        return httpx.Response(200, content=_sse(chunks))

    rec = Recorder()
    asyncio.run(_client(handler, streaming=True).analyze_with_gemini(PROMPT, rec.callbacks()))

    assert [v for n, v in rec.events if n == "stroke_quality"] == ["Steady."]
    assert rec.last("letter_formation") == "Tall."
    assert rec.count("error") == 0


def test_empty_candidates_go_to_error_callback():
    def single(request):
        return httpx.Response(200, json={"candidates": []})

    def stream(request):
        return httpx.Response(200, content=_sse([{"candidates": []}]))

    for handler, streaming in ((single, False), (stream, True)):
        rec = Recorder()
        asyncio.run(_client(handler, streaming=streaming).analyze_with_gemini(PROMPT, rec.callbacks()))
        assert [n for n, _ in rec.events] == ["error"]


def test_empty_stream_goes_to_error_callback():
    def handler(request):
        return httpx.Response(200, content=b"")

    rec = Recorder()
    asyncio.run(_client(handler, streaming=True).analyze_with_gemini(PROMPT, rec.callbacks()))
    assert [n for n, _ in rec.events] == ["error"]


def test_malformed_sse_chunk_stops_the_stream():
    body = _sse([_payload("**Current Stroke Quality**\nOk")]) + b"data: {broken\r\n\r\n" + _sse([_payload(" more")])

    def handler(request):
        return httpx.Response(200, content=body)

    rec = Recorder()
    asyncio.run(_client(handler, streaming=True).analyze_with_gemini(PROMPT, rec.callbacks()))
    assert [n for n, _ in rec.events] == ["stroke_quality", "error"]


class BrokenStream(httpx.AsyncByteStream):
    """첫 조각 뒤에 연결이 끊기는 응답 본문."""

    def __init__(self, first: bytes):
        self.first = first

    async def __aiter__(self):
        yield self.first
        raise httpx.ReadError("connection reset")


def test_read_error_mid_stream_goes_to_error_callback():
    first = _sse([_payload("**Current Stroke Quality**\nOk so far\n")])

    def handler(request):
        return httpx.Response(200, stream=BrokenStream(first))

    rec = Recorder()
    asyncio.run(_client(handler, streaming=True).analyze_with_gemini(PROMPT, rec.callbacks()))
    assert rec.count("error") == 1
    assert isinstance(rec.last("error"), httpx.ReadError)
    assert rec.count("raw") == 0
