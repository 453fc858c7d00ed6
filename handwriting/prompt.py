"""
분석 요청 생성: 손글씨 이미지 + 언어 맥락 -> Gemini REST 요청 본문.
"""
from .strokes import LanguageInfo

IMAGE_MIME_TYPE = "image/png"

# 고정 생성 파라미터 (계산하지 않음)
GENERATION_CONFIG = {
    "temperature": 0.7,
    "topK": 40,
    "topP": 0.95,
    "maxOutputTokens": 1024,
}

SECTION_HEADERS = (
    "Current Stroke Quality",
    "Letter Formation",
    "Next Expected Strokes",
    "Common Mistakes to Avoid",
    "Overall Quality Score (%)",
)

ANALYSIS_TEMPLATE = """Analyze this handwritten {language} character "{character}"
({level} level). Provide detailed feedback on:
1. Stroke quality and precision
2. Character formation and proportions
3. Next expected strokes or completions
4. Common mistakes and suggestions for improvement.

Focus on script-specific features for the {language} writing system.

Additionally, provide an overall quality score of the handwriting as a percentage (0-100%).

Format your response with these exact headers:
{headers}"""


def image_payload(image_data_url: str) -> str:
    """data URL에서 'data:image/png;base64,' 접두어를 떼고 base64 본문만 반환."""
    if "," not in image_data_url:
        raise ValueError("이미지 data URL 형식이 아닙니다 (',' 없음).")
    return image_data_url.split(",", 1)[1]


def analysis_instruction(language_info: LanguageInfo) -> str:
    headers = "\n".join(f"**{h}**" for h in SECTION_HEADERS)
    return ANALYSIS_TEMPLATE.format(
        language=language_info.language,
        character=language_info.character,
        level=language_info.level,
        headers=headers,
    )


def build_analysis_prompt(image_data_url: str, language_info: LanguageInfo) -> dict:
    """이미지 파트와 지시문 파트로 된 요청과 고정 generationConfig를 묶어 반환."""
    return {
        "contents": [
            {
                "parts": [
                    {
                        "inline_data": {
                            "mime_type": IMAGE_MIME_TYPE,
                            "data": image_payload(image_data_url),
                        },
                    },
                    {"text": analysis_instruction(language_info)},
                ],
            },
        ],
        "generationConfig": dict(GENERATION_CONFIG),
    }
