"""
연습 가능한 언어 목록. 언어 선택기와 분석 요청이 같은 표를 씀.
"""
from .strokes import LanguageInfo

UNKNOWN_SCRIPT = "Unknown"

LANGUAGE_DATA: dict[str, dict] = {
    "english": {
        "name": "English",
        "script": "Latin",
        "levels": {
            "beginner": ["A", "B", "C", "D", "E", "F", "G", "H", "I", "J", "K", "L", "M"],
            "intermediate": ["a", "b", "c", "d", "e", "f", "g", "h", "i", "j", "k", "l", "m"],
            "advanced": ["Q", "R", "S", "W", "X", "Z", "q", "r", "s", "w", "x", "z"],
        },
    },
    "hindi": {
        "name": "Hindi",
        "script": "Devanagari",
        "levels": {
            "beginner": ["अ", "आ", "इ", "ई", "उ", "ऊ", "ए", "ऐ", "ओ", "औ"],
            "intermediate": ["क", "ख", "ग", "घ", "च", "छ", "ज", "झ", "ट", "ठ"],
            "advanced": ["क्ष", "त्र", "ज्ञ", "श्र", "द्ध", "ह्म"],
        },
    },
    "japanese": {
        "name": "Japanese",
        "script": "Hiragana",
        "levels": {
            "beginner": ["あ", "い", "う", "え", "お", "か", "き", "く", "け", "こ"],
            "intermediate": ["さ", "し", "す", "せ", "そ", "た", "ち", "つ", "て", "と"],
            "advanced": ["日", "本", "人", "山", "川", "木", "水", "火"],
        },
    },
    "chinese": {
        "name": "Chinese",
        "script": "Han",
        "levels": {
            "beginner": ["一", "二", "三", "人", "口", "大", "小", "中"],
            "intermediate": ["天", "木", "水", "火", "山", "月", "日", "田"],
            "advanced": ["爱", "学", "写", "龙", "鹰", "飞"],
        },
    },
    "korean": {
        "name": "Korean",
        "script": "Hangul",
        "levels": {
            "beginner": ["ㄱ", "ㄴ", "ㄷ", "ㄹ", "ㅁ", "ㅂ", "ㅅ", "ㅇ", "ㅈ", "ㅎ"],
            "intermediate": ["가", "나", "다", "라", "마", "바", "사", "아"],
            "advanced": ["한", "글", "읽", "닭", "없", "흙"],
        },
    },
    "arabic": {
        "name": "Arabic",
        "script": "Arabic",
        "levels": {
            "beginner": ["ا", "ب", "ت", "ث", "ج", "ح", "خ"],
            "intermediate": ["د", "ذ", "ر", "ز", "س", "ش", "ص", "ض"],
            "advanced": ["ط", "ظ", "ع", "غ", "ف", "ق", "ك", "ه"],
        },
    },
    "russian": {
        "name": "Russian",
        "script": "Cyrillic",
        "levels": {
            "beginner": ["А", "Б", "В", "Г", "Д", "Е", "Ж", "З"],
            "intermediate": ["И", "К", "Л", "М", "Н", "П", "Р", "С"],
            "advanced": ["Ф", "Ц", "Ч", "Ш", "Щ", "Ы", "Э", "Ю", "Я"],
        },
    },
    "greek": {
        "name": "Greek",
        "script": "Greek",
        "levels": {
            "beginner": ["Α", "Β", "Γ", "Δ", "Ε", "Ζ", "Η", "Θ"],
            "intermediate": ["α", "β", "γ", "δ", "ε", "ζ", "η", "θ"],
            "advanced": ["ξ", "ς", "ψ", "ω", "λ", "μ"],
        },
    },
}


def get_script(language: str) -> str:
    entry = LANGUAGE_DATA.get(language)
    if not entry:
        return UNKNOWN_SCRIPT
    return entry.get("script") or UNKNOWN_SCRIPT


def get_language_info(language: str, level: str, character: str | None) -> LanguageInfo:
    """현재 선택으로 LanguageInfo 구성. 표에 없는 언어면 script='Unknown'."""
    return LanguageInfo(language=language, script=get_script(language), level=level, character=character)


def characters_for(language: str, level: str) -> list[str]:
    """언어·난이도별 연습 글자. 없으면 빈 목록."""
    entry = LANGUAGE_DATA.get(language) or {}
    return list((entry.get("levels") or {}).get(level, []))
