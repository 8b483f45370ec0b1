"""
Language Detection

Per-request language detection using langdetect + Unicode script fallback.
Used to pick the prompt template language and to decide when a translation
request is a short dictionary-style lookup.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from langdetect import DetectorFactory, LangDetectException, detect_langs

logger = logging.getLogger("marginalia.common.language")

# Seed langdetect for deterministic results
DetectorFactory.seed = 0

# Prompt template languages shipped with the package
SUPPORTED_PROMPT_LANGUAGES = ("en", "zh")
DEFAULT_PROMPT_LANGUAGE = "en"

# Matches any Hangul, Kana, or CJK character
_NON_LATIN_RE = re.compile(
    r'[ᄀ-ᇿ぀-ゟ゠-ヿ㄰-㆏'
    r'㐀-䶿一-鿿가-힯]'
)
_CJK_IDEOGRAPH_RE = re.compile(r'[一-鿿]')

# Dictionary lookup thresholds
DICT_MAX_CJK_CHARS = 4
DICT_MAX_TOKENS = 3

_SCRIPT_RANGES = [
    (0xAC00, 0xD7AF, "Hangul", "ko"),    # Hangul Syllables
    (0x1100, 0x11FF, "Hangul", "ko"),    # Hangul Jamo
    (0x3130, 0x318F, "Hangul", "ko"),    # Hangul Compatibility Jamo
    (0x3040, 0x309F, "Kana", "ja"),      # Hiragana
    (0x30A0, 0x30FF, "Kana", "ja"),      # Katakana
    (0x4E00, 0x9FFF, "CJK", "zh"),       # CJK Unified Ideographs
    (0x3400, 0x4DBF, "CJK", "zh"),       # CJK Extension A
]


@dataclass(frozen=True)
class LanguageInfo:
    """Detected language information"""
    code: str           # ISO 639-1: "en", "zh", "ja"
    confidence: float   # 0.0~1.0
    script: str         # "Latin", "Hangul", "CJK", "Kana", "Mixed"

    @property
    def prompt_language(self) -> str:
        """Closest prompt template language for this text"""
        if self.code.startswith("zh"):
            return "zh"
        return DEFAULT_PROMPT_LANGUAGE


def _detect_script(text: str) -> tuple[str, Optional[str]]:
    """Detect dominant script from Unicode character ranges.

    Returns:
        (script_name, language_code) or ("Latin", None) for ASCII-dominant text
    """
    script_counts: dict[str, int] = {}
    total = 0

    for ch in text:
        if ch.isspace() or ch in '.,!?;:"\'-()[]{}':
            continue
        total += 1
        cp = ord(ch)
        script = "Latin"
        for start, end, name, _ in _SCRIPT_RANGES:
            if start <= cp <= end:
                script = name
                break
        script_counts[script] = script_counts.get(script, 0) + 1

    if total == 0:
        return "Latin", None

    non_latin = {k: v for k, v in script_counts.items() if k != "Latin"}
    if not non_latin:
        return "Latin", None

    # Japanese text mixes CJK + Kana
    if "Kana" in non_latin:
        return "Kana", "ja"

    dominant = max(non_latin, key=non_latin.get)
    if len(non_latin) > 1 and sorted(non_latin.values())[-2] > total * 0.2:
        return "Mixed", None
    if non_latin[dominant] <= total * 0.15:
        return "Latin", None

    lang = "ko" if dominant == "Hangul" else "zh"
    return dominant, lang


def detect_language(text: str) -> LanguageInfo:
    """Detect language of input text.

    Uses langdetect with Unicode script-based fallback. Short texts
    (<10 chars) are classified by script alone.
    """
    if not text or not text.strip():
        return LanguageInfo(code="en", confidence=1.0, script="Latin")

    cleaned = text.strip()
    script, script_lang = _detect_script(cleaned)

    if len(cleaned) < 10:
        if script_lang:
            return LanguageInfo(code=script_lang, confidence=0.6, script=script)
        return LanguageInfo(code="en", confidence=0.5, script="Latin")

    try:
        results = detect_langs(cleaned)
    except LangDetectException as e:
        logger.debug("langdetect failed: %s", e)
        results = []

    if results:
        top = results[0]
        # Pure Latin-script text is treated as English; langdetect often
        # misreads short English as fr/nl/af.
        if top.lang != "en" and not _NON_LATIN_RE.search(cleaned):
            return LanguageInfo(code="en", confidence=0.5, script="Latin")
        return LanguageInfo(code=top.lang, confidence=round(top.prob, 4), script=script)

    if script_lang:
        return LanguageInfo(code=script_lang, confidence=0.7, script=script)
    return LanguageInfo(code="en", confidence=0.5, script="Latin")


def resolve_prompt_language(lang: Optional[str], text: str = "") -> str:
    """Pick the prompt template language.

    An explicit ``lang`` wins; None or "auto" detects the language from
    ``text``.
    """
    if lang and lang.lower() != "auto":
        lang = lang.lower()
        if lang in SUPPORTED_PROMPT_LANGUAGES:
            return lang
        if lang.startswith("zh"):
            return "zh"
        return DEFAULT_PROMPT_LANGUAGE
    if not text:
        return DEFAULT_PROMPT_LANGUAGE
    return detect_language(text).prompt_language


def is_dictionary_lookup(text: str) -> bool:
    """True when a translation request looks like a single word or short phrase.

    CJK input of at most four characters, or other input of at most three
    whitespace-separated tokens.
    """
    raw = (text or "").strip()
    if not raw:
        return False
    if _CJK_IDEOGRAPH_RE.search(raw):
        return len(raw) <= DICT_MAX_CJK_CHARS
    return len(raw.split()) <= DICT_MAX_TOKENS
