"""
Tests for Language Detection

Covers script fallback, prompt language resolution and the dictionary
lookup heuristic used by translation.
"""

import pytest


class TestLanguageInfo:
    """Tests for LanguageInfo dataclass"""

    def test_chinese_maps_to_zh_prompts(self):
        from marginalia.common.language import LanguageInfo

        assert LanguageInfo(code="zh-cn", confidence=0.9, script="CJK").prompt_language == "zh"

    def test_other_languages_use_english_prompts(self):
        from marginalia.common.language import LanguageInfo

        assert LanguageInfo(code="ko", confidence=0.9, script="Hangul").prompt_language == "en"

    def test_language_info_is_frozen(self):
        from marginalia.common.language import LanguageInfo

        info = LanguageInfo(code="en", confidence=1.0, script="Latin")
        with pytest.raises(AttributeError):
            info.code = "zh"


class TestDetectLanguage:
    """Tests for detect_language function"""

    def test_detect_english(self):
        from marginalia.common.language import detect_language

        result = detect_language("We decided to keep our reading notes in plain Markdown files")
        assert result.code == "en"

    def test_short_chinese_uses_script(self):
        from marginalia.common.language import detect_language

        result = detect_language("你好")
        assert result.code == "zh"
        assert result.script == "CJK"

    def test_short_japanese_uses_script(self):
        from marginalia.common.language import detect_language

        assert detect_language("ありがとう").code == "ja"

    def test_empty_text_defaults_to_english(self):
        from marginalia.common.language import detect_language

        result = detect_language("   ")
        assert result.code == "en"
        assert result.confidence == 1.0

    def test_short_latin_defaults_to_english(self):
        from marginalia.common.language import detect_language

        assert detect_language("bonjour").code == "en"


class TestResolvePromptLanguage:
    def test_explicit_language(self):
        from marginalia.common.language import resolve_prompt_language

        assert resolve_prompt_language("zh", "hello there") == "zh"
        assert resolve_prompt_language("zh-TW") == "zh"
        assert resolve_prompt_language("de") == "en"

    def test_auto_detects_from_text(self):
        from marginalia.common.language import resolve_prompt_language

        assert resolve_prompt_language("auto", "你好") == "zh"
        assert resolve_prompt_language(None, "你好") == "zh"

    def test_auto_without_text(self):
        from marginalia.common.language import resolve_prompt_language

        assert resolve_prompt_language("auto") == "en"


class TestDictionaryLookup:
    @pytest.mark.parametrize("text", ["serendipity", "break the ice", "你好", "  word  ", "学而时习"])
    def test_short_inputs(self, text):
        from marginalia.common.language import is_dictionary_lookup

        assert is_dictionary_lookup(text)

    @pytest.mark.parametrize("text", ["this is four words", "学而时习之", "", "   "])
    def test_longer_inputs(self, text):
        from marginalia.common.language import is_dictionary_lookup

        assert not is_dictionary_lookup(text)
