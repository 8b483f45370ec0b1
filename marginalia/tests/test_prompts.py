"""Tests for prompt rendering, typed variables and overrides."""

import json

import pytest
from pydantic import ValidationError

from marginalia.common.prompts import (
    NoVars,
    PolishUserVars,
    PromptKey,
    PromptProvider,
    QueryTransformUserVars,
    SynthesisUserVars,
    TranslateUserVars,
    render,
)
from marginalia.common.prompt_templates import TEMPLATES


class TestRender:
    def test_scalar_placeholders(self):
        assert render("Hello {{name}}!", {"name": "Ada"}) == "Hello Ada!"

    def test_unknown_placeholder_renders_empty(self):
        assert render("[{{missing}}]", {}) == "[]"

    def test_list_section_repeats(self):
        out = render("{{#items}}- {{.}}\n{{/items}}done", {"items": ["a", "b"]})
        assert out == "- a\n- b\ndone"

    def test_empty_list_section_dropped(self):
        assert render("{{#items}}x{{/items}}end", {"items": []}) == "end"

    def test_scalar_section_renders_once(self):
        out = render("{{#url}}Source: {{url}}{{/url}}", {"url": "https://example.com"})
        assert out == "Source: https://example.com"

    def test_falsy_scalar_section_dropped(self):
        assert render("{{#url}}Source: {{url}}{{/url}}", {"url": ""}) == ""

    def test_list_items_inserted_verbatim(self):
        out = render(
            "{{#items}}- {{.}}\n{{/items}}Q: {{question}}",
            {"items": ["uses {{question}} and {{name}}"], "question": "SECRET"},
        )
        assert out == "- uses {{question}} and {{name}}\nQ: SECRET"

    def test_scalar_values_inserted_verbatim(self):
        out = render("{{a}} / {{b}}", {"a": "{{b}}", "b": "{{#x}}y{{/x}}"})
        assert out == "{{b}} / {{#x}}y{{/x}}"


class TestPromptProvider:
    def test_every_key_has_both_languages(self):
        for lang in ("en", "zh"):
            assert set(TEMPLATES[lang]) == {k.value for k in PromptKey}

    def test_polish_user_prompt(self):
        prompts = PromptProvider()
        text = prompts.get_prompt(PromptKey.POLISH_USER, variables=PolishUserVars(text="teh cat", style="formal"))
        assert "teh cat" in text
        assert "formal" in text

    def test_mapping_variables_are_validated(self):
        prompts = PromptProvider()
        text = prompts.get_prompt(PromptKey.TRANSLATE_USER, "en", {"text": "hola", "target_lang": "English"})
        assert "hola" in text and "English" in text

    def test_query_history_rendered_in_order(self):
        prompts = PromptProvider()
        text = prompts.get_prompt(
            PromptKey.QUERY_TRANSFORM_USER,
            variables=QueryTransformUserVars(user_input="and its author?", history=["user: a book", "assistant: Dune"]),
        )
        assert text.index("user: a book") < text.index("assistant: Dune") < text.index("and its author?")

    def test_synthesis_context_rendered(self):
        prompts = PromptProvider()
        text = prompts.get_prompt(
            PromptKey.ANSWER_SYNTH_USER,
            variables=SynthesisUserVars(original_input="Q?", context=["first", "second"]),
        )
        assert text.count("Context snippet:") == 2

    def test_placeholders_in_user_content_survive(self):
        prompts = PromptProvider()
        history_text = prompts.get_prompt(
            PromptKey.QUERY_TRANSFORM_USER,
            variables=QueryTransformUserVars(
                user_input="SECRET",
                history=["user: how do I use {{user_input}} in handlebars?"],
            ),
        )
        assert "user: how do I use {{user_input}} in handlebars?" in history_text

        synthesis_text = prompts.get_prompt(
            PromptKey.ANSWER_SYNTH_USER,
            variables=SynthesisUserVars(
                original_input="Q",
                context=["Template uses {{name}} and {{original_input}}"],
            ),
        )
        assert "Template uses {{name}} and {{original_input}}" in synthesis_text
        assert synthesis_text.endswith("Question: Q")

    def test_chinese_templates(self):
        prompts = PromptProvider(language="zh")
        assert prompts.get_prompt(PromptKey.CHAT_SYSTEM) == TEMPLATES["zh"]["chat_system"]

    def test_wrong_record_type_rejected(self):
        prompts = PromptProvider()
        with pytest.raises(TypeError, match="PolishUserVars"):
            prompts.get_prompt(PromptKey.POLISH_USER, variables=TranslateUserVars(text="x", target_lang="en"))

    def test_missing_required_variable_rejected(self):
        prompts = PromptProvider()
        with pytest.raises(ValidationError):
            prompts.get_prompt(PromptKey.TRANSLATE_USER, variables={"text": "x"})

    def test_unknown_variable_rejected(self):
        prompts = PromptProvider()
        with pytest.raises(ValidationError):
            prompts.get_prompt(PromptKey.CHAT_SYSTEM, variables={"unexpected": "x"})

    def test_no_variable_prompt(self):
        prompts = PromptProvider()
        assert prompts.get_prompt(PromptKey.CHAT_SYSTEM, variables=NoVars()) == TEMPLATES["en"]["chat_system"]

    def test_unsupported_language(self):
        with pytest.raises(ValueError):
            PromptProvider(language="fr")

    def test_get_prompt_is_pure(self):
        prompts = PromptProvider()
        variables = PolishUserVars(text="x")
        assert prompts.get_prompt(PromptKey.POLISH_USER, variables=variables) == \
            prompts.get_prompt(PromptKey.POLISH_USER, variables=variables)


class TestOverrides:
    def test_set_and_reset_override(self):
        prompts = PromptProvider()
        prompts.set_override(PromptKey.POLISH_USER, "en", "Fix: {{text}}")
        assert prompts.get_prompt(PromptKey.POLISH_USER, variables=PolishUserVars(text="abc")) == "Fix: abc"
        assert prompts.all_prompts("en")["polish_user"]["override"] == "Fix: {{text}}"

        prompts.reset_override(PromptKey.POLISH_USER, "en")
        assert prompts.get_template(PromptKey.POLISH_USER) == TEMPLATES["en"]["polish_user"]
        assert prompts.all_prompts("en")["polish_user"]["override"] is None

    def test_override_only_affects_its_language(self):
        prompts = PromptProvider()
        prompts.set_override(PromptKey.CHAT_SYSTEM, "zh", "自定义")
        assert prompts.get_prompt(PromptKey.CHAT_SYSTEM, "en") == TEMPLATES["en"]["chat_system"]
        assert prompts.get_prompt(PromptKey.CHAT_SYSTEM, "zh") == "自定义"

    def test_overrides_persisted(self, tmp_path):
        path = tmp_path / "prompts.json"
        PromptProvider(overrides_path=path).set_override(PromptKey.CHAT_SYSTEM, "en", "Be brief.")

        assert json.loads(path.read_text()) == {"chat_system": {"en": "Be brief."}}
        assert PromptProvider(overrides_path=path).get_prompt(PromptKey.CHAT_SYSTEM) == "Be brief."
