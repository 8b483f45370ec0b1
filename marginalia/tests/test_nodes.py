"""Tests for the transform and generation nodes."""

import logging

import pytest

from marginalia.common.errors import ConfigurationError, UpstreamError
from marginalia.common.schemas import LLMConfig, RetrievalResult, RetrievalSource
from marginalia.common.schemas.messages import assistant, user
from marginalia.nodes import (
    ChatParams,
    GenerateNoteParams,
    NodeContext,
    PolishParams,
    QueryTransformParams,
    StageResult,
    SynthesisParams,
    TranslateParams,
    chat_node,
    generate_note_node,
    polish_node,
    query_transform_node,
    synthesis_node,
    translate_node,
)
from marginalia.nodes.generate_note import append_references, derive_title, extract_links, sanitize_tags

from conftest import FakeLLMClient


class TestStageResult:
    def test_success(self):
        result = StageResult("v", stage="s")
        assert not result.degraded
        assert result.unwrap() == "v"

    def test_unwrap_raises_recorded_error(self):
        result = StageResult("fallback", UpstreamError("down"), "s")
        assert result.degraded
        with pytest.raises(UpstreamError):
            result.unwrap()

    def test_recover_only_listed_errors(self):
        config_failure = StageResult("in", ConfigurationError("no model"), "s")
        upstream_failure = StageResult("in", UpstreamError("down"), "s")

        assert config_failure.recover(ConfigurationError) == "in"
        with pytest.raises(UpstreamError):
            upstream_failure.recover(ConfigurationError)


class TestPolish:
    @pytest.mark.asyncio
    async def test_second_identical_call_hits_cache(self, ctx):
        client = FakeLLMClient("```markdown\nThe cat sat.\n```")
        params = PolishParams(text="teh cat sat", style="formal")

        first = await polish_node(ctx, client, params)
        second = await polish_node(ctx, client, params)

        assert first.value == second.value == "The cat sat."
        assert len(client.chat_calls) == 1

    @pytest.mark.asyncio
    async def test_cache_hit_logged(self, ctx, caplog):
        client = FakeLLMClient("Polished.")
        params = PolishParams(text="polish me")
        await polish_node(ctx, client, params)
        with caplog.at_level(logging.INFO, logger="marginalia.nodes.polish"):
            await polish_node(ctx, client, params)
        assert "Cache hit" in caplog.text

    @pytest.mark.asyncio
    async def test_different_style_is_a_different_entry(self, ctx):
        client = FakeLLMClient("out")
        await polish_node(ctx, client, PolishParams(text="x", style="formal"))
        await polish_node(ctx, client, PolishParams(text="x", style="casual"))
        assert len(client.chat_calls) == 2

    @pytest.mark.asyncio
    async def test_no_model_returns_input_unchanged(self, unconfigured_settings):
        ctx = NodeContext.from_settings(unconfigured_settings)
        client = FakeLLMClient("should not be used")
        text = "  keep  me\n exactly "

        result = await polish_node(ctx, client, PolishParams(text=text))

        assert result.value == text
        assert isinstance(result.error, ConfigurationError)
        assert client.chat_calls == []

    @pytest.mark.asyncio
    async def test_request_model_overrides_settings(self, unconfigured_settings):
        ctx = NodeContext.from_settings(unconfigured_settings)
        client = FakeLLMClient("done")
        result = await polish_node(ctx, client, PolishParams(text="x", llm_config=LLMConfig(chat_model="m")))
        assert result.value == "done"
        assert client.chat_calls[0].model == "m"

    @pytest.mark.asyncio
    async def test_upstream_failure_is_not_cached(self, ctx):
        failing = FakeLLMClient(error=UpstreamError("down", status_code=503))
        result = await polish_node(ctx, failing, PolishParams(text="x"))
        assert result.value == "x"
        assert isinstance(result.error, UpstreamError)
        assert len(ctx.cache) == 0

        working = FakeLLMClient("fixed")
        assert (await polish_node(ctx, working, PolishParams(text="x"))).value == "fixed"

    @pytest.mark.asyncio
    async def test_empty_answer_degrades(self, ctx):
        result = await polish_node(ctx, FakeLLMClient("   "), PolishParams(text="x"))
        assert result.value == "x"
        assert isinstance(result.error, UpstreamError)


class TestTranslate:
    @pytest.mark.asyncio
    async def test_sentence_uses_translation_prompts(self, ctx):
        client = FakeLLMClient("Bonjour tout le monde, comment allez-vous ?")
        result = await translate_node(
            ctx, client, TranslateParams(text="Hello everyone, how are you today?", target_lang="French")
        )
        assert result.value.startswith("Bonjour")
        messages = client.chat_calls[0].messages
        assert "professional translator" in messages[0].content
        assert "French" in messages[1].content

    @pytest.mark.asyncio
    async def test_short_input_uses_dictionary_prompts(self, ctx):
        client = FakeLLMClient("**serendipity** (n.) ...")
        await translate_node(
            ctx, client, TranslateParams(text="serendipity", target_lang="Chinese", source_lang="English")
        )
        messages = client.chat_calls[0].messages
        assert "bilingual dictionary" in messages[0].content
        assert "English -> Chinese" in messages[1].content

    @pytest.mark.asyncio
    async def test_source_lang_is_part_of_cache_key(self, ctx):
        client = FakeLLMClient("out")
        await translate_node(ctx, client, TranslateParams(text="gift", target_lang="English", source_lang="German"))
        await translate_node(ctx, client, TranslateParams(text="gift", target_lang="English", source_lang="Swedish"))
        assert len(client.chat_calls) == 2

    @pytest.mark.asyncio
    async def test_failure_keeps_original_text(self, ctx):
        client = FakeLLMClient(error=UpstreamError("rate limited", status_code=429))
        result = await translate_node(ctx, client, TranslateParams(text=" 原文 ", target_lang="English"))
        assert result.value == " 原文 "
        assert result.degraded


class TestQueryTransform:
    @pytest.mark.asyncio
    async def test_no_model_returns_latest_input_unchanged(self, unconfigured_settings):
        ctx = NodeContext.from_settings(unconfigured_settings)
        client = FakeLLMClient("should not be used")
        params = QueryTransformParams(
            user_input="  raw q\n",
            chat_history=[user("Tell me about Dune"), assistant("Dune is a novel.")],
        )

        result = await query_transform_node(ctx, client, params)

        assert result.value == "  raw q\n"
        assert isinstance(result.error, ConfigurationError)
        assert client.chat_calls == []
        assert len(ctx.cache) == 0

    @pytest.mark.asyncio
    async def test_upstream_failure_returns_original_input(self, ctx):
        client = FakeLLMClient(error=UpstreamError("timeout"))
        params = QueryTransformParams(
            user_input="what about its sequel?",
            chat_history=[user("Tell me about Dune"), assistant("Dune is a novel.")],
        )

        result = await query_transform_node(ctx, client, params)

        assert result.value == "what about its sequel?"
        assert isinstance(result.error, UpstreamError)
        assert len(ctx.cache) == 0

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(self, ctx):
        client = FakeLLMClient(error=RuntimeError("bug in client"))
        result = await query_transform_node(ctx, client, QueryTransformParams(user_input="q"))
        assert result.value == "q"

    @pytest.mark.asyncio
    async def test_history_rendered_into_prompt(self, ctx):
        client = FakeLLMClient("Dune Messiah, sequel to Dune")
        params = QueryTransformParams(
            user_input="what about its sequel?",
            chat_history=[user("Tell me about Dune")],
        )
        result = await query_transform_node(ctx, client, params)
        assert result.value == "Dune Messiah, sequel to Dune"
        assert "user: Tell me about Dune" in client.chat_calls[0].messages[-1].content

    @pytest.mark.asyncio
    async def test_history_is_part_of_cache_key(self, ctx):
        client = FakeLLMClient("q")
        await query_transform_node(ctx, client, QueryTransformParams(user_input="it?", chat_history=[user("a")]))
        await query_transform_node(ctx, client, QueryTransformParams(user_input="it?", chat_history=[user("b")]))
        assert len(client.chat_calls) == 2


class TestChat:
    @pytest.mark.asyncio
    async def test_messages_layout(self, ctx):
        client = FakeLLMClient("answer")
        await chat_node(ctx, client, ChatParams(user_input="now?", history=[user("before"), assistant("reply")]))
        roles = [m.role for m in client.chat_calls[0].messages]
        assert roles == ["system", "user", "assistant", "user"]

    @pytest.mark.asyncio
    async def test_empty_system_prompt_omitted(self, ctx):
        client = FakeLLMClient("answer")
        await chat_node(ctx, client, ChatParams(user_input="hi", system_prompt=""))
        assert [m.role for m in client.chat_calls[0].messages] == ["user"]

    @pytest.mark.asyncio
    async def test_identical_conversation_memoized(self, ctx):
        client = FakeLLMClient("```markdown\nkept as is\n```")
        first = await chat_node(ctx, client, ChatParams(user_input="hi"))
        second = await chat_node(ctx, client, ChatParams(user_input="hi"))
        assert first == second == "```markdown\nkept as is\n```"
        assert len(client.chat_calls) == 1

    @pytest.mark.asyncio
    async def test_upstream_failure_propagates(self, ctx):
        client = FakeLLMClient(error=UpstreamError("down", status_code=500))
        with pytest.raises(UpstreamError):
            await chat_node(ctx, client, ChatParams(user_input="hi"))

    @pytest.mark.asyncio
    async def test_no_model_raises(self, unconfigured_settings):
        ctx = NodeContext.from_settings(unconfigured_settings)
        with pytest.raises(ConfigurationError):
            await chat_node(ctx, FakeLLMClient(), ChatParams(user_input="hi"))


class TestSynthesis:
    @pytest.mark.asyncio
    async def test_context_in_prompt_and_result_trimmed(self, ctx):
        client = FakeLLMClient("  Grounded answer.  ")
        result = await synthesis_node(
            ctx, client, SynthesisParams(original_input="Q?", retrieved_context=["Title: A\nContent: B", ""])
        )
        assert result == "Grounded answer."
        prompt = client.chat_calls[0].messages[-1].content
        assert prompt.count("Context snippet:") == 1
        assert "Question: Q?" in prompt

    @pytest.mark.asyncio
    async def test_cached_by_inputs(self, ctx):
        client = FakeLLMClient("a")
        params = SynthesisParams(original_input="Q?", retrieved_context=["c"])
        await synthesis_node(ctx, client, params)
        await synthesis_node(ctx, client, params)
        await synthesis_node(ctx, client, SynthesisParams(original_input="Q?", retrieved_context=["other"]))
        assert len(client.chat_calls) == 2

    @pytest.mark.asyncio
    async def test_failure_propagates_unmodified(self, ctx):
        error = UpstreamError("quota exceeded", status_code=429)
        with pytest.raises(UpstreamError) as exc_info:
            await synthesis_node(ctx, FakeLLMClient(error=error), SynthesisParams(original_input="Q?"))
        assert exc_info.value is error


class TestGenerateNoteHelpers:
    def test_sanitize_tags(self):
        assert sanitize_tags(["a", " b ", "", 3, "c", "d", "e", "f"]) == ["a", "b", "c", "d", "e"]
        assert sanitize_tags("not a list") == []

    def test_derive_title(self):
        assert derive_title("\n\n  First line  \nsecond") == "First line"
        assert derive_title("x" * 100) == "x" * 80
        assert derive_title("   ") == "Untitled"

    def test_extract_links(self):
        text = "See https://a.example/x, and (https://b.example/y). Again https://a.example/x"
        assert extract_links(text) == ["https://a.example/x", "https://b.example/y"]

    def test_append_references_skips_known_links(self):
        content = "Mentions https://a.example already."
        out = append_references(content, ["https://a.example", "https://b.example"])
        assert out.endswith("**References:**\n- https://b.example")
        assert append_references(content, ["https://a.example"]) == content


class TestGenerateNote:
    @pytest.mark.asyncio
    async def test_json_answer_parsed(self, ctx):
        client = FakeLLMClient(
            '```json\n{"title": "Photosynthesis", "content": "Plants turn light into sugar.", '
            '"tags": ["biology", "plants", "energy", "light", "sugar", "extra"]}\n```'
        )
        draft = await generate_note_node(
            ctx, client, GenerateNoteParams(selected_text="Plants convert light...")
        )
        assert draft.title == "Photosynthesis"
        assert draft.content == "Plants turn light into sugar."
        assert draft.tags == ["biology", "plants", "energy", "light", "sugar"]

    @pytest.mark.asyncio
    async def test_unparseable_answer_falls_back_to_selection(self, ctx):
        client = FakeLLMClient("Sorry, here is a summary without JSON.")
        draft = await generate_note_node(
            ctx,
            client,
            GenerateNoteParams(selected_text="Key idea: spaced repetition\nworks.", source_url="https://blog.example/post"),
        )
        assert draft.title == "Key idea: spaced repetition"
        assert draft.content.startswith("Key idea: spaced repetition\nworks.")
        assert draft.content.endswith("**References:**\n- https://blog.example/post")
        assert draft.tags == []
        assert draft.source_url == "https://blog.example/post"

    @pytest.mark.asyncio
    async def test_related_notes_included_in_prompt(self, ctx):
        client = FakeLLMClient('{"title": "T", "content": "C", "tags": []}')
        related = RetrievalResult(
            source_id="n1", snippet="Title: Earlier\nContent: old note", score=1.0, source=RetrievalSource.NOTES
        )
        draft = await generate_note_node(
            ctx, client, GenerateNoteParams(selected_text="new text", source_context=[related])
        )
        assert "Related note:\nTitle: Earlier" in client.chat_calls[0].messages[-1].content
        assert draft.source_context == [related]

    @pytest.mark.asyncio
    async def test_upstream_failure_propagates(self, ctx):
        client = FakeLLMClient(error=UpstreamError("down"))
        with pytest.raises(UpstreamError):
            await generate_note_node(ctx, client, GenerateNoteParams(selected_text="x"))
