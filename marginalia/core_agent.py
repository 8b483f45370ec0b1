"""
Core Agent

Orchestrates the node pipeline for a request:

    query_transform -> retrieve -> synthesis -> [generate_note]

query_transform and retrieval degrade (original query, empty context) and
are logged; synthesis failures reach the caller unmodified. The agent holds
no per-request state, so one instance serves concurrent requests.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, List, Optional, Set

from .common.errors import ConfigurationError
from .common.prompts import AskContextVars, AskContextWithSourceVars, PromptKey
from .common.schemas import ChatMessage, LLMConfig, NoteDraft, RetrievalResult
from .nodes import (
    ChatParams,
    GenerateNoteParams,
    NodeContext,
    PolishParams,
    QueryTransformParams,
    StageResult,
    SynthesisParams,
    TranslateParams,
    chat_node,
    chat_stream_node,
    generate_note_node,
    polish_node,
    query_transform_node,
    synthesis_node,
    translate_node,
)
from .retriever import RAGService
from .scribe import SyncService

logger = logging.getLogger("marginalia.core_agent")


@dataclass
class AgentTrace:
    """What the agent did on the way to a response"""
    transformed_query: Optional[str] = None
    retrieved: List[RetrievalResult] = field(default_factory=list)
    degraded_stages: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "transformed_query": self.transformed_query,
            "retrieved": [r.model_dump(mode="json") for r in self.retrieved],
            "degraded_stages": list(self.degraded_stages),
        }


@dataclass
class AgentAnswer:
    """Result of the answer pipeline"""
    response: str
    transformed_query: str
    context: List[RetrievalResult] = field(default_factory=list)
    note: Optional[NoteDraft] = None
    trace: AgentTrace = field(default_factory=AgentTrace)

    def to_dict(self) -> dict:
        return {
            "response": self.response,
            "transformed_query": self.transformed_query,
            "context": [r.model_dump(mode="json") for r in self.context],
            "note": self.note.model_dump(mode="json") if self.note else None,
            "trace": self.trace.to_dict(),
        }


@dataclass
class ChatResponse:
    response: str
    trace: AgentTrace = field(default_factory=AgentTrace)


class CoreAgent:
    """
    Entry point for every host-facing operation.

    Args:
        ctx: Node collaborators (cache, prompts, settings)
        client: Default LLMClient
        rag_service: Context retrieval; without it, answers are ungrounded
        sync_service: Note persistence for generate_note(persist=True)
        client_factory: Builds a client for a request-level LLMConfig that
            carries its own endpoint or key
    """

    def __init__(
        self,
        ctx: NodeContext,
        client,
        rag_service: Optional[RAGService] = None,
        sync_service: Optional[SyncService] = None,
        client_factory: Optional[Callable[[LLMConfig], object]] = None,
    ):
        self.ctx = ctx
        self._client = client
        self.rag = rag_service
        self.sync = sync_service
        self._client_factory = client_factory
        self._background: Set[asyncio.Task] = set()

    def _client_for(self, llm_config: Optional[LLMConfig]):
        if (
            self._client_factory is not None
            and llm_config is not None
            and (llm_config.base_url or llm_config.api_key)
        ):
            return self._client_factory(llm_config)
        return self._client

    # ------------------------------------------------------------------ #
    # Transform stages
    # ------------------------------------------------------------------ #

    async def translate(
        self,
        text: str,
        target_lang: str,
        source_lang: Optional[str] = None,
        llm_config: Optional[LLMConfig] = None,
        provider_id: Optional[str] = None,
    ) -> str:
        """Translate ``text``. Without a configured model the input comes back unchanged."""
        result = await translate_node(
            self.ctx,
            self._client_for(llm_config),
            TranslateParams(
                text=text,
                target_lang=target_lang,
                source_lang=source_lang,
                llm_config=llm_config,
                provider_id=provider_id,
            ),
        )
        return result.recover(ConfigurationError)

    async def polish(
        self,
        text: str,
        style: Optional[str] = None,
        llm_config: Optional[LLMConfig] = None,
        provider_id: Optional[str] = None,
    ) -> str:
        """Polish ``text``. Without a configured model the input comes back unchanged."""
        result = await polish_node(
            self.ctx,
            self._client_for(llm_config),
            PolishParams(text=text, style=style, llm_config=llm_config, provider_id=provider_id),
        )
        return result.recover(ConfigurationError)

    async def query_transform(
        self,
        user_input: str,
        chat_history: Optional[List[ChatMessage]] = None,
        llm_config: Optional[LLMConfig] = None,
        provider_id: Optional[str] = None,
    ) -> StageResult[str]:
        return await query_transform_node(
            self.ctx,
            self._client_for(llm_config),
            QueryTransformParams(
                user_input=user_input,
                chat_history=list(chat_history or []),
                llm_config=llm_config,
                provider_id=provider_id,
            ),
        )

    # ------------------------------------------------------------------ #
    # Retrieval and generation stages
    # ------------------------------------------------------------------ #

    async def retrieve(
        self,
        query: str,
        top_k: Optional[int] = None,
        tags: Optional[List[str]] = None,
        llm_config: Optional[LLMConfig] = None,
    ) -> List[RetrievalResult]:
        if self.rag is None:
            return []
        return await self.rag.retrieve(query, top_k=top_k, tags=tags, llm_config=llm_config)

    async def _safe_retrieve(
        self,
        query: str,
        trace: Optional[AgentTrace] = None,
        top_k: Optional[int] = None,
        llm_config: Optional[LLMConfig] = None,
    ) -> List[RetrievalResult]:
        """Retrieve; a failure degrades to empty context and is noted on ``trace``."""
        try:
            return await self.retrieve(query, top_k=top_k, llm_config=llm_config)
        except Exception as e:
            logger.warning("Retrieval failed, continuing without context: %s", e)
            if trace is not None:
                trace.degraded_stages.append("retrieve")
            return []

    async def synthesis(
        self,
        original_input: str,
        retrieved_context: List[str],
        chat_history: Optional[List[ChatMessage]] = None,
        llm_config: Optional[LLMConfig] = None,
        provider_id: Optional[str] = None,
    ) -> str:
        return await synthesis_node(
            self.ctx,
            self._client_for(llm_config),
            SynthesisParams(
                original_input=original_input,
                retrieved_context=retrieved_context,
                chat_history=list(chat_history or []),
                llm_config=llm_config,
                provider_id=provider_id,
            ),
        )

    async def generate_note(
        self,
        selected_text: str,
        source_url: Optional[str] = None,
        context: Optional[List[str]] = None,
        persist: bool = False,
        llm_config: Optional[LLMConfig] = None,
        provider_id: Optional[str] = None,
    ) -> NoteDraft:
        """Draft a note from a selection, grounded on related notes when available.

        With ``persist`` the draft is saved in the background; the caller
        gets the draft without waiting for storage or indexing.
        """
        source_context = await self._safe_retrieve(selected_text, llm_config=llm_config)
        draft = await generate_note_node(
            self.ctx,
            self._client_for(llm_config),
            GenerateNoteParams(
                selected_text=selected_text,
                source_url=source_url,
                context=list(context or []),
                source_context=source_context,
                llm_config=llm_config,
                provider_id=provider_id,
            ),
        )

        if persist:
            if self.sync is None:
                logger.warning("generate_note(persist=True) without a sync service, note not saved")
            else:
                self._spawn(self.sync.create_note(draft.to_note(), llm_config), "persist note")
        return draft

    def _spawn(self, coro, label: str) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error("Background task failed (%s): %s", label, exc)

        task.add_done_callback(_done)
        return task

    async def drain(self) -> None:
        """Wait for background work (tests, shutdown)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------ #
    # Pipelines
    # ------------------------------------------------------------------ #

    async def answer(
        self,
        user_input: str,
        chat_history: Optional[List[ChatMessage]] = None,
        generate_note: bool = False,
        source_url: Optional[str] = None,
        top_k: Optional[int] = None,
        llm_config: Optional[LLMConfig] = None,
        provider_id: Optional[str] = None,
    ) -> AgentAnswer:
        """Run query_transform -> retrieve -> synthesis -> [generate_note]."""
        history = list(chat_history or [])
        trace = AgentTrace()

        transformed = await self.query_transform(user_input, history, llm_config, provider_id)
        if transformed.degraded:
            logger.warning("query_transform degraded, using original query: %s", transformed.error)
            trace.degraded_stages.append("query_transform")
        query = transformed.value
        trace.transformed_query = query

        context = await self._safe_retrieve(query, trace, top_k=top_k, llm_config=llm_config)
        trace.retrieved = context

        response = await self.synthesis(
            user_input,
            RAGService.format_context(context),
            history,
            llm_config,
            provider_id,
        )

        note = None
        if generate_note:
            note = await generate_note_node(
                self.ctx,
                self._client_for(llm_config),
                GenerateNoteParams(
                    selected_text=response,
                    source_url=source_url,
                    source_context=context,
                    llm_config=llm_config,
                    provider_id=provider_id,
                ),
            )

        return AgentAnswer(
            response=response,
            transformed_query=query,
            context=context,
            note=note,
            trace=trace,
        )

    async def _prepare_context(
        self,
        user_input: str,
        history: List[ChatMessage],
        llm_config: Optional[LLMConfig],
        provider_id: Optional[str],
        rag_enabled: bool = True,
    ) -> AgentTrace:
        trace = AgentTrace()
        if not rag_enabled or self.rag is None:
            return trace
        transformed = await self.query_transform(user_input, history, llm_config, provider_id)
        if transformed.degraded:
            trace.degraded_stages.append("query_transform")
        trace.transformed_query = transformed.value
        trace.retrieved = await self._safe_retrieve(transformed.value, trace, llm_config=llm_config)
        return trace

    @staticmethod
    def _merge_context(rag_context: Optional[List[str]], trace: AgentTrace) -> List[str]:
        # caller-supplied snippets first, retrieved notes after
        return [c for c in (rag_context or []) if c] + RAGService.format_context(trace.retrieved)

    async def chat(
        self,
        user_input: str,
        history: Optional[List[ChatMessage]] = None,
        system_prompt: Optional[str] = None,
        llm_config: Optional[LLMConfig] = None,
        provider_id: Optional[str] = None,
        rag_enabled: bool = True,
        rag_context: Optional[List[str]] = None,
    ) -> ChatResponse:
        """Grounded synthesis when any context exists, plain chat otherwise.

        ``rag_context`` snippets from the caller are always used; retrieval
        over the notes store only runs when ``rag_enabled`` is true.
        """
        history = list(history or [])
        trace = await self._prepare_context(user_input, history, llm_config, provider_id, rag_enabled)
        context = self._merge_context(rag_context, trace)

        if context:
            logger.info("Answering with %d context snippets", len(context))
            response = await self.synthesis(user_input, context, history, llm_config, provider_id)
        else:
            response = await chat_node(
                self.ctx,
                self._client_for(llm_config),
                ChatParams(
                    user_input=user_input,
                    history=history,
                    system_prompt=system_prompt,
                    llm_config=llm_config,
                    provider_id=provider_id,
                ),
            )
        return ChatResponse(response=response, trace=trace)

    async def chat_stream(
        self,
        user_input: str,
        history: Optional[List[ChatMessage]] = None,
        system_prompt: Optional[str] = None,
        abort: Optional[asyncio.Event] = None,
        llm_config: Optional[LLMConfig] = None,
        provider_id: Optional[str] = None,
        rag_enabled: bool = True,
        rag_context: Optional[List[str]] = None,
    ) -> AsyncIterator[str]:
        """Stream a chat turn.

        RAG preparation gets ``retriever.rag_timeout`` seconds and is skipped
        when ``rag_enabled`` is false. When there is any context, caller
        snippets or retrieved notes, the grounded answer is yielded as one
        chunk; otherwise plain chat is streamed.
        """
        history = list(history or [])
        trace = AgentTrace()
        if rag_enabled:
            timeout = self.ctx.settings.get_settings_sync().retriever.rag_timeout
            try:
                trace = await asyncio.wait_for(
                    self._prepare_context(user_input, history, llm_config, provider_id),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("RAG preparation exceeded %.1fs, streaming without context", timeout)

        if abort is not None and abort.is_set():
            return

        context = self._merge_context(rag_context, trace)
        if context:
            response = await self.synthesis(user_input, context, history, llm_config, provider_id)
            if abort is None or not abort.is_set():
                yield response
            return

        stream = chat_stream_node(
            self.ctx,
            self._client_for(llm_config),
            ChatParams(
                user_input=user_input,
                history=history,
                system_prompt=system_prompt,
                llm_config=llm_config,
                provider_id=provider_id,
            ),
            abort=abort,
        )
        try:
            async for chunk in stream:
                yield chunk
        finally:
            await stream.aclose()

    async def ask_with_context(
        self,
        text: str,
        source_url: Optional[str] = None,
        question: Optional[str] = None,
        history: Optional[List[ChatMessage]] = None,
        llm_config: Optional[LLMConfig] = None,
        provider_id: Optional[str] = None,
    ) -> ChatResponse:
        """Ask about a page selection; the selection is prefixed to the prompt."""
        lang = self.ctx.prompt_language(text)
        if source_url:
            prefix = self.ctx.prompts.get_prompt(
                PromptKey.ASK_CONTEXT_PREFIX_WITH_SOURCE,
                lang,
                AskContextWithSourceVars(text=text, source_url=source_url),
            )
        else:
            prefix = self.ctx.prompts.get_prompt(PromptKey.ASK_CONTEXT_PREFIX, lang, AskContextVars(text=text))

        prompt = f"{prefix}{question}" if question else prefix.rstrip()
        return await self.chat(prompt, history, llm_config=llm_config, provider_id=provider_id)
