"""
Chat Nodes

Single-shot chat (memoized per conversation and model) and streamed chat
(never memoized, cancellable). Failures propagate to the caller.
"""

import asyncio
import logging
from typing import AsyncIterator, List, Optional

from pydantic import BaseModel, Field

from ..common.cache import generate_cache_key
from ..common.errors import ConfigurationError
from ..common.prompts import NoVars, PromptKey
from ..common.schemas import ChatMessage, ChatRequest, LLMConfig
from ..common.schemas.messages import system, user
from .base import NodeContext, history_payload

logger = logging.getLogger("marginalia.nodes.chat")


class ChatParams(BaseModel):
    user_input: str
    history: List[ChatMessage] = Field(default_factory=list)
    # None = use the chat_system prompt, "" = send no system message
    system_prompt: Optional[str] = None
    llm_config: Optional[LLMConfig] = None
    provider_id: Optional[str] = None


def build_chat_messages(ctx: NodeContext, params: ChatParams) -> List[ChatMessage]:
    if params.system_prompt is None:
        system_text = ctx.prompts.get_prompt(
            PromptKey.CHAT_SYSTEM, ctx.prompt_language(params.user_input), NoVars()
        )
    else:
        system_text = params.system_prompt

    messages: List[ChatMessage] = []
    if system_text:
        messages.append(system(system_text))
    messages.extend(params.history)
    messages.append(user(params.user_input))
    return messages


def _resolve_model_or_raise(ctx: NodeContext, params: ChatParams) -> str:
    resolution = ctx.resolve_model(params.llm_config, params.provider_id)
    if not resolution.resolved:
        raise ConfigurationError("Chat model is not configured")
    return resolution.model


async def chat_node(ctx: NodeContext, client, params: ChatParams) -> str:
    """Answer a conversation turn. Raw assistant text, no post-processing."""
    model = _resolve_model_or_raise(ctx, params)
    messages = build_chat_messages(ctx, params)
    key = generate_cache_key({"node": "chat", "model": model, "messages": history_payload(messages)})

    if ctx.cache.has(key):
        logger.info("[chat] Cache hit")

    async def compute() -> str:
        logger.info("[chat] Calling model %s with %d messages", model, len(messages))
        return await client.chat(ChatRequest(model=model, messages=messages))

    try:
        return await ctx.cache.get_or_compute(key, compute)
    except Exception as e:
        logger.error("[chat] Failed: %s", e)
        raise


async def chat_stream_node(
    ctx: NodeContext,
    client,
    params: ChatParams,
    abort: Optional[asyncio.Event] = None,
) -> AsyncIterator[str]:
    """Stream a conversation turn as text chunks.

    Setting ``abort`` stops delivery immediately, also while a read from
    upstream is pending; closing the generator does the same. Either way the
    upstream stream is closed. Streamed answers are never cached.
    """
    model = _resolve_model_or_raise(ctx, params)
    messages = build_chat_messages(ctx, params)
    logger.info("[chat_stream] Streaming from model %s", model)

    stream = client.chat_stream(ChatRequest(model=model, messages=messages))
    chunks = stream.__aiter__()
    abort_wait = asyncio.ensure_future(abort.wait()) if abort is not None else None
    delivered = 0
    try:
        while abort is None or not abort.is_set():
            if abort_wait is None:
                try:
                    chunk = await chunks.__anext__()
                except StopAsyncIteration:
                    break
            else:
                read = asyncio.ensure_future(chunks.__anext__())
                done, _ = await asyncio.wait({read, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
                if read not in done:
                    read.cancel()
                    await asyncio.gather(read, return_exceptions=True)
                    break
                try:
                    chunk = read.result()
                except StopAsyncIteration:
                    break
            delivered += 1
            yield chunk
        if abort is not None and abort.is_set():
            logger.info("[chat_stream] Aborted after %d chunks", delivered)
    finally:
        if abort_wait is not None:
            abort_wait.cancel()
        await stream.aclose()
