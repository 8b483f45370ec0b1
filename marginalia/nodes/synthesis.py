"""
Synthesis Node

Produces the final grounded answer from the user's question, retrieved
context snippets and conversation history. Terminal stage: failures are
raised unmodified.
"""

import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from ..common.cache import generate_cache_key
from ..common.errors import ConfigurationError
from ..common.prompts import NoVars, PromptKey, SynthesisUserVars
from ..common.schemas import ChatMessage, ChatRequest, LLMConfig
from ..common.schemas.messages import system, user
from .base import NodeContext, history_payload

logger = logging.getLogger("marginalia.nodes.synthesis")


class SynthesisParams(BaseModel):
    original_input: str
    retrieved_context: List[str] = Field(default_factory=list)
    chat_history: List[ChatMessage] = Field(default_factory=list)
    llm_config: Optional[LLMConfig] = None
    provider_id: Optional[str] = None


async def synthesis_node(ctx: NodeContext, client, params: SynthesisParams) -> str:
    resolution = ctx.resolve_model(params.llm_config, params.provider_id)
    if not resolution.resolved:
        raise ConfigurationError("Chat model is not configured for synthesis")
    model = resolution.model

    context = [c for c in params.retrieved_context if c]
    lang = ctx.prompt_language(params.original_input)
    key = generate_cache_key({
        "node": "synthesis",
        "model": model,
        "input": params.original_input,
        "context": context,
        "history": history_payload(params.chat_history),
        "lang": lang,
    })

    async def compute() -> str:
        logger.info(
            "[synthesis] Calling model %s with %d context snippets", model, len(context)
        )
        messages = [
            system(ctx.prompts.get_prompt(PromptKey.ANSWER_SYNTH_SYSTEM, lang, NoVars())),
            *params.chat_history,
            user(ctx.prompts.get_prompt(
                PromptKey.ANSWER_SYNTH_USER,
                lang,
                SynthesisUserVars(original_input=params.original_input, context=context),
            )),
        ]
        result = await client.chat(ChatRequest(model=model, messages=messages))
        return (result or "").strip()

    try:
        return await ctx.cache.get_or_compute(key, compute)
    except Exception as e:
        logger.error("[synthesis] Failed: %s", e)
        raise
