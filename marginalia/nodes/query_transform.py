"""
Query Transform Node

Rewrites the latest user message into a standalone retrieval query using
the conversation history. Sits upstream of retrieval, so every failure
degrades to the user's input byte-for-byte.
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from ..common.llm_utils import strip_markdown_wrapper
from ..common.prompts import NoVars, PromptKey, QueryTransformUserVars
from ..common.schemas import ChatMessage, LLMConfig
from ..common.schemas.messages import system, user
from .base import NodeContext, StageResult, history_payload, render_history, run_transform


class QueryTransformParams(BaseModel):
    user_input: str
    chat_history: List[ChatMessage] = Field(default_factory=list)
    llm_config: Optional[LLMConfig] = None
    provider_id: Optional[str] = None


async def query_transform_node(
    ctx: NodeContext,
    client,
    params: QueryTransformParams,
) -> StageResult[str]:
    """Never raises; a degraded result carries ``params.user_input`` unchanged."""
    lang = ctx.prompt_language(params.user_input)

    return await run_transform(
        ctx,
        client,
        stage="query_transform",
        fallback=params.user_input,
        key_fields={
            "user_input": params.user_input,
            "history": history_payload(params.chat_history),
            "lang": lang,
        },
        build_messages=lambda: [
            system(ctx.prompts.get_prompt(PromptKey.QUERY_TRANSFORM_SYSTEM, lang, NoVars())),
            user(ctx.prompts.get_prompt(
                PromptKey.QUERY_TRANSFORM_USER,
                lang,
                QueryTransformUserVars(
                    user_input=params.user_input,
                    history=render_history(params.chat_history),
                ),
            )),
        ],
        postprocess=lambda out: strip_markdown_wrapper(out).strip(),
        llm_config=params.llm_config,
        provider_id=params.provider_id,
    )
