"""
Polish Node

Rewrites text for clarity and flow in a requested style.
"""

from typing import Optional

from pydantic import BaseModel

from ..common.llm_utils import strip_markdown_wrapper
from ..common.prompts import NoVars, PolishUserVars, PromptKey
from ..common.schemas import LLMConfig
from ..common.schemas.messages import system, user
from .base import NodeContext, StageResult, run_transform

DEFAULT_STYLE = "default"


class PolishParams(BaseModel):
    text: str
    style: Optional[str] = None
    llm_config: Optional[LLMConfig] = None
    provider_id: Optional[str] = None


async def polish_node(ctx: NodeContext, client, params: PolishParams) -> StageResult[str]:
    style = (params.style or DEFAULT_STYLE).strip() or DEFAULT_STYLE
    lang = ctx.prompt_language(params.text)

    return await run_transform(
        ctx,
        client,
        stage="polish",
        fallback=params.text,
        key_fields={"text": params.text, "style": style, "lang": lang},
        build_messages=lambda: [
            system(ctx.prompts.get_prompt(PromptKey.POLISH_SYSTEM, lang, NoVars())),
            user(ctx.prompts.get_prompt(
                PromptKey.POLISH_USER, lang, PolishUserVars(text=params.text, style=style)
            )),
        ],
        postprocess=lambda out: strip_markdown_wrapper(out).strip(),
        llm_config=params.llm_config,
        provider_id=params.provider_id,
    )
