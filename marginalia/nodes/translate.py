"""
Translate Node

Translates text into a target language. Short inputs (a word or a short
phrase) are answered dictionary-style with their own prompts.
"""

from typing import List, Optional

from pydantic import BaseModel

from ..common.language import is_dictionary_lookup
from ..common.llm_utils import strip_markdown_wrapper
from ..common.prompts import (
    NoVars,
    PromptKey,
    TranslateDictSystemVars,
    TranslateDictUserVars,
    TranslateUserVars,
)
from ..common.schemas import ChatMessage, LLMConfig
from ..common.schemas.messages import system, user
from .base import NodeContext, StageResult, run_transform


class TranslateParams(BaseModel):
    text: str
    target_lang: str
    source_lang: Optional[str] = None
    llm_config: Optional[LLMConfig] = None
    provider_id: Optional[str] = None


async def translate_node(ctx: NodeContext, client, params: TranslateParams) -> StageResult[str]:
    """Translate ``params.text``.

    Degrades to the original text (with the error attached) when no model
    resolves or the upstream call fails.
    """
    raw = params.text.strip()
    dictionary = is_dictionary_lookup(raw)
    lang = ctx.prompt_language()

    def build_messages() -> List[ChatMessage]:
        if dictionary:
            source_lang = params.source_lang or "Source Language"
            return [
                system(ctx.prompts.get_prompt(
                    PromptKey.TRANSLATE_DICT_SYSTEM, lang,
                    TranslateDictSystemVars(target_lang=params.target_lang, source_lang=source_lang),
                )),
                user(ctx.prompts.get_prompt(
                    PromptKey.TRANSLATE_DICT_USER, lang,
                    TranslateDictUserVars(text=raw, target_lang=params.target_lang, source_lang=source_lang),
                )),
            ]
        return [
            system(ctx.prompts.get_prompt(PromptKey.TRANSLATE_SYSTEM, lang, NoVars())),
            user(ctx.prompts.get_prompt(
                PromptKey.TRANSLATE_USER, lang,
                TranslateUserVars(text=raw, target_lang=params.target_lang),
            )),
        ]

    return await run_transform(
        ctx,
        client,
        stage="translate",
        fallback=params.text,
        key_fields={
            "text": raw,
            "target_lang": params.target_lang,
            "source_lang": params.source_lang or "",
            "dictionary": dictionary,
            "lang": lang,
        },
        build_messages=build_messages,
        postprocess=lambda out: strip_markdown_wrapper(out).strip(),
        llm_config=params.llm_config,
        provider_id=params.provider_id,
    )
