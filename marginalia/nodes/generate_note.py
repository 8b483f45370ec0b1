"""
Generate Note Node

Turns selected text (plus optional source URL and related notes) into a
note draft. The model is asked for JSON; anything unparseable falls back to
a draft built from the selected text itself.
"""

import logging
import re
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from ..common.errors import ConfigurationError
from ..common.llm_utils import parse_llm_json
from ..common.prompts import NoVars, NoteGenUserVars, PromptKey
from ..common.schemas import ChatRequest, LLMConfig, NoteDraft, RetrievalResult
from ..common.schemas.messages import system, user
from .base import NodeContext

logger = logging.getLogger("marginalia.nodes.generate_note")

MAX_TAGS = 5
MAX_TITLE_CHARS = 80

_LINK_RE = re.compile(r"https?://[^\s)]+", re.IGNORECASE)
_TRAILING_PUNCT_RE = re.compile(r"[)\],.;]*$")


class GenerateNoteParams(BaseModel):
    selected_text: str
    source_url: Optional[str] = None
    context: List[str] = Field(default_factory=list)
    source_context: List[RetrievalResult] = Field(default_factory=list)
    llm_config: Optional[LLMConfig] = None
    provider_id: Optional[str] = None


def sanitize_tags(tags: Any) -> List[str]:
    if not isinstance(tags, list):
        return []
    cleaned = [t.strip() for t in tags if isinstance(t, str) and t.strip()]
    return cleaned[:MAX_TAGS]


def derive_title(selected_text: str) -> str:
    """First non-empty line, capped at 80 characters"""
    first_line = next((line.strip() for line in selected_text.splitlines() if line.strip()), "")
    return (first_line or selected_text)[:MAX_TITLE_CHARS].strip() or "Untitled"


def extract_links(text: str) -> List[str]:
    links: List[str] = []
    for match in _LINK_RE.findall(text or ""):
        link = _TRAILING_PUNCT_RE.sub("", match.strip())
        if link and link not in links:
            links.append(link)
    return links


def append_references(content: str, links: List[str]) -> str:
    """Append a References list for links the content does not mention yet"""
    missing = [link for link in links if link not in content]
    if not missing:
        return content
    references = "\n".join(f"- {link}" for link in missing)
    separator = "\n\n" if content.strip() else ""
    return f"{content.strip()}{separator}**References:**\n{references}"


def parse_note_response(raw: str, fallback: NoteDraft) -> Optional[NoteDraft]:
    parsed = parse_llm_json(raw)
    if not parsed:
        logger.warning("[generate_note] No JSON note in model output, using fallback draft")
        return None

    title = parsed.get("title")
    content = parsed.get("content")
    return NoteDraft(
        title=title.strip() if isinstance(title, str) and title.strip() else fallback.title,
        content=content.strip() if isinstance(content, str) and content.strip() else fallback.content,
        tags=sanitize_tags(parsed.get("tags")),
        source_url=fallback.source_url,
        source_context=fallback.source_context,
    )


async def generate_note_node(ctx: NodeContext, client, params: GenerateNoteParams) -> NoteDraft:
    """Generate a note draft. Upstream failures propagate; bad JSON does not."""
    resolution = ctx.resolve_model(params.llm_config, params.provider_id)
    if not resolution.resolved:
        raise ConfigurationError("Chat model is not configured for note generation")

    lang = ctx.prompt_language(params.selected_text)
    context = params.context or [r.snippet for r in params.source_context]
    messages = [
        system(ctx.prompts.get_prompt(PromptKey.NOTE_GEN_SYSTEM, lang, NoVars())),
        user(ctx.prompts.get_prompt(
            PromptKey.NOTE_GEN_USER,
            lang,
            NoteGenUserVars(
                selected_text=params.selected_text,
                source_url=params.source_url or "",
                context=context,
            ),
        )),
    ]

    logger.info("[generate_note] Calling model %s", resolution.model)
    raw = await client.chat(ChatRequest(model=resolution.model, messages=messages))

    fallback = NoteDraft(
        title=derive_title(params.selected_text),
        content=params.selected_text.strip(),
        tags=[],
        source_url=params.source_url,
        source_context=list(params.source_context),
    )
    draft = parse_note_response(raw or "", fallback) or fallback

    links = extract_links(params.selected_text)
    if params.source_url and params.source_url not in links:
        links.append(params.source_url)
    if links:
        draft = draft.model_copy(update={"content": append_references(draft.content, links)})
    return draft
