"""
Node Infrastructure

NodeContext carries the collaborators every node needs (cache, prompts,
settings). StageResult is the explicit success/degraded outcome of a
pipeline stage; the caller of each stage decides whether a degraded value is
acceptable.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, Type, TypeVar

from ..common.cache import LRUCache, generate_cache_key
from ..common.config import ModelResolution, Settings, SettingsProvider, resolve_chat_model
from ..common.errors import ConfigurationError, UpstreamError
from ..common.language import resolve_prompt_language
from ..common.prompts import PromptProvider
from ..common.schemas import ChatMessage, ChatRequest, LLMConfig

T = TypeVar("T")


@dataclass
class NodeContext:
    """Shared, explicitly constructed node collaborators"""
    cache: LRUCache
    prompts: PromptProvider
    settings: SettingsProvider
    language: Optional[str] = None  # None = follow settings / detect from input

    @classmethod
    def from_settings(cls, settings: Settings, prompts: Optional[PromptProvider] = None) -> "NodeContext":
        return cls(
            cache=LRUCache(max_size=settings.cache.max_size, ttl=settings.cache.ttl, name="nodes"),
            prompts=prompts or PromptProvider(language=resolve_prompt_language(settings.language)),
            settings=SettingsProvider(settings),
        )

    def resolve_model(self, llm_config: Optional[LLMConfig], provider_id: Optional[str] = None) -> ModelResolution:
        return resolve_chat_model(llm_config, self.settings.get_settings_sync(), provider_id)

    def prompt_language(self, text: str = "") -> str:
        """Prompt language: context override, else settings, else detected."""
        configured = self.language or self.settings.get_settings_sync().language
        return resolve_prompt_language(configured, text)


@dataclass(frozen=True)
class StageResult(Generic[T]):
    """Outcome of one pipeline stage.

    ``error`` is set when ``value`` is a fallback rather than the stage's
    real output.
    """
    value: T
    error: Optional[BaseException] = None
    stage: str = ""

    @property
    def degraded(self) -> bool:
        return self.error is not None

    def unwrap(self) -> T:
        """Return the value, or raise the recorded error."""
        if self.error is not None:
            raise self.error
        return self.value

    def recover(self, *error_types: Type[BaseException]) -> T:
        """Return the value, accepting degradation only for the given error types."""
        if self.error is None or isinstance(self.error, error_types):
            return self.value
        raise self.error


def history_payload(history: Sequence[ChatMessage]) -> List[Dict[str, str]]:
    """Normalized conversation for cache keys"""
    return [{"role": m.role, "content": m.content} for m in history]


def render_history(history: Sequence[ChatMessage]) -> List[str]:
    return [f"{m.role}: {m.content}" for m in history]


async def run_transform(
    ctx: NodeContext,
    client,
    *,
    stage: str,
    fallback: str,
    key_fields: Dict[str, Any],
    build_messages: Callable[[], List[ChatMessage]],
    postprocess: Callable[[str], str],
    llm_config: Optional[LLMConfig] = None,
    provider_id: Optional[str] = None,
) -> StageResult[str]:
    """Shared protocol for transform-class nodes.

    1. Resolve the model; unresolved -> fallback with ConfigurationError
    2. Cache lookup keyed by node, model and normalized inputs
    3. Build prompts, call the client, post-process, cache
    Any failure yields the fallback value with the error attached. Nothing
    is cached on failure.
    """
    logger = logging.getLogger(f"marginalia.nodes.{stage}")

    resolution = ctx.resolve_model(llm_config, provider_id)
    if not resolution.resolved:
        err = ConfigurationError(f"Chat model is not configured for {stage}")
        logger.warning("[%s] %s, returning input unchanged", stage, err)
        return StageResult(fallback, err, stage)

    key = generate_cache_key({"node": stage, "model": resolution.model, **key_fields})
    if ctx.cache.has(key):
        logger.info("[%s] Cache hit", stage)

    async def compute() -> str:
        logger.info("[%s] Calling model %s (%s)", stage, resolution.model, resolution.source)
        messages = build_messages()
        raw = await client.chat(ChatRequest(model=resolution.model, messages=messages))
        result = postprocess(raw or "")
        if not result:
            raise UpstreamError(f"Empty response from model for {stage}", retryable=False)
        return result

    try:
        value = await ctx.cache.get_or_compute(key, compute)
    except Exception as e:
        logger.warning("[%s] Failed, returning input unchanged: %s", stage, e)
        return StageResult(fallback, e, stage)

    return StageResult(value, stage=stage)
