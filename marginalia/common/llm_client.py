"""
Provider-agnostic LLM client for Marginalia pipelines.

Supports OpenAI-compatible endpoints (OpenAI, Ollama, OpenRouter, DeepSeek,
DashScope, Zhipu), Anthropic and Google Gemini behind one async interface:
``chat``, ``chat_stream`` and ``embed``. Timeouts and bounded retry with
exponential backoff are enforced here and nowhere else.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from .config import Settings, resolve_provider
from .errors import ConfigurationError, UpstreamError
from .schemas import ChatRequest, LLMConfig

logger = logging.getLogger("marginalia.common.llm_client")

OPENAI_COMPATIBLE = {
    "openai_compatible",
    "openai",
    "ollama",
    "openrouter",
    "deepseek",
    "dashscope",
    "zhipu",
    "chatglm",
}

DEFAULT_BASE_URLS = {
    "ollama": "http://localhost:11434/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "deepseek": "https://api.deepseek.com/v1",
    "dashscope": "https://dashscope.aliyuncs.com/compatible-mode/v1",
    "zhipu": "https://open.bigmodel.cn/api/paas/v4",
    "chatglm": "https://open.bigmodel.cn/api/paas/v4",
}

_TIMEOUT_ERRORS = {"APITimeoutError", "ReadTimeout", "ConnectTimeout", "DeadlineExceeded"}
_CONNECTION_ERRORS = {"APIConnectionError", "ConnectError", "RemoteProtocolError", "ServiceUnavailable"}


def classify_error(exc: BaseException) -> UpstreamError:
    """Translate a provider SDK exception into an UpstreamError.

    Timeouts, connection failures and 408/429/5xx responses are retryable;
    other HTTP errors and malformed responses are not.
    """
    if isinstance(exc, UpstreamError):
        return exc

    names = {cls.__name__ for cls in type(exc).__mro__}
    status = getattr(exc, "status_code", None)
    if status is None:
        code = getattr(exc, "code", None)
        status = code if isinstance(code, int) else None

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)) or names & _TIMEOUT_ERRORS:
        return UpstreamError(f"LLM request timed out: {exc}", status_code=status, retryable=True)
    if names & _CONNECTION_ERRORS:
        return UpstreamError(f"LLM connection failed: {exc}", status_code=status, retryable=True)
    if status is not None:
        return UpstreamError(f"LLM request failed ({status}): {exc}", status_code=status)
    return UpstreamError(f"LLM request failed: {exc}", retryable=False)


def _split_system(request: ChatRequest) -> Tuple[str, List[Dict[str, str]]]:
    """Separate system messages from the conversation turns."""
    system_parts = [m.content for m in request.messages if m.role == "system"]
    turns = [{"role": m.role, "content": m.content} for m in request.messages if m.role != "system"]
    return "\n\n".join(system_parts), turns


class LLMClient:
    """Unified async chat / streaming / embedding client across LLM providers."""

    def __init__(
        self,
        provider: str = "openai_compatible",
        base_url: str = "",
        api_key: str = "",
        timeout: float = 30.0,
        max_retries: int = 2,
        retry_backoff: float = 0.5,
        max_tokens: int = 2048,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.provider = (provider or "openai_compatible").lower()
        self.base_url = base_url or DEFAULT_BASE_URLS.get(self.provider, "")
        self.timeout = timeout
        self.max_retries = max(0, max_retries)
        self.retry_backoff = retry_backoff
        self.max_tokens = max_tokens
        self._sleep = sleep
        self._client = None

        if self.provider in OPENAI_COMPATIBLE:
            if not api_key and self.provider != "ollama":
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(
                api_key=api_key or "ollama",
                base_url=self.base_url or None,
                timeout=timeout,
                max_retries=0,
            )
            return

        if self.provider == "anthropic":
            if not api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            import anthropic

            self._client = anthropic.AsyncAnthropic(
                api_key=api_key,
                base_url=self.base_url or None,
                timeout=timeout,
                max_retries=0,
            )
            return

        if self.provider == "google":
            if not api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            import google.generativeai as genai

            genai.configure(api_key=api_key)
            self._client = genai  # Store the module, not a model instance
            return

        logger.warning("Unsupported LLM provider: %s", self.provider)

    @property
    def is_available(self) -> bool:
        return self._client is not None

    def _require_client(self) -> None:
        if not self.is_available:
            raise ConfigurationError(f"LLM client for provider '{self.provider}' is not available")

    async def _with_retry(self, operation: str, call: Callable[[], Awaitable[Any]]) -> Any:
        attempt = 0
        while True:
            try:
                return await call()
            except ConfigurationError:
                raise
            except Exception as e:
                err = classify_error(e)
                if not err.retryable or attempt >= self.max_retries:
                    logger.error("[%s] %s failed after %d attempt(s): %s", self.provider, operation, attempt + 1, err)
                    if err is e:
                        raise
                    raise err from e
                delay = self.retry_backoff * (2 ** attempt)
                logger.warning(
                    "[%s] %s failed (%s), retrying in %.2fs", self.provider, operation, err, delay
                )
                await self._sleep(delay)
                attempt += 1

    # ------------------------------------------------------------------ #
    # Chat
    # ------------------------------------------------------------------ #

    async def chat(self, request: ChatRequest) -> str:
        """Single-shot chat completion. Raises UpstreamError on failure."""
        self._require_client()
        return await self._with_retry("chat", lambda: self._chat_once(request))

    async def _chat_once(self, request: ChatRequest) -> str:
        max_tokens = request.max_tokens or self.max_tokens

        if self.provider in OPENAI_COMPATIBLE:
            kwargs: Dict[str, Any] = {}
            if request.temperature is not None:
                kwargs["temperature"] = request.temperature
            response = await self._client.chat.completions.create(
                model=request.model,
                messages=[{"role": m.role, "content": m.content} for m in request.messages],
                max_tokens=max_tokens,
                **kwargs,
            )
            if not response.choices:
                raise UpstreamError("LLM returned no choices", retryable=False)
            return response.choices[0].message.content or ""

        if self.provider == "anthropic":
            system, turns = _split_system(request)
            kwargs = {"system": system} if system else {}
            response = await self._client.messages.create(
                model=request.model,
                max_tokens=max_tokens,
                messages=turns,
                **kwargs,
            )
            return "".join(block.text for block in response.content if getattr(block, "text", None))

        if self.provider == "google":
            model, contents = self._google_model(request)
            response = await model.generate_content_async(
                contents,
                generation_config={"max_output_tokens": max_tokens},
                request_options={"timeout": self.timeout},
            )
            return response.text

        raise ConfigurationError(f"Unsupported LLM provider: {self.provider}")

    def _google_model(self, request: ChatRequest):
        system, turns = _split_system(request)
        kwargs = {"model_name": request.model}
        if system:
            kwargs["system_instruction"] = system
        contents = [
            {"role": "model" if t["role"] == "assistant" else "user", "parts": [t["content"]]}
            for t in turns
        ]
        return self._client.GenerativeModel(**kwargs), contents

    # ------------------------------------------------------------------ #
    # Streaming
    # ------------------------------------------------------------------ #

    async def chat_stream(self, request: ChatRequest) -> AsyncIterator[str]:
        """Stream chat completion text chunks.

        Failures before the first chunk are retried like ``chat``; once a
        chunk has been delivered a failure is raised immediately. Closing the
        generator closes the upstream stream.
        """
        self._require_client()
        attempt = 0
        while True:
            stream = self._stream_once(request)
            delivered = False
            try:
                async for chunk in stream:
                    delivered = True
                    yield chunk
                return
            except ConfigurationError:
                raise
            except Exception as e:
                err = classify_error(e)
                if delivered or not err.retryable or attempt >= self.max_retries:
                    logger.error("[%s] chat_stream failed: %s", self.provider, err)
                    if err is e:
                        raise
                    raise err from e
                delay = self.retry_backoff * (2 ** attempt)
                logger.warning("[%s] chat_stream failed (%s), retrying in %.2fs", self.provider, err, delay)
                await self._sleep(delay)
                attempt += 1
            finally:
                await stream.aclose()

    async def _stream_once(self, request: ChatRequest) -> AsyncIterator[str]:
        max_tokens = request.max_tokens or self.max_tokens

        if self.provider in OPENAI_COMPATIBLE:
            stream = await self._client.chat.completions.create(
                model=request.model,
                messages=[{"role": m.role, "content": m.content} for m in request.messages],
                max_tokens=max_tokens,
                stream=True,
            )
            try:
                async for event in stream:
                    if not event.choices:
                        continue
                    delta = event.choices[0].delta.content
                    if delta:
                        yield delta
            finally:
                await stream.close()
            return

        if self.provider == "anthropic":
            system, turns = _split_system(request)
            kwargs = {"system": system} if system else {}
            async with self._client.messages.stream(
                model=request.model,
                max_tokens=max_tokens,
                messages=turns,
                **kwargs,
            ) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield text
            return

        if self.provider == "google":
            model, contents = self._google_model(request)
            response = await model.generate_content_async(
                contents,
                generation_config={"max_output_tokens": max_tokens},
                request_options={"timeout": self.timeout},
                stream=True,
            )
            async for chunk in response:
                text = getattr(chunk, "text", "")
                if text:
                    yield text
            return

        raise ConfigurationError(f"Unsupported LLM provider: {self.provider}")

    # ------------------------------------------------------------------ #
    # Embeddings
    # ------------------------------------------------------------------ #

    async def embed(self, text: str, model: str) -> List[float]:
        """Embed one text. Raises UpstreamError on failure."""
        self._require_client()
        if not model:
            raise ConfigurationError("Embedding model is not configured")
        return await self._with_retry("embed", lambda: self._embed_once(text, model))

    async def _embed_once(self, text: str, model: str) -> List[float]:
        if self.provider in OPENAI_COMPATIBLE:
            response = await self._client.embeddings.create(model=model, input=text)
            if not response.data:
                raise UpstreamError("No embedding vectors returned", retryable=False)
            return list(response.data[0].embedding)

        if self.provider == "google":
            result = await self._client.embed_content_async(
                model=model,
                content=text,
                request_options={"timeout": self.timeout},
            )
            return list(result["embedding"])

        raise ConfigurationError(f"Provider '{self.provider}' does not offer embeddings")


def _is_ollama(provider_type: str, name: str, base_url: str) -> bool:
    return (
        provider_type == "ollama"
        or "ollama" in (name or "").lower()
        or "11434" in (base_url or "")
    )


def create_client(
    settings: Settings,
    llm_config: Optional[LLMConfig] = None,
    provider_id: Optional[str] = None,
    for_embedding: bool = False,
) -> LLMClient:
    """Build an LLMClient for a request.

    Priority: caller config > selected provider > legacy top-level settings.
    Embedding clients prefer the active embedding provider.
    """
    if for_embedding and not provider_id:
        provider_id = settings.active_embedding_provider_id or None
    provider = resolve_provider(settings, llm_config, provider_id)

    requested_type = llm_config.provider.value if llm_config and llm_config.provider else ""
    if provider is not None:
        provider_type = requested_type or provider.type
        base_url = (llm_config.base_url if llm_config else None) or provider.base_url
        api_key = (llm_config.api_key if llm_config else None) or provider.api_key
        name = provider.name
    else:
        provider_type = requested_type or settings.provider
        base_url = (llm_config.base_url if llm_config else None) or settings.base_url
        api_key = (llm_config.api_key if llm_config else None) or settings.api_key
        name = ""

    if _is_ollama(provider_type, name, base_url):
        provider_type = "ollama"
        if base_url and not base_url.rstrip("/").endswith("/v1"):
            base_url = base_url.rstrip("/") + "/v1"

    logger.info(
        "Creating %s client (provider=%s, base_url=%s, has_api_key=%s)",
        "embedding" if for_embedding else "chat",
        provider_type,
        base_url or "(default)",
        bool(api_key),
    )
    return LLMClient(
        provider=provider_type,
        base_url=base_url,
        api_key=api_key,
        timeout=settings.llm.timeout,
        max_retries=settings.llm.max_retries,
        retry_backoff=settings.llm.retry_backoff,
        max_tokens=settings.llm.max_tokens,
    )
