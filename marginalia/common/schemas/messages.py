"""
LLM Request Schemas

Chat messages, chat requests and the per-call LLM configuration supplied by
the host.
"""

from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    """Chat message author"""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ProviderType(str, Enum):
    """Supported upstream provider families"""
    OPENAI_COMPATIBLE = "openai_compatible"
    OPENAI = "openai"
    OLLAMA = "ollama"
    OPENROUTER = "openrouter"
    DEEPSEEK = "deepseek"
    DASHSCOPE = "dashscope"
    ZHIPU = "zhipu"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


class ChatMessage(BaseModel):
    """A single immutable chat turn"""
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    role: Role
    content: str


class ChatRequest(BaseModel):
    """Request passed to LLMClient.chat / chat_stream"""
    model_config = ConfigDict(frozen=True)

    model: str = Field(..., min_length=1)
    messages: List[ChatMessage]
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None


class LLMConfig(BaseModel):
    """Per-call LLM configuration supplied by the caller.

    Every field is optional; anything left unset falls back to the stored
    settings (see config.resolve_chat_model).
    """
    chat_model: Optional[str] = None
    chat_type: Literal["llm", "vlm"] = "llm"
    embedding_model: Optional[str] = None
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    provider: Optional[ProviderType] = None
    provider_id: Optional[str] = None


def system(content: str) -> ChatMessage:
    return ChatMessage(role=Role.SYSTEM, content=content)


def user(content: str) -> ChatMessage:
    return ChatMessage(role=Role.USER, content=content)


def assistant(content: str) -> ChatMessage:
    return ChatMessage(role=Role.ASSISTANT, content=content)
