"""
Marginalia Schemas

Pydantic models shared by the nodes, the retriever and the scribe.
"""

from .messages import (
    ChatMessage,
    ChatRequest,
    LLMConfig,
    ProviderType,
    Role,
)
from .notes import (
    Collection,
    FAQItem,
    Note,
    NoteDraft,
    NoteRole,
    RetrievalResult,
    RetrievalSource,
    generate_id,
)

__all__ = [
    "ChatMessage",
    "ChatRequest",
    "LLMConfig",
    "ProviderType",
    "Role",
    "Collection",
    "FAQItem",
    "Note",
    "NoteDraft",
    "NoteRole",
    "RetrievalResult",
    "RetrievalSource",
    "generate_id",
]
