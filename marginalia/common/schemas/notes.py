"""
Note, FAQ and Retrieval Schemas

Records owned by the notes/vector stores, retrieval results produced by the
RAG service, and note drafts produced by note generation.
"""

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class NoteRole(str, Enum):
    """Who authored a note"""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    NOTE = "note"


class Collection(str, Enum):
    """Vector store collections"""
    NOTES = "notes"
    FAQS = "faqs"


class RetrievalSource(str, Enum):
    """Which store produced a retrieval result"""
    VECTOR = "vector"
    NOTES = "notes"


def generate_id() -> str:
    return uuid.uuid4().hex


def now_ms() -> int:
    return int(time.time() * 1000)


class Note(BaseModel):
    """A stored note"""
    id: str = Field(default_factory=generate_id)
    title: str = ""
    content: str = ""
    source_url: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    role: NoteRole = NoteRole.NOTE
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)

    @property
    def index_text(self) -> str:
        """Text embedded into the vector store"""
        return f"{self.title}\n{self.content}".strip()


class FAQItem(BaseModel):
    """A stored question/answer pair"""
    id: str = Field(default_factory=generate_id)
    question: str
    answer: str
    tags: List[str] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)

    @property
    def index_text(self) -> str:
        return f"{self.question}\n{self.answer}".strip()


class RetrievalResult(BaseModel):
    """A ranked context snippet"""
    source_id: str
    snippet: str
    score: float
    source: RetrievalSource
    metadata: Dict[str, Any] = Field(default_factory=dict)


class NoteDraft(BaseModel):
    """Output of note generation, ready to be persisted"""
    title: str
    content: str
    tags: List[str] = Field(default_factory=list)
    source_url: Optional[str] = None
    source_context: List[RetrievalResult] = Field(default_factory=list)

    def to_note(self, role: NoteRole = NoteRole.NOTE) -> Note:
        return Note(
            title=self.title,
            content=self.content,
            tags=list(self.tags),
            source_url=self.source_url,
            role=role,
        )
