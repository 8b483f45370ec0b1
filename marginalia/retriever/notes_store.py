"""
Notes Store

Persistent note and FAQ records with keyword/tag search. The in-memory
implementations optionally mirror their records to a JSON file.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel

from ..common.errors import RetrievalError
from ..common.schemas import FAQItem, Note
from ..common.schemas.notes import now_ms

logger = logging.getLogger("marginalia.retriever.notes_store")

# Stop words to filter from keywords
STOP_WORDS = {
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "shall", "can", "need", "to", "of",
    "in", "for", "on", "with", "at", "by", "from", "up", "about", "into",
    "over", "after", "we", "our", "us", "i", "me", "my", "you", "your",
    "it", "its", "they", "them", "their", "this", "that", "these", "those",
    "what", "which", "who", "whom", "when", "where", "why", "how", "and",
    "or", "but", "if", "because", "as", "just", "also",
}

# Partial keyword matches rank below a full phrase match
PHRASE_SCORE = 1.0
KEYWORD_WEIGHT = 0.8

_CJK_RE = re.compile(r"[一-鿿]")

R = TypeVar("R", bound=BaseModel)


def extract_keywords(query: str) -> List[str]:
    """Lower-cased query terms without stop words or very short words"""
    words = re.findall(r"\w+", (query or "").lower())
    keywords = [
        w for w in words
        if w not in STOP_WORDS and (len(w) > 2 or _CJK_RE.search(w))
    ]
    return list(dict.fromkeys(keywords))


def keyword_score(query: str, *fields: str) -> float:
    """Score how well ``fields`` match ``query``.

    1.0 for a case-insensitive phrase match, otherwise 0.8 times the share of
    query keywords present, 0.0 for no match.
    """
    q = (query or "").strip().lower()
    haystack = "\n".join(f for f in fields if f).lower()
    if not q:
        return PHRASE_SCORE
    if q in haystack:
        return PHRASE_SCORE
    keywords = extract_keywords(q)
    if not keywords:
        return 0.0
    matched = sum(1 for k in keywords if k in haystack)
    return KEYWORD_WEIGHT * matched / len(keywords)


@dataclass
class NoteMatch:
    """A note with its keyword score"""
    note: Note
    score: float


class NotesStore(ABC):
    """Async notes store interface"""

    @abstractmethod
    async def create(self, note: Note) -> Note:
        ...

    @abstractmethod
    async def read(self, id: str) -> Optional[Note]:
        ...

    @abstractmethod
    async def read_all(self) -> List[Note]:
        ...

    @abstractmethod
    async def update(self, id: str, updates: Dict[str, Any]) -> Note:
        ...

    @abstractmethod
    async def delete(self, id: str) -> None:
        ...

    @abstractmethod
    async def search(self, query: str, tags: Optional[List[str]] = None) -> List[NoteMatch]:
        ...


class _JsonRecords(Generic[R]):
    """Dict of pydantic records, optionally mirrored to a JSON file"""

    def __init__(self, model: Type[R], path: Optional[Union[str, Path]] = None):
        self._model = model
        self._path = Path(path) if path else None
        self.records: Dict[str, R] = {}
        if self._path and self._path.exists():
            self._load()

    def _load(self) -> None:
        try:
            with open(self._path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise RetrievalError(f"Failed to load {self._path}: {e}") from e
        self.records = {rid: self._model(**raw) for rid, raw in data.items()}
        logger.info("Loaded %d records from %s", len(self.records), self._path)

    def save(self) -> None:
        if not self._path:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp, "w") as f:
            json.dump(
                {rid: rec.model_dump(mode="json") for rid, rec in self.records.items()},
                f,
                indent=2,
                ensure_ascii=False,
            )
        tmp.replace(self._path)


class InMemoryNotesStore(NotesStore):
    """
    Dict-backed notes store.

    Args:
        path: Optional JSON file used to persist notes across restarts
    """

    _IMMUTABLE_FIELDS = {"id", "created_at"}

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self._store: _JsonRecords[Note] = _JsonRecords(Note, path)

    async def create(self, note: Note) -> Note:
        now = now_ms()
        created = note.model_copy(update={"created_at": now, "updated_at": now})
        self._store.records[created.id] = created
        self._store.save()
        return created

    async def read(self, id: str) -> Optional[Note]:
        return self._store.records.get(id)

    async def read_all(self) -> List[Note]:
        return sorted(self._store.records.values(), key=lambda n: n.created_at)

    async def update(self, id: str, updates: Dict[str, Any]) -> Note:
        note = self._store.records.get(id)
        if note is None:
            raise KeyError(f"Note {id} not found")
        changes = {k: v for k, v in updates.items() if k not in self._IMMUTABLE_FIELDS}
        updated = Note(**{**note.model_dump(), **changes, "updated_at": now_ms()})
        self._store.records[id] = updated
        self._store.save()
        return updated

    async def delete(self, id: str) -> None:
        if self._store.records.pop(id, None) is not None:
            self._store.save()

    async def search(self, query: str, tags: Optional[List[str]] = None) -> List[NoteMatch]:
        """Keyword/tag search, best matches first"""
        matches = []
        for note in self._store.records.values():
            if tags and not any(t in note.tags for t in tags):
                continue
            score = keyword_score(query, note.title, note.content, " ".join(note.tags))
            if score > 0:
                matches.append(NoteMatch(note=note, score=score))
        matches.sort(key=lambda m: (m.score, m.note.updated_at), reverse=True)
        return matches


class InMemoryFAQStore:
    """Dict-backed FAQ store, optionally persisted to JSON"""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self._store: _JsonRecords[FAQItem] = _JsonRecords(FAQItem, path)

    async def upsert(self, faq: FAQItem) -> FAQItem:
        self._store.records[faq.id] = faq
        self._store.save()
        return faq

    async def read(self, id: str) -> Optional[FAQItem]:
        return self._store.records.get(id)

    async def read_all(self) -> List[FAQItem]:
        return sorted(self._store.records.values(), key=lambda f: f.created_at)

    async def delete(self, id: str) -> None:
        if self._store.records.pop(id, None) is not None:
            self._store.save()
