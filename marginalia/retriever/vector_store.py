"""
Vector Store

Collection of embedded snippets searched by cosine similarity.
``InMemoryVectorStore`` keeps vectors in a numpy matrix; other backends
implement the same async interface.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

from ..common.errors import RetrievalError
from ..common.schemas import FAQItem, Note

logger = logging.getLogger("marginalia.retriever.vector_store")


@dataclass
class VectorRecord:
    """A stored snippet with its embedding"""
    id: str
    text: str
    vector: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorMatch:
    """A single similarity search hit"""
    id: str
    text: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class VectorStore(ABC):
    """Async vector store interface"""

    collection: str = "notes"

    @abstractmethod
    async def upsert(self, id: str, text: str, vector: List[float], metadata: Optional[Dict[str, Any]] = None) -> None:
        ...

    @abstractmethod
    async def update(
        self,
        id: str,
        text: Optional[str] = None,
        vector: Optional[List[float]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...

    @abstractmethod
    async def delete(self, id: str) -> None:
        ...

    @abstractmethod
    async def search(self, vector: List[float], top_k: int, tags: Optional[List[str]] = None) -> List[VectorMatch]:
        ...

    async def upsert_note(self, note: Note, vector: List[float]) -> None:
        await self.upsert(
            note.id,
            note.index_text,
            vector,
            {"note_id": note.id, "tags": list(note.tags), "source_url": note.source_url, "role": note.role.value},
        )

    async def upsert_faq(self, faq: FAQItem, vector: List[float]) -> None:
        await self.upsert(faq.id, faq.index_text, vector, {"faq_id": faq.id, "tags": list(faq.tags)})


class InMemoryVectorStore(VectorStore):
    """
    In-process vector store using numpy cosine similarity.

    Vectors are L2-normalized on insert so search is a single matrix-vector
    product. All vectors in a collection must share one dimension.
    """

    def __init__(self, collection: str = "notes"):
        self.collection = collection
        self._records: Dict[str, VectorRecord] = {}
        self._normalized: Dict[str, np.ndarray] = {}
        self._dim: Optional[int] = None

    def __len__(self) -> int:
        return len(self._records)

    @staticmethod
    def _normalize(vector: List[float]) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float32)
        norm = float(np.linalg.norm(arr))
        return arr / norm if norm > 0 else arr

    def _check_dim(self, vector: List[float]) -> None:
        if not vector:
            raise RetrievalError(f"[{self.collection}] Empty embedding vector")
        if self._dim is None or not self._records:
            self._dim = len(vector)
        elif len(vector) != self._dim:
            raise RetrievalError(
                f"[{self.collection}] Dimension mismatch: expected {self._dim}, got {len(vector)}"
            )

    async def upsert(self, id: str, text: str, vector: List[float], metadata: Optional[Dict[str, Any]] = None) -> None:
        self._check_dim(vector)
        self._records[id] = VectorRecord(id=id, text=text, vector=list(vector), metadata=dict(metadata or {}))
        self._normalized[id] = self._normalize(vector)
        logger.debug("[%s] Upserted %s (%d records)", self.collection, id, len(self._records))

    async def update(
        self,
        id: str,
        text: Optional[str] = None,
        vector: Optional[List[float]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        record = self._records.get(id)
        if record is None:
            if text is None or vector is None:
                raise RetrievalError(f"[{self.collection}] Record {id} not found")
            await self.upsert(id, text, vector, metadata)
            return

        if vector is not None:
            self._check_dim(vector)
            record.vector = list(vector)
            self._normalized[id] = self._normalize(vector)
        if text is not None:
            record.text = text
        if metadata is not None:
            record.metadata = {**record.metadata, **metadata}

    async def delete(self, id: str) -> None:
        self._records.pop(id, None)
        self._normalized.pop(id, None)

    async def get(self, id: str) -> Optional[VectorRecord]:
        return self._records.get(id)

    async def search(self, vector: List[float], top_k: int, tags: Optional[List[str]] = None) -> List[VectorMatch]:
        if top_k <= 0 or not self._records:
            return []
        if self._dim is not None and len(vector) != self._dim:
            raise RetrievalError(
                f"[{self.collection}] Query dimension {len(vector)} does not match index dimension {self._dim}"
            )

        ids = [
            rid for rid, rec in self._records.items()
            if not tags or any(t in rec.metadata.get("tags", []) for t in tags)
        ]
        if not ids:
            return []

        matrix = np.stack([self._normalized[rid] for rid in ids])
        similarities = matrix @ self._normalize(vector)

        if len(similarities) <= top_k:
            top_indices = np.argsort(similarities)[::-1]
        else:
            top_indices = np.argpartition(similarities, -top_k)[-top_k:]
            top_indices = top_indices[np.argsort(similarities[top_indices])[::-1]]

        results = []
        for idx in top_indices:
            record = self._records[ids[int(idx)]]
            results.append(VectorMatch(
                id=record.id,
                text=record.text,
                score=float(similarities[idx]),
                metadata=dict(record.metadata),
            ))
        return results
