"""
RAG Service

Retrieves ranked context for a query from two sources at once:
- Vector similarity over the notes / FAQ collections
- Keyword and tag matches from the notes store

The two lists are fused by per-source max-score normalization, deduplicated
by source id and truncated to a result count and a character budget.
Retrieval never raises: a failed source is dropped and logged.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from ..common.config import ModelResolution, SettingsProvider, resolve_embedding_model
from ..common.errors import ConfigurationError, RetrievalError
from ..common.schemas import Collection, FAQItem, LLMConfig, Note, RetrievalResult, RetrievalSource
from .notes_store import NotesStore
from .vector_store import InMemoryVectorStore, VectorMatch, VectorStore

logger = logging.getLogger("marginalia.retriever.rag")


def format_snippet(title: str, content: str, source_url: Optional[str] = None) -> str:
    """Render a context snippet for prompt interpolation"""
    parts = []
    if title:
        parts.append(f"Title: {title}")
    if content:
        parts.append(f"Content: {content}")
    if source_url:
        parts.append(f"Source: {source_url}")
    return "\n".join(parts)


def _snippet_from_match(match: VectorMatch) -> str:
    # Stored text layout is "title\ncontent"
    title, _, content = match.text.partition("\n")
    return format_snippet(title.strip(), content.strip(), match.metadata.get("source_url"))


def fuse_results(
    vector_results: Sequence[RetrievalResult],
    notes_results: Sequence[RetrievalResult],
    top_k: int,
    max_chars: int,
) -> List[RetrievalResult]:
    """Merge two ranked lists into one.

    Each list is normalized by its own maximum score. Results sharing a
    source id are merged and their normalized scores summed. The ranked
    union is cut to ``top_k`` results and ``max_chars`` snippet characters.
    """
    merged: Dict[str, RetrievalResult] = {}

    for results in (vector_results, notes_results):
        positive = [r for r in results if r.score > 0]
        if not positive:
            continue
        top = max(r.score for r in positive)
        for r in positive:
            normalized = r.score / top
            existing = merged.get(r.source_id)
            if existing is None:
                merged[r.source_id] = r.model_copy(update={"score": normalized})
            else:
                sources = existing.metadata.get("fused_sources", [existing.source.value])
                merged[r.source_id] = existing.model_copy(update={
                    "score": existing.score + normalized,
                    "metadata": {**existing.metadata, "fused_sources": sources + [r.source.value]},
                })

    ranked = sorted(merged.values(), key=lambda r: r.score, reverse=True)[:top_k]

    output: List[RetrievalResult] = []
    used = 0
    for r in ranked:
        if used + len(r.snippet) > max_chars:
            if not output and max_chars > 0:
                output.append(r.model_copy(update={"snippet": r.snippet[:max_chars]}))
            break
        output.append(r)
        used += len(r.snippet)
    return output


class RAGService:
    """
    Retrieval-augmented generation context provider.

    Args:
        client: LLMClient used for embeddings
        settings: SettingsProvider for model resolution and retriever limits
        notes_store: Keyword/tag searchable notes store (optional)
        vector_stores: Collection name -> VectorStore; defaults to in-memory
            "notes" and "faqs" collections
    """

    def __init__(
        self,
        client,
        settings: SettingsProvider,
        notes_store: Optional[NotesStore] = None,
        vector_stores: Optional[Dict[str, VectorStore]] = None,
    ):
        self._client = client
        self._settings = settings
        self.notes_store = notes_store
        self.vector_stores: Dict[str, VectorStore] = vector_stores or {
            Collection.NOTES.value: InMemoryVectorStore(Collection.NOTES.value),
            Collection.FAQS.value: InMemoryVectorStore(Collection.FAQS.value),
        }

    def _embedding_model(self, llm_config: Optional[LLMConfig] = None) -> ModelResolution:
        return resolve_embedding_model(llm_config, self._settings.get_settings_sync())

    def _store(self, collection: Collection) -> Optional[VectorStore]:
        return self.vector_stores.get(collection.value)

    async def _embed(self, text: str, llm_config: Optional[LLMConfig] = None) -> List[float]:
        resolution = self._embedding_model(llm_config)
        if not resolution.resolved:
            raise ConfigurationError("Embedding model is not configured")
        vector = await self._client.embed(text, resolution.model)
        if not vector:
            raise RetrievalError("No embedding vector returned")
        return vector

    # ------------------------------------------------------------------ #
    # Retrieval
    # ------------------------------------------------------------------ #

    async def retrieve(
        self,
        query: str,
        top_k: Optional[int] = None,
        tags: Optional[List[str]] = None,
        collections: Optional[List[str]] = None,
        llm_config: Optional[LLMConfig] = None,
    ) -> List[RetrievalResult]:
        """Ranked, budgeted context for ``query``. Never raises."""
        settings = self._settings.get_settings_sync()
        top_k = top_k or settings.retriever.top_k
        collections = collections or settings.retriever.collections

        if not query or not query.strip():
            return []

        vector_results, notes_results = await asyncio.gather(
            self._vector_search(query, top_k, tags, collections, llm_config),
            self._notes_search(query, tags),
            return_exceptions=True,
        )

        if isinstance(vector_results, asyncio.CancelledError):
            raise vector_results
        if isinstance(notes_results, asyncio.CancelledError):
            raise notes_results

        if isinstance(vector_results, BaseException):
            logger.warning("[rag] Vector search unavailable, using notes only: %s", vector_results)
            vector_results = []
        if isinstance(notes_results, BaseException):
            logger.warning("[rag] Notes search unavailable: %s", notes_results)
            notes_results = []

        results = fuse_results(vector_results, notes_results, top_k, settings.retriever.max_context_chars)
        logger.info(
            "[rag] Retrieved %d results (vector=%d, notes=%d)",
            len(results), len(vector_results), len(notes_results),
        )
        return results

    async def _vector_search(
        self,
        query: str,
        top_k: int,
        tags: Optional[List[str]],
        collections: List[str],
        llm_config: Optional[LLMConfig],
    ) -> List[RetrievalResult]:
        stores = [(name, self.vector_stores[name]) for name in collections if name in self.vector_stores]
        if not stores:
            return []

        try:
            vector = await self._embed(query, llm_config)
            per_store = await asyncio.gather(*(store.search(vector, top_k, tags) for _, store in stores))
        except RetrievalError:
            raise
        except Exception as e:
            raise RetrievalError(f"Vector search failed: {e}") from e

        results = []
        for (name, _), matches in zip(stores, per_store):
            for match in matches:
                results.append(RetrievalResult(
                    source_id=match.id,
                    snippet=_snippet_from_match(match),
                    score=match.score,
                    source=RetrievalSource.VECTOR,
                    metadata={**match.metadata, "collection": name},
                ))
        return results

    async def _notes_search(self, query: str, tags: Optional[List[str]]) -> List[RetrievalResult]:
        if self.notes_store is None:
            return []
        try:
            matches = await self.notes_store.search(query, tags)
        except RetrievalError:
            raise
        except Exception as e:
            raise RetrievalError(f"Notes search failed: {e}") from e

        return [
            RetrievalResult(
                source_id=m.note.id,
                snippet=format_snippet(m.note.title, m.note.content, m.note.source_url),
                score=m.score,
                source=RetrievalSource.NOTES,
                metadata={
                    "note_id": m.note.id,
                    "title": m.note.title,
                    "tags": list(m.note.tags),
                    "source_url": m.note.source_url,
                    "collection": Collection.NOTES.value,
                },
            )
            for m in matches
        ]

    @staticmethod
    def format_context(results: Sequence[RetrievalResult]) -> List[str]:
        """Snippets ready for the synthesis prompt"""
        return [r.snippet for r in results if r.snippet]

    # ------------------------------------------------------------------ #
    # Indexing
    # ------------------------------------------------------------------ #

    async def index_note(self, note: Note, llm_config: Optional[LLMConfig] = None) -> None:
        """Embed and store a note. Raises when the note cannot be indexed."""
        store = self._store(Collection.NOTES)
        if store is None or not note.index_text:
            return
        vector = await self._embed(note.index_text, llm_config)
        await store.upsert_note(note, vector)
        logger.info("[rag] Indexed note %s (%d dims)", note.id, len(vector))

    async def update_note(self, note: Note, llm_config: Optional[LLMConfig] = None) -> None:
        store = self._store(Collection.NOTES)
        if store is None:
            return
        if not self._embedding_model(llm_config).resolved:
            logger.info("[rag] Embedding model not configured, skipping re-index of %s", note.id)
            return
        vector = await self._embed(note.index_text, llm_config)
        await store.update(
            note.id,
            note.index_text,
            vector,
            {"note_id": note.id, "tags": list(note.tags), "source_url": note.source_url, "role": note.role.value},
        )

    async def delete_note(self, note_id: str) -> None:
        store = self._store(Collection.NOTES)
        if store is not None:
            await store.delete(note_id)

    async def index_faq(self, faq: FAQItem, llm_config: Optional[LLMConfig] = None) -> None:
        store = self._store(Collection.FAQS)
        if store is None:
            return
        if not self._embedding_model(llm_config).resolved:
            logger.info("[rag] Embedding model not configured, FAQ %s not indexed", faq.id)
            return
        vector = await self._embed(faq.index_text, llm_config)
        await store.upsert_faq(faq, vector)

    async def update_faq(self, faq: FAQItem, llm_config: Optional[LLMConfig] = None) -> None:
        store = self._store(Collection.FAQS)
        if store is None or not self._embedding_model(llm_config).resolved:
            return
        vector = await self._embed(faq.index_text, llm_config)
        await store.update(faq.id, faq.index_text, vector, {"faq_id": faq.id, "tags": list(faq.tags)})

    async def delete_faq(self, faq_id: str) -> None:
        store = self._store(Collection.FAQS)
        if store is not None:
            await store.delete(faq_id)
