"""
Sync Service

Keeps the notes / FAQ stores and the vector index reconciled. Every CRUD
operation on a note is reflected in both; indexing failures on notes are
logged and never undo the note write.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..common.schemas import FAQItem, LLMConfig, Note
from ..common.schemas.notes import now_ms
from ..retriever.notes_store import InMemoryFAQStore, NotesStore
from ..retriever.rag_service import RAGService

logger = logging.getLogger("marginalia.scribe.sync")

# Note fields whose change requires re-embedding
_INDEXED_FIELDS = {"title", "content", "tags", "source_url"}


class SyncService:
    """
    Note and FAQ persistence with vector index synchronization.

    Args:
        notes_store: Primary note storage
        rag_service: Owner of the vector collections
        faq_store: FAQ storage (in-memory by default)
    """

    def __init__(
        self,
        notes_store: NotesStore,
        rag_service: RAGService,
        faq_store: Optional[InMemoryFAQStore] = None,
    ):
        self._notes = notes_store
        self._rag = rag_service
        self._faqs = faq_store or InMemoryFAQStore()

    # ------------------------------------------------------------------ #
    # Notes
    # ------------------------------------------------------------------ #

    async def create_note(self, note: Note, llm_config: Optional[LLMConfig] = None) -> Note:
        """Store a note, then index it. The note survives indexing failures."""
        created = await self._notes.create(note)
        try:
            await self._rag.index_note(created, llm_config)
        except Exception as e:
            logger.error(
                "Note %s saved but not indexed (%r, %d chars): %s",
                created.id, created.title[:50], len(created.content), e,
            )
        return created

    async def read_note(self, id: str) -> Optional[Note]:
        return await self._notes.read(id)

    async def read_all_notes(self) -> List[Note]:
        return await self._notes.read_all()

    async def update_note(
        self,
        id: str,
        updates: Dict[str, Any],
        llm_config: Optional[LLMConfig] = None,
    ) -> Note:
        """Update a note; re-index only when indexed fields changed."""
        updated = await self._notes.update(id, updates)
        if _INDEXED_FIELDS & {k for k, v in updates.items() if v}:
            try:
                await self._rag.update_note(updated, llm_config)
            except Exception as e:
                logger.error("Note %s updated but not re-indexed: %s", id, e)
        return updated

    async def delete_note(self, id: str) -> None:
        """Remove from the vector index first, then from the store."""
        try:
            await self._rag.delete_note(id)
        except Exception as e:
            logger.warning("Failed to remove note %s from vector index: %s", id, e)
        await self._notes.delete(id)

    async def delete_notes(self, ids: List[str]) -> None:
        await asyncio.gather(*(self.delete_note(i) for i in ids))

    async def search_notes(self, query: str, tags: Optional[List[str]] = None) -> List[Note]:
        matches = await self._notes.search(query, tags)
        return [m.note for m in matches]

    async def export_notes(self, format: str = "json") -> str:
        """Export every note as a JSON array or a Markdown document."""
        notes = await self._notes.read_all()

        if format == "json":
            return json.dumps([n.model_dump(mode="json") for n in notes], indent=2, ensure_ascii=False)
        if format != "markdown":
            raise ValueError(f"Unsupported export format: {format}")

        sections = []
        for note in notes:
            created = datetime.fromtimestamp(note.created_at / 1000).strftime("%Y-%m-%d")
            sections.append(
                f"# {note.title}\n\n{note.content}\n\n"
                f"- Tags: {', '.join(note.tags)}\n"
                f"- Source: {note.source_url or 'N/A'}\n"
                f"- Created: {created}\n"
            )
        return "\n---\n\n".join(sections)

    # ------------------------------------------------------------------ #
    # FAQs
    # ------------------------------------------------------------------ #

    async def create_faq(
        self,
        question: str,
        answer: str,
        tags: Optional[List[str]] = None,
        llm_config: Optional[LLMConfig] = None,
    ) -> FAQItem:
        """Index then store an FAQ. Indexing failures propagate."""
        faq = FAQItem(question=question, answer=answer, tags=list(tags or []))
        await self._rag.index_faq(faq, llm_config)
        return await self._faqs.upsert(faq)

    async def read_all_faqs(self) -> List[FAQItem]:
        return await self._faqs.read_all()

    async def update_faq(self, faq: FAQItem, llm_config: Optional[LLMConfig] = None) -> FAQItem:
        updated = faq.model_copy(update={"updated_at": now_ms()})
        await self._rag.update_faq(updated, llm_config)
        return await self._faqs.upsert(updated)

    async def delete_faq(self, faq_id: str) -> None:
        await self._rag.delete_faq(faq_id)
        await self._faqs.delete(faq_id)

    async def import_faqs(
        self,
        faqs: List[Dict[str, Any]],
        llm_config: Optional[LLMConfig] = None,
    ) -> Dict[str, Any]:
        """Create FAQs one by one, reporting per-item failures."""
        success = 0
        failed = 0
        errors: List[str] = []

        for item in faqs:
            question = str(item.get("question", ""))
            try:
                await self.create_faq(question, item["answer"], item.get("tags"), llm_config)
                success += 1
            except Exception as e:
                failed += 1
                errors.append(f"Failed to import FAQ: {question[:50]}... ({e})")

        logger.info("Imported FAQs: %d succeeded, %d failed", success, failed)
        return {"success": success, "failed": failed, "errors": errors}
