"""
Retriever - Context Retrieval for Grounded Answers

Key Components:
- VectorStore: Embedded snippets searched by cosine similarity
- NotesStore: Note records searched by keyword and tag
- RAGService: Fuses both sources into ranked, budgeted context

Pipeline:
1. Embed the (transformed) query
2. Search vector collections and the notes store concurrently
3. Normalize, deduplicate and rank the union
4. Truncate to top_k and the context character budget
"""

from .notes_store import InMemoryFAQStore, InMemoryNotesStore, NoteMatch, NotesStore
from .rag_service import RAGService, format_snippet, fuse_results
from .vector_store import InMemoryVectorStore, VectorMatch, VectorStore

__all__ = [
    "InMemoryFAQStore",
    "InMemoryNotesStore",
    "NoteMatch",
    "NotesStore",
    "RAGService",
    "format_snippet",
    "fuse_results",
    "InMemoryVectorStore",
    "VectorMatch",
    "VectorStore",
]
