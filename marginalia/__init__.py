"""
Marginalia

An assistant for reading and note-taking: translation, polishing, grounded
chat and note capture, served to hosts over MCP.

Philosophy:
- Every LLM stage has an explicit outcome (value or degraded fallback)
- Transform stages never block the user: without a model, input comes back unchanged
- Answers are grounded on the user's own notes when related ones exist
- Notes are the source of truth; the vector index can always be rebuilt

Usage:
    from marginalia.common import load_config, LRUCache, LLMClient
    from marginalia.nodes import NodeContext, translate_node, polish_node
    from marginalia.retriever import RAGService, InMemoryNotesStore
    from marginalia.scribe import SyncService
    from marginalia.core_agent import CoreAgent
"""

__version__ = "0.1.0"
