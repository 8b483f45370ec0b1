"""
Scribe - Note Capture and Persistence

Persists generated notes and FAQs and keeps the vector index in sync.
"""

from .sync_service import SyncService

__all__ = ["SyncService"]
