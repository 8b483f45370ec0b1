"""
Marginalia Common Module

Shared infrastructure for the nodes, the retriever and the scribe.
"""

from .cache import LRUCache, generate_cache_key
from .config import Settings, SettingsProvider, load_config
from .errors import ConfigurationError, MarginaliaError, RetrievalError, UpstreamError
from .llm_client import LLMClient, create_client
from .prompts import PromptKey, PromptProvider

__all__ = [
    "LRUCache",
    "generate_cache_key",
    "Settings",
    "SettingsProvider",
    "load_config",
    "ConfigurationError",
    "MarginaliaError",
    "RetrievalError",
    "UpstreamError",
    "LLMClient",
    "create_client",
    "PromptKey",
    "PromptProvider",
]
