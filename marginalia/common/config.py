"""
Configuration Management for Marginalia

Loads settings from ~/.marginalia/config.json and environment variables,
and resolves which chat / embedding model a request should use.
"""

import os
import sys
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .schemas import LLMConfig

logger = logging.getLogger("marginalia.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".marginalia"
CONFIG_PATH = CONFIG_DIR / "config.json"
DATA_DIR = CONFIG_DIR / "data"


@dataclass
class ChatSettings:
    """Legacy single-provider chat model settings"""
    type: str = "llm"  # "llm" or "vlm"
    model: str = ""


@dataclass
class EmbeddingSettings:
    """Legacy single-provider embedding model settings"""
    model: str = ""


@dataclass
class ProviderConfig:
    """A configured model provider"""
    id: str
    name: str = ""
    type: str = "openai_compatible"
    base_url: str = ""
    api_key: str = ""
    models: List[str] = field(default_factory=list)
    chat_model: str = ""
    embedding_model: str = ""
    enabled: bool = True


@dataclass
class CacheConfig:
    """Result cache configuration"""
    max_size: int = 100
    ttl: float = 1800.0  # seconds


@dataclass
class LLMClientConfig:
    """Timeout and retry policy applied at the LLM client boundary"""
    timeout: float = 30.0
    max_retries: int = 2
    retry_backoff: float = 0.5  # seconds, doubled per attempt
    max_tokens: int = 2048


@dataclass
class RetrieverConfig:
    """RAG retrieval configuration"""
    top_k: int = 5
    max_context_chars: int = 4000
    rag_timeout: float = 5.0  # seconds allowed for RAG prep before streaming
    collections: List[str] = field(default_factory=lambda: ["notes", "faqs"])


@dataclass
class StorageConfig:
    """Local persistence for the notes / FAQ stores"""
    notes_path: str = str(DATA_DIR / "notes.json")
    faqs_path: str = str(DATA_DIR / "faqs.json")


@dataclass
class Settings:
    """Main Marginalia configuration"""
    # Legacy single-provider fields
    provider: str = "openai_compatible"
    base_url: str = ""
    api_key: str = ""
    chat: ChatSettings = field(default_factory=ChatSettings)
    embedding: EmbeddingSettings = field(default_factory=EmbeddingSettings)
    # Multi-provider fields
    providers: List[ProviderConfig] = field(default_factory=list)
    default_provider_id: str = ""
    active_chat_provider_id: str = ""
    active_embedding_provider_id: str = ""
    language: str = "en"
    cache: CacheConfig = field(default_factory=CacheConfig)
    llm: LLMClientConfig = field(default_factory=LLMClientConfig)
    retriever: RetrieverConfig = field(default_factory=RetrieverConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    _env_sourced_keys: set = field(default_factory=set, repr=False)

    def get_provider(self, provider_id: Optional[str]) -> Optional[ProviderConfig]:
        """Find an enabled provider by id"""
        if not provider_id:
            return None
        for provider in self.providers:
            if provider.id == provider_id and provider.enabled:
                return provider
        return None


@dataclass(frozen=True)
class ModelResolution:
    """Outcome of model resolution. ``model`` is None when unresolved."""
    model: Optional[str]
    source: str

    @property
    def resolved(self) -> bool:
        return bool(self.model)


UNRESOLVED = ModelResolution(model=None, source="unresolved")


def _parse_provider(data: dict) -> ProviderConfig:
    """Parse a single entry of the providers list"""
    return ProviderConfig(
        id=str(data.get("id", "")),
        name=data.get("name", ""),
        type=data.get("type", "openai_compatible"),
        base_url=data.get("base_url", ""),
        api_key=data.get("api_key", ""),
        models=list(data.get("models", [])),
        chat_model=data.get("chat_model", ""),
        embedding_model=data.get("embedding_model", ""),
        enabled=data.get("enabled", True),
    )


def _parse_cache_config(data: dict) -> CacheConfig:
    """Parse cache section from config dict"""
    cache_data = data.get("cache", {})
    return CacheConfig(
        max_size=int(cache_data.get("max_size", 100)),
        ttl=float(cache_data.get("ttl", 1800.0)),
    )


def _parse_llm_client_config(data: dict) -> LLMClientConfig:
    """Parse llm section from config dict"""
    llm_data = data.get("llm", {})
    return LLMClientConfig(
        timeout=float(llm_data.get("timeout", 30.0)),
        max_retries=int(llm_data.get("max_retries", 2)),
        retry_backoff=float(llm_data.get("retry_backoff", 0.5)),
        max_tokens=int(llm_data.get("max_tokens", 2048)),
    )


def _parse_retriever_config(data: dict) -> RetrieverConfig:
    """Parse retriever section from config dict"""
    retriever_data = data.get("retriever", {})
    return RetrieverConfig(
        top_k=int(retriever_data.get("top_k", 5)),
        max_context_chars=int(retriever_data.get("max_context_chars", 4000)),
        rag_timeout=float(retriever_data.get("rag_timeout", 5.0)),
        collections=list(retriever_data.get("collections", ["notes", "faqs"])),
    )


def _parse_storage_config(data: dict) -> StorageConfig:
    """Parse storage section from config dict"""
    storage_data = data.get("storage", {})
    defaults = StorageConfig()
    return StorageConfig(
        notes_path=storage_data.get("notes_path", defaults.notes_path),
        faqs_path=storage_data.get("faqs_path", defaults.faqs_path),
    )


def _migrate_legacy_provider(config: Settings) -> None:
    """Create a default provider from legacy base_url/api_key settings.

    Only applies when no providers are configured, mirroring configs written
    before the providers list existed.
    """
    if config.providers or not config.base_url:
        return
    legacy = ProviderConfig(
        id="default",
        name="Default Provider",
        type=config.provider or "openai_compatible",
        base_url=config.base_url,
        api_key=config.api_key,
        models=[config.chat.model] if config.chat.model else [],
        chat_model=config.chat.model,
        embedding_model=config.embedding.model,
    )
    config.providers = [legacy]
    config.default_provider_id = config.default_provider_id or legacy.id
    config.active_chat_provider_id = config.active_chat_provider_id or legacy.id
    config.active_embedding_provider_id = config.active_embedding_provider_id or legacy.id


def parse_settings(data: dict) -> Settings:
    """Build Settings from a config dict (the JSON file layout)"""
    chat_data = data.get("chat", {})
    embedding_data = data.get("embedding", {})
    return Settings(
        provider=data.get("provider", "openai_compatible"),
        base_url=data.get("base_url", ""),
        api_key=data.get("api_key", ""),
        chat=ChatSettings(
            type=chat_data.get("type", "llm"),
            model=chat_data.get("model", ""),
        ),
        embedding=EmbeddingSettings(model=embedding_data.get("model", "")),
        providers=[_parse_provider(p) for p in data.get("providers", [])],
        default_provider_id=data.get("default_provider_id", ""),
        active_chat_provider_id=data.get("active_chat_provider_id", ""),
        active_embedding_provider_id=data.get("active_embedding_provider_id", ""),
        language=data.get("language", "en"),
        cache=_parse_cache_config(data),
        llm=_parse_llm_client_config(data),
        retriever=_parse_retriever_config(data),
        storage=_parse_storage_config(data),
    )


def load_config() -> Settings:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.marginalia/config.json)
    3. Default values
    """
    config = Settings()

    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)
            config = parse_settings(data)
        except (json.JSONDecodeError, IOError, ValueError, TypeError) as e:
            logger.warning("Failed to load config file %s: %s", CONFIG_PATH, e)

    _env_map = {
        "MARGINALIA_PROVIDER": "provider",
        "MARGINALIA_BASE_URL": "base_url",
        "MARGINALIA_API_KEY": "api_key",
        "OPENAI_API_KEY": "api_key",
        "MARGINALIA_LANGUAGE": "language",
    }
    for env_var, attr in _env_map.items():
        val = os.getenv(env_var)
        if val and not (attr == "api_key" and "api_key" in config._env_sourced_keys):
            setattr(config, attr, val)
            config._env_sourced_keys.add(attr)

    if os.getenv("MARGINALIA_CHAT_MODEL"):
        config.chat.model = os.getenv("MARGINALIA_CHAT_MODEL")
    if os.getenv("MARGINALIA_EMBEDDING_MODEL"):
        config.embedding.model = os.getenv("MARGINALIA_EMBEDDING_MODEL")
    if os.getenv("MARGINALIA_CACHE_SIZE"):
        config.cache.max_size = int(os.getenv("MARGINALIA_CACHE_SIZE"))
    if os.getenv("MARGINALIA_CACHE_TTL"):
        config.cache.ttl = float(os.getenv("MARGINALIA_CACHE_TTL"))
    if os.getenv("MARGINALIA_LLM_TIMEOUT"):
        config.llm.timeout = float(os.getenv("MARGINALIA_LLM_TIMEOUT"))

    _migrate_legacy_provider(config)
    return config


def settings_to_dict(config: Settings) -> dict:
    """Serialize Settings to the JSON file layout, without env-sourced secrets"""
    env_sourced = getattr(config, "_env_sourced_keys", set())
    return {
        "provider": config.provider,
        "base_url": config.base_url,
        "api_key": "" if "api_key" in env_sourced else config.api_key,
        "chat": {"type": config.chat.type, "model": config.chat.model},
        "embedding": {"model": config.embedding.model},
        "providers": [
            {
                "id": p.id,
                "name": p.name,
                "type": p.type,
                "base_url": p.base_url,
                "api_key": p.api_key,
                "models": list(p.models),
                "chat_model": p.chat_model,
                "embedding_model": p.embedding_model,
                "enabled": p.enabled,
            }
            for p in config.providers
        ],
        "default_provider_id": config.default_provider_id,
        "active_chat_provider_id": config.active_chat_provider_id,
        "active_embedding_provider_id": config.active_embedding_provider_id,
        "language": config.language,
        "cache": {"max_size": config.cache.max_size, "ttl": config.cache.ttl},
        "llm": {
            "timeout": config.llm.timeout,
            "max_retries": config.llm.max_retries,
            "retry_backoff": config.llm.retry_backoff,
            "max_tokens": config.llm.max_tokens,
        },
        "retriever": {
            "top_k": config.retriever.top_k,
            "max_context_chars": config.retriever.max_context_chars,
            "rag_timeout": config.retriever.rag_timeout,
            "collections": list(config.retriever.collections),
        },
        "storage": {
            "notes_path": config.storage.notes_path,
            "faqs_path": config.storage.faqs_path,
        },
    }


def save_config(config: Settings) -> None:
    """Save configuration to file.

    API keys that were sourced from environment variables are written as
    empty strings so that secrets are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    with open(CONFIG_PATH, "w") as f:
        json.dump(settings_to_dict(config), f, indent=2)

    # Set secure permissions
    CONFIG_PATH.chmod(0o600)


def ensure_directories() -> None:
    """Ensure required directories exist"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    DATA_DIR.mkdir(parents=True, exist_ok=True)


def setup_logging(level: str = "INFO") -> None:
    """Log to stderr; stdout carries the MCP stdio transport."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger("marginalia")
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


class SettingsProvider:
    """
    Synchronous access to process-wide settings.

    Settings are loaded once and kept until ``reload()``. Tests construct the
    provider around an explicit Settings instance.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        loader: Callable[[], Settings] = load_config,
    ):
        self._settings = settings
        self._loader = loader

    def get_settings_sync(self) -> Settings:
        if self._settings is None:
            self._settings = self._loader()
        return self._settings

    def reload(self) -> Settings:
        self._settings = self._loader()
        return self._settings

    def update(self, settings: Settings, persist: bool = False) -> None:
        self._settings = settings
        if persist:
            save_config(settings)


# ---------------------------------------------------------------------------
# Model resolution
# ---------------------------------------------------------------------------

def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def resolve_provider(
    settings: Settings,
    llm_config: Optional[LLMConfig] = None,
    provider_id: Optional[str] = None,
) -> Optional[ProviderConfig]:
    """Pick the provider for a chat request.

    Priority: explicit provider id > default provider > active chat provider.
    """
    candidates = [
        provider_id,
        llm_config.provider_id if llm_config else None,
        settings.default_provider_id,
        settings.active_chat_provider_id,
    ]
    for candidate in candidates:
        provider = settings.get_provider(candidate)
        if provider is not None:
            return provider
    return None


def resolve_chat_model(
    llm_config: Optional[LLMConfig],
    settings: Settings,
    provider_id: Optional[str] = None,
) -> ModelResolution:
    """Resolve the chat model for a request.

    Priority:
    1. Caller-supplied llm_config.chat_model
    2. Provider chat_model, or its first listed model
       (explicit id > default provider > active chat provider)
    3. Legacy settings.chat.model
    4. Unresolved
    """
    requested = _clean(llm_config.chat_model if llm_config else None)
    if requested:
        return ModelResolution(model=requested, source="request")

    provider = resolve_provider(settings, llm_config, provider_id)
    if provider is not None:
        model = _clean(provider.chat_model) or (_clean(provider.models[0]) if provider.models else "")
        if model:
            return ModelResolution(model=model, source=f"provider:{provider.id}")

    legacy = _clean(settings.chat.model)
    if legacy:
        return ModelResolution(model=legacy, source="settings")

    return UNRESOLVED


def resolve_embedding_model(
    llm_config: Optional[LLMConfig],
    settings: Settings,
) -> ModelResolution:
    """Resolve the embedding model.

    Priority:
    1. Caller-supplied llm_config.embedding_model
    2. Active embedding provider, then default provider (embedding_model only)
    3. Legacy settings.embedding.model
    4. Unresolved
    """
    requested = _clean(llm_config.embedding_model if llm_config else None)
    if requested:
        return ModelResolution(model=requested, source="request")

    for candidate in (settings.active_embedding_provider_id, settings.default_provider_id):
        provider = settings.get_provider(candidate)
        if provider is not None and _clean(provider.embedding_model):
            return ModelResolution(model=_clean(provider.embedding_model), source=f"provider:{provider.id}")

    legacy = _clean(settings.embedding.model)
    if legacy:
        return ModelResolution(model=legacy, source="settings")

    return UNRESOLVED
