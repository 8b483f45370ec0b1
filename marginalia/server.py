"""
Marginalia MCP Server

Transport: stdio only. Exposes the CoreAgent operations and note storage
as MCP tools.

Expected MCP Tool Return Format:
{
    "ok": bool,
    "results": Any,          # Present if ok is True
    "error": str            # Present if ok is False
}
"""

import argparse
import logging
import os
import signal
from typing import Annotated, Any, Dict, List, Optional

from dotenv import load_dotenv
from fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from .common.config import Settings, ensure_directories, load_config, setup_logging
from .common.llm_client import create_client
from .common.schemas import ChatMessage, LLMConfig, Note
from .core_agent import CoreAgent
from .nodes import NodeContext
from .retriever import InMemoryFAQStore, InMemoryNotesStore, RAGService
from .scribe import SyncService

logger = logging.getLogger("marginalia.server")


def _history(raw: Optional[List[Dict[str, str]]]) -> List[ChatMessage]:
    return [ChatMessage(role=m["role"], content=m["content"]) for m in raw or []]


def _error(e: Exception) -> Dict[str, Any]:
    return {"ok": False, "error": f"{type(e).__name__}: {e}"}


class MCPServerApp:
    """
    Main application class for the MCP server.

    Tools delegate to the CoreAgent (LLM operations) and the SyncService
    (note storage). Exceptions become ``{"ok": False, "error": ...}``.
    """

    def __init__(
        self,
        agent: CoreAgent,
        sync_service: Optional[SyncService] = None,
        mcp_server_name: str = "marginalia",
    ) -> None:
        self.agent = agent
        self.sync = sync_service
        self.mcp = FastMCP(name=mcp_server_name)

        # ---------- MCP Tools: Text transforms ---------- #
        @self.mcp.tool(
            name="translate",
            description=(
                "Translate text into a target language. Short inputs (a word or phrase) "
                "get a dictionary-style answer. Returns the input unchanged when no model is configured."
            ),
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False),
        )
        async def tool_translate(
            text: Annotated[str, Field(description="text to translate")],
            target_lang: Annotated[str, Field(description="target language name, e.g. 'English' or 'Chinese'")],
            source_lang: Annotated[Optional[str], Field(description="source language hint")] = None,
        ) -> Dict[str, Any]:
            try:
                return {"ok": True, "results": await self.agent.translate(text, target_lang, source_lang)}
            except Exception as e:
                logger.error("translate failed: %s", e)
                return _error(e)

        @self.mcp.tool(
            name="polish",
            description="Improve the clarity and fluency of text without changing its meaning.",
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False),
        )
        async def tool_polish(
            text: Annotated[str, Field(description="text to polish")],
            style: Annotated[Optional[str], Field(description="desired style, e.g. 'formal' or 'concise'")] = None,
        ) -> Dict[str, Any]:
            try:
                return {"ok": True, "results": await self.agent.polish(text, style)}
            except Exception as e:
                logger.error("polish failed: %s", e)
                return _error(e)

        # ---------- MCP Tools: Conversation ---------- #
        @self.mcp.tool(
            name="chat",
            description="Answer a chat turn, grounded on saved notes when related ones exist.",
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False),
        )
        async def tool_chat(
            message: Annotated[str, Field(description="the user's message")],
            history: Annotated[
                Optional[List[Dict[str, str]]],
                Field(description="previous turns as [{'role': 'user'|'assistant', 'content': str}]"),
            ] = None,
            rag_enabled: Annotated[bool, Field(description="retrieve related notes before answering")] = True,
            rag_context: Annotated[
                Optional[List[str]],
                Field(description="extra context snippets supplied by the host, used before retrieved notes"),
            ] = None,
        ) -> Dict[str, Any]:
            try:
                result = await self.agent.chat(
                    message,
                    _history(history),
                    rag_enabled=rag_enabled,
                    rag_context=rag_context,
                )
                return {"ok": True, "results": {"response": result.response, "trace": result.trace.to_dict()}}
            except Exception as e:
                logger.error("chat failed: %s", e)
                return _error(e)

        @self.mcp.tool(
            name="answer",
            description=(
                "Run the full answer pipeline: rewrite the question, retrieve related notes, "
                "synthesize a grounded answer and optionally draft a note from it."
            ),
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False),
        )
        async def tool_answer(
            question: Annotated[str, Field(description="the question to answer")],
            history: Annotated[Optional[List[Dict[str, str]]], Field(description="previous turns")] = None,
            generate_note: Annotated[bool, Field(description="also draft a note from the answer")] = False,
            top_k: Annotated[Optional[int], Field(description="maximum context snippets")] = None,
        ) -> Dict[str, Any]:
            try:
                result = await self.agent.answer(
                    question, _history(history), generate_note=generate_note, top_k=top_k
                )
                return {"ok": True, "results": result.to_dict()}
            except Exception as e:
                logger.error("answer failed: %s", e)
                return _error(e)

        @self.mcp.tool(
            name="ask_with_context",
            description="Ask about a text selection from a page. The selection is quoted before the question.",
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False),
        )
        async def tool_ask_with_context(
            text: Annotated[str, Field(description="selected text")],
            question: Annotated[Optional[str], Field(description="question about the selection")] = None,
            source_url: Annotated[Optional[str], Field(description="page the selection came from")] = None,
        ) -> Dict[str, Any]:
            try:
                result = await self.agent.ask_with_context(text, source_url, question)
                return {"ok": True, "results": {"response": result.response, "trace": result.trace.to_dict()}}
            except Exception as e:
                logger.error("ask_with_context failed: %s", e)
                return _error(e)

        # ---------- MCP Tools: Retrieval ---------- #
        @self.mcp.tool(
            name="retrieve",
            description="Search saved notes and FAQs by meaning and keywords.",
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False),
        )
        async def tool_retrieve(
            query: Annotated[str, Field(description="search query")],
            top_k: Annotated[Optional[int], Field(description="maximum results")] = None,
            tags: Annotated[Optional[List[str]], Field(description="only return results with one of these tags")] = None,
        ) -> Dict[str, Any]:
            try:
                results = await self.agent.retrieve(query, top_k=top_k, tags=tags)
                return {"ok": True, "results": [r.model_dump(mode="json") for r in results]}
            except Exception as e:
                logger.error("retrieve failed: %s", e)
                return _error(e)

        # ---------- MCP Tools: Notes ---------- #
        @self.mcp.tool(
            name="generate_note",
            description="Draft a note (title, content, tags) from selected text, optionally saving it.",
            annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False),
        )
        async def tool_generate_note(
            selected_text: Annotated[str, Field(description="text to turn into a note")],
            source_url: Annotated[Optional[str], Field(description="page the text came from")] = None,
            save: Annotated[bool, Field(description="save the note in the background")] = False,
        ) -> Dict[str, Any]:
            try:
                draft = await self.agent.generate_note(selected_text, source_url, persist=save)
                return {"ok": True, "results": draft.model_dump(mode="json", exclude={"source_context"})}
            except Exception as e:
                logger.error("generate_note failed: %s", e)
                return _error(e)

        @self.mcp.tool(
            name="create_note",
            description="Save a note and index it for retrieval.",
            annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False),
        )
        async def tool_create_note(
            title: Annotated[str, Field(description="note title")],
            content: Annotated[str, Field(description="note body (markdown)")],
            tags: Annotated[Optional[List[str]], Field(description="note tags")] = None,
            source_url: Annotated[Optional[str], Field(description="source page")] = None,
        ) -> Dict[str, Any]:
            if self.sync is None:
                return {"ok": False, "error": "Note storage is not configured"}
            try:
                note = await self.sync.create_note(
                    Note(title=title, content=content, tags=list(tags or []), source_url=source_url)
                )
                return {"ok": True, "results": note.model_dump(mode="json")}
            except Exception as e:
                logger.error("create_note failed: %s", e)
                return _error(e)

        @self.mcp.tool(
            name="search_notes",
            description="Find saved notes by keyword and tag.",
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False),
        )
        async def tool_search_notes(
            query: Annotated[str, Field(description="keywords or phrase")],
            tags: Annotated[Optional[List[str]], Field(description="only notes with one of these tags")] = None,
        ) -> Dict[str, Any]:
            if self.sync is None:
                return {"ok": False, "error": "Note storage is not configured"}
            try:
                notes = await self.sync.search_notes(query, tags)
                return {"ok": True, "results": [n.model_dump(mode="json") for n in notes]}
            except Exception as e:
                logger.error("search_notes failed: %s", e)
                return _error(e)

        @self.mcp.tool(
            name="delete_notes",
            description="Delete notes by id from storage and the retrieval index.",
            annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=True),
        )
        async def tool_delete_notes(
            ids: Annotated[List[str], Field(description="ids of the notes to delete")],
        ) -> Dict[str, Any]:
            if self.sync is None:
                return {"ok": False, "error": "Note storage is not configured"}
            try:
                await self.sync.delete_notes(ids)
                return {"ok": True, "results": {"deleted": len(ids)}}
            except Exception as e:
                logger.error("delete_notes failed: %s", e)
                return _error(e)

        @self.mcp.tool(
            name="export_notes",
            description="Export all notes as JSON or Markdown.",
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False),
        )
        async def tool_export_notes(
            format: Annotated[str, Field(description="'json' or 'markdown'")] = "json",
        ) -> Dict[str, Any]:
            if self.sync is None:
                return {"ok": False, "error": "Note storage is not configured"}
            try:
                return {"ok": True, "results": await self.sync.export_notes(format)}
            except Exception as e:
                logger.error("export_notes failed: %s", e)
                return _error(e)

        @self.mcp.tool(
            name="import_faqs",
            description="Import FAQs given as [{'question': str, 'answer': str, 'tags': [str]}].",
            annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False),
        )
        async def tool_import_faqs(
            faqs: Annotated[List[Dict[str, Any]], Field(description="FAQ entries to import")],
        ) -> Dict[str, Any]:
            if self.sync is None:
                return {"ok": False, "error": "Note storage is not configured"}
            try:
                return {"ok": True, "results": await self.sync.import_faqs(faqs)}
            except Exception as e:
                logger.error("import_faqs failed: %s", e)
                return _error(e)

        # ---------- MCP Tools: Diagnostics ---------- #
        @self.mcp.tool(
            name="cache_stats",
            description="Hit/miss statistics of the result cache.",
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False),
        )
        async def tool_cache_stats() -> Dict[str, Any]:
            return {"ok": True, "results": self.agent.ctx.cache.stats().to_dict()}

    def run(self) -> None:
        """Runs the MCP server using stdio transport."""
        self.mcp.run(transport="stdio")


def build_app(settings: Settings, server_name: str = "marginalia") -> MCPServerApp:
    """Wire stores, services and the agent from settings."""
    ensure_directories()

    ctx = NodeContext.from_settings(settings)
    chat_client = create_client(settings)
    embedding_client = create_client(settings, for_embedding=True)

    notes_store = InMemoryNotesStore(settings.storage.notes_path)
    rag = RAGService(embedding_client, ctx.settings, notes_store=notes_store)
    sync = SyncService(notes_store, rag, InMemoryFAQStore(settings.storage.faqs_path))

    def client_factory(llm_config: LLMConfig):
        return create_client(settings, llm_config)

    agent = CoreAgent(ctx, chat_client, rag, sync, client_factory=client_factory)
    return MCPServerApp(agent, sync, mcp_server_name=server_name)


def main() -> None:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Run the Marginalia MCP server (stdio).")
    parser.add_argument(
        "--server-name",
        default=os.getenv("MCP_SERVER_NAME", "marginalia"),
        help="Advertised MCP server name.",
    )
    parser.add_argument(
        "--language",
        default=None,
        help="Prompt language ('en', 'zh' or 'auto'); overrides the config file.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("MARGINALIA_LOG_LEVEL", "INFO"),
        help="Logging level.",
    )
    args = parser.parse_args()

    setup_logging(args.log_level)

    settings = load_config()
    if args.language:
        settings.language = args.language

    app = build_app(settings, server_name=args.server_name)
    logger.info("Starting %s (language=%s)", args.server_name, settings.language)

    def _handle_shutdown(signum, frame):
        raise SystemExit(0)
    for sig in (signal.SIGINT, getattr(signal, "SIGTERM", None)):
        if sig is not None:
            signal.signal(sig, _handle_shutdown)

    app.run()


if __name__ == "__main__":
    main()
