"""Shared fakes for node, retriever and agent tests."""

from typing import Callable, List, Optional, Union

import pytest

from marginalia.common.config import ChatSettings, EmbeddingSettings, Settings
from marginalia.common.schemas import ChatRequest
from marginalia.nodes import NodeContext


class FakeStream:
    """Async iterator over fixed chunks that records how far it was read."""

    def __init__(self, chunks: List[str]):
        self._chunks = list(chunks)
        self.delivered = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        if self.closed or not self._chunks:
            raise StopAsyncIteration
        self.delivered += 1
        return self._chunks.pop(0)

    async def aclose(self) -> None:
        self.closed = True


class FakeLLMClient:
    """Counts upstream calls; replies from a fixed value, a list, or a callable."""

    def __init__(
        self,
        reply: Union[str, List[str], Callable[[ChatRequest], str]] = "ok",
        error: Optional[Exception] = None,
        chunks: Optional[List[str]] = None,
        embedding: Optional[List[float]] = None,
        embed_error: Optional[Exception] = None,
    ):
        self.reply = reply
        self.error = error
        self.chunks = chunks or []
        self.embedding = embedding or [1.0, 0.0, 0.0]
        self.embed_error = embed_error
        self.chat_calls: List[ChatRequest] = []
        self.embed_calls: List[str] = []
        self.streams: List[FakeStream] = []

    async def chat(self, request: ChatRequest) -> str:
        self.chat_calls.append(request)
        if self.error is not None:
            raise self.error
        if callable(self.reply):
            return self.reply(request)
        if isinstance(self.reply, list):
            return self.reply.pop(0)
        return self.reply

    def chat_stream(self, request: ChatRequest) -> FakeStream:
        self.chat_calls.append(request)
        stream = FakeStream(self.chunks)
        self.streams.append(stream)
        return stream

    async def embed(self, text: str, model: str) -> List[float]:
        self.embed_calls.append(text)
        if self.embed_error is not None:
            raise self.embed_error
        return list(self.embedding)


@pytest.fixture
def settings():
    return Settings(
        chat=ChatSettings(model="test-chat"),
        embedding=EmbeddingSettings(model="test-embed"),
    )


@pytest.fixture
def unconfigured_settings():
    return Settings()


@pytest.fixture
def ctx(settings):
    return NodeContext.from_settings(settings)


@pytest.fixture
def client():
    return FakeLLMClient()
