"""
Shared fixtures: scripted model gateways, transcripts and store factories.

Nothing here talks to a real model or embedding endpoint.
"""

import json
import os
import sys
from typing import Any, Dict, List, Optional

import pytest

# Add the backend directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from storymem.config import Settings
from storymem.errors import LLMEmptyResponseError, LLMNotConfiguredError
from storymem.models.fact_store import CompressionLevel, StoryPage
from storymem.services.interfaces import ChatTurn, InMemoryInjectionSink, InMemoryTranscript, LoggingEvents
from storymem.services.llm.client import ChatCompletion, ToolCall
from storymem.services.persistence import FactStoreProvider, InMemoryFactStoreRepository


class ScriptedGateway:
    """Stands in for LLMGateway. Each call pops the next scripted reply.

    A scripted reply may be a string, an exception instance (raised) or a
    callable taking the call's arguments.
    """

    def __init__(
        self,
        responses: Optional[List[Any]] = None,
        chat_responses: Optional[List[Any]] = None,
        has_secondary: bool = True,
    ):
        self.responses = list(responses or [])
        self.chat_responses = list(chat_responses or [])
        self._has_secondary = has_secondary
        self.calls: List[Dict[str, Any]] = []
        self.chat_calls: List[Dict[str, Any]] = []

    @property
    def has_secondary(self) -> bool:
        return self._has_secondary

    @staticmethod
    def _next(queue: List[Any], *args):
        if not queue:
            raise LLMEmptyResponseError("No scripted response left")
        reply = queue.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(*args)
        return reply

    async def complete(self, system_prompt, user_prompt, max_tokens=None) -> str:
        self.calls.append({"system": system_prompt, "user": user_prompt, "max_tokens": max_tokens})
        return self._next(self.responses, system_prompt, user_prompt, max_tokens)

    async def complete_secondary(self, system_prompt, user_prompt, max_tokens=None) -> str:
        if not self._has_secondary:
            raise LLMNotConfiguredError("Secondary backend is not configured")
        return await self.complete(system_prompt, user_prompt, max_tokens)

    async def complete_chat(self, messages, tools=None, max_tokens=None) -> ChatCompletion:
        if not self._has_secondary:
            raise LLMNotConfiguredError("Tool calling requires the secondary backend")
        self.chat_calls.append({"messages": [dict(m) for m in messages], "tools": tools, "max_tokens": max_tokens})
        return self._next(self.chat_responses, messages, tools, max_tokens)


class FakeEmbeddingGateway:
    """Maps texts to vectors through a lookup function."""

    def __init__(self, vector_for=None, fail: bool = False, configured: bool = True):
        self.vector_for = vector_for or (lambda text: [1.0, 0.0, 0.0])
        self.fail = fail
        self._configured = configured
        self.calls: List[List[str]] = []

    @property
    def configured(self) -> bool:
        return self._configured

    async def embed(self, texts: List[str]) -> List[List[float]]:
        from storymem.errors import EmbeddingError
        self.calls.append(list(texts))
        if self.fail:
            raise EmbeddingError("scripted embedding failure")
        return [self.vector_for(t) for t in texts]


def text_reply(content: str) -> ChatCompletion:
    return ChatCompletion(content=content, raw_message={"role": "assistant", "content": content})


def tool_reply(*calls: ToolCall) -> ChatCompletion:
    raw_calls = [
        {"id": c.id, "type": "function", "function": {"name": c.name, "arguments": json.dumps(c.arguments)}}
        for c in calls
    ]
    return ChatCompletion(
        content="",
        tool_calls=list(calls),
        raw_message={"role": "assistant", "content": "", "tool_calls": raw_calls},
    )


def extraction_reply(
    pages: Optional[List[Dict[str, Any]]] = None,
    timeline: str = "",
    new_characters: Optional[List[Dict[str, Any]]] = None,
    attitudes: Optional[List[Dict[str, Any]]] = None,
    items: Optional[List[Dict[str, Any]]] = None,
    fenced: bool = True,
) -> str:
    payload = json.dumps({
        "timeline": timeline,
        "knownCharacterAttitudes": attitudes or [],
        "newCharacters": new_characters or [],
        "items": items or [],
        "newPages": pages or [],
    }, ensure_ascii=False)
    return f"```json\n{payload}\n```" if fenced else payload


def raw_page(title: str = "诊所初遇", keywords: Optional[List[str]] = None, day: str = "D1", **extra) -> Dict[str, Any]:
    page = {
        "day": day,
        "title": title,
        "content": f"{title}：主角在雨夜走进了城南的小诊所，与医生第一次交谈。",
        "keywords": keywords if keywords is not None else ["诊所"],
        "categories": ["discovery"],
        "significance": "medium",
    }
    page.update(extra)
    return page


def make_page(
    page_id: str,
    title: str = "页面",
    keywords: Optional[List[str]] = None,
    level: CompressionLevel = CompressionLevel.FRESH,
    categories: Optional[List[str]] = None,
    day: str = "D1",
    created_at: int = 0,
    **extra,
) -> StoryPage:
    return StoryPage(
        id=page_id,
        day=day,
        title=title,
        content=extra.pop("content", f"{title}的详细内容，包含足够长的描述文字。"),
        keywords=keywords or [],
        categories=categories or [],
        compression_level=level,
        created_at=created_at,
        **extra,
    )


def make_transcript(count: int, user_name: str = "阿明", character_name: str = "林医生", **kwargs) -> InMemoryTranscript:
    turns = [
        ChatTurn(
            turn_id=f"t{i}",
            name=user_name if i % 2 == 0 else character_name,
            text=f"第{i}条消息",
            is_user=i % 2 == 0,
        )
        for i in range(count)
    ]
    return InMemoryTranscript(turns, user_name=user_name, character_name=character_name, **kwargs)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        known_characters="林医生",
        extraction_interval=5,
        compress_timeline=False,
        log_file="./logs/test.log",
    )


@pytest.fixture
def repository() -> InMemoryFactStoreRepository:
    return InMemoryFactStoreRepository()


@pytest.fixture
def provider(repository) -> FactStoreProvider:
    return FactStoreProvider(repository)


@pytest.fixture
def events() -> LoggingEvents:
    return LoggingEvents()


@pytest.fixture
def sink() -> InMemoryInjectionSink:
    return InMemoryInjectionSink()
