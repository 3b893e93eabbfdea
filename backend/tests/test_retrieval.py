"""
Tests for the Retrieval Engine.

Verifies:
1. The cascade order: agent -> embedding candidates -> keyword fallback
2. Degraded notices when the agent fails
3. Keyword scoring (+2 exact, +1 substring, significance and freshness bonuses)
4. Index slot injection and NPC injection modes
5. Recall provenance recorded under the upcoming reply's index
"""

import pytest
from unittest.mock import AsyncMock
import sys
import os

# Add the backend directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from storymem.errors import LLMRequestError
from storymem.models.fact_store import CompressionLevel, FactStore, KnownCharacterAttitude, NpcDossier
from storymem.services.embedding_service import EmbeddingIndex
from storymem.services.interfaces import ChatTurn, InjectionSlot
from storymem.services.llm.context_formatter import format_story_index
from storymem.services.retrieval_service import (
    RetrievalEngine,
    build_recent_window,
    clean_turn_text,
    extract_query_keywords,
    keyword_fallback_retrieve,
    score_page,
)

from conftest import FakeEmbeddingGateway, ScriptedGateway, make_page, make_transcript, text_reply


def _engine(settings, provider, sink, events, chat_responses=None, has_secondary=True, embedding=False):
    embedding_index = None
    if embedding:
        settings.use_embedding = True
        embedding_index = EmbeddingIndex(settings, FakeEmbeddingGateway(), provider)
    gateway = ScriptedGateway(chat_responses=chat_responses, has_secondary=has_secondary)
    return RetrievalEngine(settings, gateway, provider, sink, embedding_index=embedding_index, events=events)


def _seed(provider, conversation_id="c"):
    store = provider.get(conversation_id)
    store.timeline = "D1: 初遇\nD3: 争吵"
    store.pages.extend([
        make_page("pg_clinic", title="诊所初遇", keywords=["林晓薇", "诊所"], day="D1"),
        make_page("pg_sea", title="海边", keywords=["海边"], day="D2", level=CompressionLevel.SUMMARY),
    ])
    store.embeddings = {"pg_clinic": [1.0, 0.0, 0.0], "pg_sea": [0.0, 1.0, 0.0]}
    return store


class TestCascade:
    """Which tier ends up in the recall slot."""

    @pytest.mark.asyncio
    async def test_agent_narrative_wins(self, settings, provider, sink, events):
        store = _seed(provider)
        engine = _engine(settings, provider, sink, events, [text_reply("她想起在诊所的初遇。\n来源: pg_clinic")])
        transcript = make_transcript(6)

        result = await engine.retrieve_memories("c", transcript)

        assert result.tier == "agent"
        assert result.stages == ["agent", "injected"]
        assert result.source_page_ids == ["pg_clinic"]
        recall_text = sink.get("c", InjectionSlot.RECALL)
        assert recall_text.startswith("[记忆闪回]\n她想起在诊所的初遇。")
        assert recall_text.rstrip().endswith("[/记忆闪回]")
        assert store.message_recalls == {"6": ["pg_clinic"]}
        assert engine.last_recall("c") is result

    @pytest.mark.asyncio
    async def test_agent_failure_uses_embedding_candidates(self, settings, provider, sink, events):
        _seed(provider)
        engine = _engine(settings, provider, sink, events, [LLMRequestError("down")], embedding=True)

        result = await engine.retrieve_memories("c", make_transcript(4))

        assert result.tier == "embedding"
        assert result.degraded is True
        assert "keyword" not in result.stages
        assert result.source_page_ids[0] == "pg_clinic"
        assert "回忆起了……「诊所初遇」(D1)" in sink.get("c", InjectionSlot.RECALL)
        assert any(level == "warning" and "Embedding" in msg for level, msg in events.for_conversation("c"))

    @pytest.mark.asyncio
    async def test_agent_failure_without_embedding_uses_keywords(self, settings, provider, sink, events):
        _seed(provider)
        engine = _engine(settings, provider, sink, events, [LLMRequestError("down")])
        transcript = make_transcript(2)
        transcript.append(ChatTurn("t2", "阿明", "林晓薇，你在诊所吗", is_user=True))

        result = await engine.retrieve_memories("c", transcript)

        assert result.tier == "keyword"
        assert result.degraded is True
        assert result.source_page_ids == ["pg_clinic"]
        assert any("关键词检索" in msg for _, msg in events.for_conversation("c"))

    @pytest.mark.asyncio
    async def test_agent_crash_degrades_to_keywords(self, settings, provider, sink, events):
        _seed(provider)
        sink.set_prompt("c", InjectionSlot.RECALL, "上一轮的旧回忆", 0)
        engine = _engine(settings, provider, sink, events, [IndexError("list index out of range")])
        transcript = make_transcript(2)
        transcript.append(ChatTurn("t2", "阿明", "林晓薇，你在诊所吗", is_user=True))

        result = await engine.retrieve_memories("c", transcript)

        assert result.tier == "keyword"
        assert result.degraded is True
        recall_text = sink.get("c", InjectionSlot.RECALL)
        assert "上一轮的旧回忆" not in recall_text
        assert "诊所初遇" in recall_text

    @pytest.mark.asyncio
    async def test_agent_crash_with_nothing_relevant_clears_stale_recall(self, settings, provider, sink, events):
        provider.get("c").pages.append(make_page("pg_sea", keywords=["海边"], level=CompressionLevel.SUMMARY))
        sink.set_prompt("c", InjectionSlot.RECALL, "上一轮的旧回忆", 0)
        engine = _engine(settings, provider, sink, events, [AttributeError("message")])

        result = await engine.retrieve_memories("c", make_transcript(3))

        assert result.tier == "none"
        assert sink.get("c", InjectionSlot.RECALL) == ""

    @pytest.mark.asyncio
    async def test_pre_filter_crash_still_runs_agent(self, settings, provider, sink, events):
        _seed(provider)
        engine = _engine(settings, provider, sink, events, [text_reply("她想起在诊所的初遇。")], embedding=True)
        engine.embedding_index.pre_filter = AsyncMock(side_effect=RuntimeError("vector shape"))

        result = await engine.retrieve_memories("c", make_transcript(3))

        assert result.stages[:2] == ["embedding", "agent"]
        assert result.tier == "agent"
        assert "她想起在诊所的初遇。" in sink.get("c", InjectionSlot.RECALL)

    @pytest.mark.asyncio
    async def test_no_secondary_falls_back_quietly(self, settings, provider, sink, events):
        _seed(provider)
        engine = _engine(settings, provider, sink, events, has_secondary=False)
        transcript = make_transcript(1)
        transcript.append(ChatTurn("t1", "阿明", "去海边走走", is_user=True))

        result = await engine.retrieve_memories("c", transcript)

        assert result.stages == ["keyword", "injected"]
        assert result.degraded is False
        assert events.for_conversation("c") == []

    @pytest.mark.asyncio
    async def test_nothing_relevant_clears_recall(self, settings, provider, sink, events):
        store = provider.get("c")
        store.pages.append(make_page("pg_sea", keywords=["海边"], level=CompressionLevel.SUMMARY))
        sink.set_prompt("c", InjectionSlot.RECALL, "stale", 0)
        engine = _engine(settings, provider, sink, events, has_secondary=False)

        result = await engine.retrieve_memories("c", make_transcript(3))

        assert result.tier == "none"
        assert sink.get("c", InjectionSlot.RECALL) == ""
        assert store.message_recalls == {}


class TestSlots:
    @pytest.mark.asyncio
    async def test_empty_store_clears_recall_slot(self, settings, provider, sink, events):
        sink.set_prompt("c", InjectionSlot.RECALL, "旧的回忆", 0)
        engine = _engine(settings, provider, sink, events)

        result = await engine.retrieve_memories("c", make_transcript(3))

        assert result.stages == ["empty"]
        assert sink.get("c", InjectionSlot.RECALL) == ""
        assert sink.get("c", InjectionSlot.INDEX) == ""

    @pytest.mark.asyncio
    async def test_index_injected_at_configured_depth(self, settings, provider, sink, events):
        _seed(provider)
        engine = _engine(settings, provider, sink, events, [text_reply("叙述内容足够")])

        result = await engine.retrieve_memories("c", make_transcript(2))

        assert result.index_injected is True
        index = sink.get("c", InjectionSlot.INDEX)
        assert index.startswith("[故事索引]")
        assert "D3: 争吵" in index
        assert sink.depth("c", InjectionSlot.INDEX) == settings.index_depth

    @pytest.mark.asyncio
    async def test_quiet_generation_skipped(self, settings, provider, sink, events):
        _seed(provider)
        engine = _engine(settings, provider, sink, events)
        result = await engine.retrieve_memories("c", make_transcript(2), quiet=True)
        assert result.stages == ["skipped"]
        assert sink.get("c", InjectionSlot.INDEX) == ""


class TestKeywordScoring:
    """Overlap scoring used by the last fallback tier."""

    def test_exact_match_scores_two(self):
        page = make_page("pg_1", keywords=["林晓薇", "诊所"], level=CompressionLevel.SUMMARY)
        assert score_page(page, {"林晓薇"}) == 2

    def test_substring_run_counts(self):
        page = make_page("pg_1", keywords=["林晓薇", "诊所"])
        keywords = extract_query_keywords([ChatTurn("t", "阿明", "我在诊所见到了林晓薇")])
        assert score_page(page, keywords) >= 2

    def test_relevant_page_selected_over_unrelated(self):
        store = FactStore(
            pages=[
                make_page("pg_other", keywords=["海边"], level=CompressionLevel.SUMMARY),
                make_page("pg_lin", keywords=["林晓薇", "诊所"], significance="high"),
            ],
            characters=[NpcDossier(name="林晓薇"), NpcDossier(name="老王")],
        )
        pages, characters = keyword_fallback_retrieve(store, {"林晓薇", "你好"}, max_pages=3)
        assert [p.id for p in pages] == ["pg_lin"]
        assert [c.name for c in characters] == ["林晓薇"]

    def test_query_keyword_runs(self):
        keywords = extract_query_keywords([ChatTurn("t", "a", "Hi Lin，林晓薇 ok 诊")])
        assert keywords == {"Lin", "林晓薇"}


class TestRecentWindow:
    def test_content_tag_and_comments_stripped(self):
        assert clean_turn_text("前言<content>正文</content>后记") == "正文"
        assert clean_turn_text("正文<!-- 状态栏 --><details>思考</details>") == "正文"

    def test_window_skips_system_turns(self):
        transcript = make_transcript(3)
        transcript.append(ChatTurn("sys", "系统", "提示", is_system=True))
        turns, text = build_recent_window(transcript, 2)
        assert [t.turn_id for t in turns] == ["t2"]
        assert text == "阿明: 第2条消息"


class TestNpcModes:
    """How NPC dossiers appear in the story index."""

    def _store(self):
        return FactStore(
            known_character_attitudes=[KnownCharacterAttitude(name="林医生", attitude="信任")],
            characters=[
                NpcDossier(name="老王", role="门卫", personality="话多", keywords=["门卫", "钥匙"]),
                NpcDossier(name="护士小周", role="护士"),
            ],
        )

    def test_half_lists_names_with_roles(self):
        text = format_story_index(self._store(), "half", "阿明")
        assert "四、已登场NPC: 老王（门卫）、护士小周（护士）" in text
        assert "三、已有角色对阿明态度/关系" in text
        assert "[角色档案" not in text

    def test_full_includes_dossiers(self):
        text = format_story_index(self._store(), "full", "阿明")
        assert "[角色档案: 老王]" in text
        assert "[角色档案: 护士小周]" in text

    def test_keyword_activates_matching_npcs(self):
        text = format_story_index(self._store(), "keyword", "阿明", "他向门卫要了钥匙")
        assert "[角色档案: 老王]" in text
        assert "五、其他NPC: 护士小周（护士）" in text

    def test_keyword_without_hits_behaves_like_half(self):
        text = format_story_index(self._store(), "keyword", "阿明", "无关的对话")
        assert text == format_story_index(self._store(), "half", "阿明")
