"""
Tests for the Extraction Engine.

Verifies:
1. Interval gating, watermark advance and idempotent re-runs
2. Batched extraction isolates failed batches and never moves the watermark back
3. The extraction lock: normal runs skip, forced runs clear a stale lock
4. Three consecutive normal-mode failures produce one warning and reset the streak
5. Forced extraction scans by turn id, uses the init prompt and retries failed batches once
6. Auto-hide and the post-deletion hide recalculation
"""

import pytest
import sys
import os

# Add the backend directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from unittest.mock import AsyncMock, MagicMock

from storymem.errors import LLMRequestError
from storymem.services.extraction_service import ExtractionEngine
from storymem.services.interfaces import ChatTurn
from storymem.services.llm.prompts import prompt_manager

from conftest import ScriptedGateway, extraction_reply, make_transcript, raw_page


def _engine(settings, provider, events, responses, **kwargs) -> ExtractionEngine:
    return ExtractionEngine(settings, ScriptedGateway(responses), provider, events=events, **kwargs)


class TestNormalMode:
    """Watermark-driven background extraction."""

    @pytest.mark.asyncio
    async def test_below_interval_is_a_noop(self, settings, provider, events):
        engine = _engine(settings, provider, events, [extraction_reply([raw_page()])])
        report = await engine.safe_extract("c", make_transcript(4))

        assert report.skipped_reason == "below_interval"
        assert engine.gateway.calls == []
        assert provider.get("c").processing.last_extracted_message_id == -1

    @pytest.mark.asyncio
    async def test_fires_on_fifth_turn(self, settings, provider, events):
        engine = _engine(settings, provider, events, [extraction_reply([raw_page()], timeline="D1: 初遇")])
        transcript = make_transcript(5)

        report = await engine.safe_extract("c", transcript)
        store = provider.get("c")

        assert report.ran
        assert report.batches_succeeded == 1
        assert report.pages_created == 1
        assert store.processing.last_extracted_message_id == 4
        assert store.processing.extracted_msg_dates == {f"t{i}" for i in range(5)}
        assert store.pages[0].source_dates == [f"t{i}" for i in range(5)]
        assert store.timeline == "D1: 初遇"
        assert store.processing.extraction_in_progress is False

    @pytest.mark.asyncio
    async def test_rerun_without_new_turns_changes_nothing(self, settings, provider, events):
        engine = _engine(settings, provider, events, [extraction_reply([raw_page()], timeline="D1: 初遇")])
        transcript = make_transcript(5)
        await engine.safe_extract("c", transcript)
        store = provider.get("c")
        before = store.to_document()

        again = await engine.perform_extraction("c", transcript)

        assert again.skipped_reason == "nothing_pending"
        assert len(engine.gateway.calls) == 1
        assert store.to_document() == before

    @pytest.mark.asyncio
    async def test_system_and_empty_turns_are_not_sent(self, settings, provider, events):
        engine = _engine(settings, provider, events, [extraction_reply()])
        transcript = make_transcript(6)
        transcript.turns()[1].is_system = True
        transcript.turns()[2].text = ""

        await engine.perform_extraction("c", transcript)
        prompt = engine.gateway.calls[0]["user"]

        assert "第0条消息" in prompt
        assert "第1条消息" not in prompt
        assert provider.get("c").processing.last_extracted_message_id == 5

    @pytest.mark.asyncio
    async def test_deferred_while_generating(self, settings, provider, events):
        engine = _engine(settings, provider, events, [])
        report = await engine.safe_extract("c", make_transcript(10, generating=True))
        assert report.skipped_reason == "generating"

    @pytest.mark.asyncio
    async def test_disabled(self, settings, provider, events):
        settings.enabled = False
        engine = _engine(settings, provider, events, [])
        report = await engine.safe_extract("c", make_transcript(10))
        assert report.skipped_reason == "disabled"

    @pytest.mark.asyncio
    async def test_post_extraction_hooks(self, settings, provider, events):
        embedding_index = MagicMock(configured=True, embed_missing=AsyncMock(return_value=1))
        compression = MagicMock(safe_compress=AsyncMock(return_value=None))
        engine = _engine(
            settings, provider, events, [extraction_reply([raw_page()])],
            embedding_index=embedding_index, compression_engine=compression,
        )
        await engine.safe_extract("c", make_transcript(5))

        embedding_index.embed_missing.assert_awaited_once_with("c")
        compression.safe_compress.assert_awaited_once_with("c", force=False)


class TestBatchedExtraction:
    """Backlogs above the single-call threshold go out in batches of 20."""

    @pytest.mark.asyncio
    async def test_failed_batch_is_skipped(self, settings, provider, events):
        engine = _engine(settings, provider, events, [
            extraction_reply([raw_page("第一批")]),
            "这不是JSON",
            extraction_reply([raw_page("第三批")]),
        ])
        transcript = make_transcript(45)

        report = await engine.perform_extraction("c", transcript)
        store = provider.get("c")

        assert report.batches_total == 3
        assert report.batches_succeeded == 2
        assert report.batches_failed == 1
        assert [p.title for p in store.pages] == ["第一批", "第三批"]
        assert store.processing.last_extracted_message_id == 44
        # Turns of the failed batch stay unprocessed for a later forced run
        assert "t25" not in store.processing.extracted_msg_dates
        assert "t39" not in store.processing.extracted_msg_dates
        assert all(call["max_tokens"] >= 8192 for call in engine.gateway.calls)

    @pytest.mark.asyncio
    async def test_watermark_never_decreases(self, settings, provider, events):
        engine = _engine(settings, provider, events, [
            extraction_reply(),
            extraction_reply(),
            LLMRequestError("boom"),
        ])
        store = provider.get("c")
        seen = [store.processing.last_extracted_message_id]

        await engine.safe_extract("c", make_transcript(30))
        seen.append(store.processing.last_extracted_message_id)
        await engine.safe_extract("c", make_transcript(36))
        seen.append(store.processing.last_extracted_message_id)
        await engine.safe_extract("c", make_transcript(36))
        seen.append(store.processing.last_extracted_message_id)

        assert seen == sorted(seen)
        assert seen[-1] == 29

    @pytest.mark.asyncio
    async def test_failed_batch_counts_as_strike(self, settings, provider, events):
        engine = _engine(settings, provider, events, [
            extraction_reply(),
            LLMRequestError("timeout"),
        ])
        report = await engine.safe_extract("c", make_transcript(30))
        assert report.batches_failed == 1
        assert engine.consecutive_failures("c") == 1


class TestLocking:
    """extractionInProgress is a lock that survives reloads."""

    @pytest.mark.asyncio
    async def test_normal_run_skips_when_locked(self, settings, provider, events):
        provider.get("c").processing.extraction_in_progress = True
        engine = _engine(settings, provider, events, [extraction_reply()])

        report = await engine.safe_extract("c", make_transcript(10))

        assert report.skipped_reason == "locked"
        assert engine.gateway.calls == []
        assert provider.get("c").processing.extraction_in_progress is True

    @pytest.mark.asyncio
    async def test_forced_run_clears_stale_lock(self, settings, provider, events):
        provider.get("c").processing.extraction_in_progress = True
        engine = _engine(settings, provider, events, [extraction_reply([raw_page()])])

        report = await engine.safe_extract("c", make_transcript(10), force=True)

        assert report.batches_succeeded == 1
        assert provider.get("c").processing.extraction_in_progress is False
        assert any("提取锁" in message for _, message in events.for_conversation("c"))

    @pytest.mark.asyncio
    async def test_lock_released_after_exception(self, settings, provider, events):
        engine = _engine(settings, provider, events, [LLMRequestError("down")])
        await engine.safe_extract("c", make_transcript(5))
        assert provider.get("c").processing.extraction_in_progress is False


class TestFailureStreak:
    """Three consecutive normal-mode failures warn once, then the counter resets."""

    @pytest.mark.asyncio
    async def test_three_strikes(self, settings, provider, events):
        engine = _engine(settings, provider, events, [LLMRequestError("down")] * 3)
        transcript = make_transcript(5)

        await engine.safe_extract("c", transcript)
        await engine.safe_extract("c", transcript)
        assert engine.consecutive_failures("c") == 2
        assert not [m for level, m in events.for_conversation("c") if level == "warning"]

        await engine.safe_extract("c", transcript)
        warnings = [m for level, m in events.for_conversation("c") if level == "warning"]
        assert warnings == ["记忆提取连续失败，请检查API状态"]
        assert engine.consecutive_failures("c") == 0

    @pytest.mark.asyncio
    async def test_success_resets_streak(self, settings, provider, events):
        engine = _engine(settings, provider, events, [LLMRequestError("down"), extraction_reply()])
        transcript = make_transcript(5)
        await engine.safe_extract("c", transcript)
        await engine.safe_extract("c", transcript)
        assert engine.consecutive_failures("c") == 0

    @pytest.mark.asyncio
    async def test_streaks_are_per_conversation(self, settings, provider, events):
        engine = _engine(settings, provider, events, [LLMRequestError("down"), LLMRequestError("down")])
        await engine.safe_extract("a", make_transcript(5))
        await engine.safe_extract("b", make_transcript(5))
        assert engine.consecutive_failures("a") == 1
        assert engine.consecutive_failures("b") == 1


class TestForcedMode:
    """Forced extraction works from the processed-id set, not the watermark."""

    @pytest.mark.asyncio
    async def test_retry_pass_recovers_failed_batch(self, settings, provider, events):
        engine = _engine(settings, provider, events, [
            LLMRequestError("first attempt"),
            extraction_reply([raw_page("第二批")]),
            extraction_reply([raw_page("重试成功")]),
        ])
        transcript = make_transcript(30)

        report = await engine.safe_extract("c", transcript, force=True)
        store = provider.get("c")

        # 30 turns minus the 4-turn trailing buffer -> 26 turns, batches of 20 + 6
        assert report.batches_total == 2
        assert report.batches_succeeded == 2
        assert report.batches_failed == 0
        assert {p.title for p in store.pages} == {"第二批", "重试成功"}
        assert store.processing.extracted_msg_dates == {f"t{i}" for i in range(26)}
        assert store.processing.last_extracted_message_id == 25
        assert len(engine.gateway.calls) == 3

    @pytest.mark.asyncio
    async def test_uses_init_prompt(self, settings, provider, events):
        engine = _engine(settings, provider, events, [extraction_reply()])
        await engine.safe_extract("c", make_transcript(10), force=True)
        assert engine.gateway.calls[0]["system"] == prompt_manager.get_prompt("extraction_init", "system")

    @pytest.mark.asyncio
    async def test_batch_failing_twice_is_reported(self, settings, provider, events):
        engine = _engine(settings, provider, events, [LLMRequestError("a"), LLMRequestError("b")])
        report = await engine.safe_extract("c", make_transcript(10), force=True)
        assert report.batches_failed == 1
        assert any(level == "warning" for level, _ in events.for_conversation("c"))

    @pytest.mark.asyncio
    async def test_recovers_turns_skipped_by_watermark(self, settings, provider, events):
        store = provider.get("c")
        store.processing.last_extracted_message_id = 20
        store.processing.extracted_msg_dates = {f"t{i}" for i in range(21) if i not in (3, 4)}
        engine = _engine(settings, provider, events, [extraction_reply()])

        report = await engine.safe_extract("c", make_transcript(25), force=True)
        prompt = engine.gateway.calls[0]["user"]

        assert report.batches_succeeded == 1
        assert "第3条消息" in prompt and "第4条消息" in prompt
        assert "第5条消息" not in prompt
        assert store.processing.last_extracted_message_id == 20

    @pytest.mark.asyncio
    async def test_range_limits_scan(self, settings, provider, events):
        engine = _engine(settings, provider, events, [extraction_reply()])
        await engine.safe_extract("c", make_transcript(30), force=True, range_start=5, range_end=9)
        assert provider.get("c").processing.extracted_msg_dates == {f"t{i}" for i in range(5, 10)}

    @pytest.mark.asyncio
    async def test_nothing_pending_syncs_watermark(self, settings, provider, events):
        store = provider.get("c")
        store.processing.extracted_msg_dates = {f"t{i}" for i in range(10)}
        engine = _engine(settings, provider, events, [])

        report = await engine.safe_extract("c", make_transcript(14), force=True)

        assert report.skipped_reason == "nothing_pending"
        assert store.processing.last_extracted_message_id == 9
        assert engine.gateway.calls == []


class TestAutoHide:
    """Processed turns are hidden, keeping the most recent ones visible."""

    @pytest.mark.asyncio
    async def test_hides_processed_turns(self, settings, provider, events):
        settings.auto_hide = True
        settings.keep_recent_messages = 10
        engine = _engine(settings, provider, events, [extraction_reply()])
        transcript = make_transcript(20)

        await engine.safe_extract("c", transcript)

        # buffer = keep_recent - 2 = 8 -> turns 0..11 extracted, 0..9 hidden
        assert provider.get("c").processing.last_extracted_message_id == 11
        hidden = [i for i, t in enumerate(transcript.turns()) if t.is_system]
        assert hidden == list(range(10))

    @pytest.mark.asyncio
    async def test_unhide_after_deletion(self, settings, provider, events):
        settings.auto_hide = True
        settings.keep_recent_messages = 10
        engine = _engine(settings, provider, events, [])
        transcript = make_transcript(20)
        await transcript.set_hidden(0, 9, True)
        for _ in range(5):
            transcript.delete(len(transcript) - 1)

        unhidden = await engine.recalculate_hide_range(transcript)

        assert unhidden == (5, 9)
        hidden = [i for i, t in enumerate(transcript.turns()) if t.is_system]
        assert hidden == list(range(5))

    @pytest.mark.asyncio
    async def test_hide_disabled(self, settings, provider, events):
        engine = _engine(settings, provider, events, [])
        provider.get("c").processing.last_extracted_message_id = 15
        assert await engine.hide_processed_turns("c", make_transcript(20)) == 0

    @pytest.mark.asyncio
    async def test_speaker_names_in_prompt(self, settings, provider, events):
        engine = _engine(settings, provider, events, [extraction_reply()])
        transcript = make_transcript(4)
        transcript.append(ChatTurn("t4", "林医生", "请坐。"))
        await engine.safe_extract("c", transcript)
        assert "林医生: 请坐。" in engine.gateway.calls[0]["user"]
