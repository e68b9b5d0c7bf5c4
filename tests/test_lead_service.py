import asyncio
from datetime import timedelta

import pytest

from conftest import T0, seed_conversation, text_message
from salesbot.models import LeadAnalysisRun
from salesbot.services.lead_service import LEAD_SCHEMA, LeadAnalysisError, format_transcript
from salesbot.services.llm import PermanentProviderError


def _analysis(**lists):
    base = {"serious": [], "stalled": [], "visiting": [], "followUp": []}
    base.update(lists)
    return base


class TestCandidates:
    def test_needs_more_than_two_messages(self, runtime):
        seed_conversation(runtime.store, "short", 2)
        seed_conversation(runtime.store, "long", 3)

        ids = [s.id for s in runtime.lead_analyzer.select_candidates()]
        assert ids == ["long"]

    def test_most_recent_first_and_capped(self, runtime):
        for i in range(5):
            seed_conversation(runtime.store, f"s{i}", 3, start=T0 + timedelta(hours=i))
        runtime.lead_analyzer.batch_size = 3

        ids = [s.id for s in runtime.lead_analyzer.select_candidates()]
        assert ids == ["s4", "s3", "s2"]

    def test_watermark_skips_unchanged(self, runtime):
        seed_conversation(runtime.store, "s1", 3)
        runtime.store.mark_analyzed(["s1"], T0 + timedelta(days=1))

        assert runtime.lead_analyzer.select_candidates() == []
        assert [s.id for s in runtime.lead_analyzer.select_candidates(force=True)] == ["s1"]


class TestAnalyze:
    def test_merges_and_advances_watermark(self, runtime, provider):
        seed_conversation(runtime.store, "254700000001", 4)
        seed_conversation(runtime.store, "254700000002", 4)
        provider.json_responses = [
            _analysis(serious=[{"phone": "+254700000001", "name": "Alice", "reason": "asked for till number"}])
        ]

        result = asyncio.run(runtime.lead_analyzer.analyze())

        assert [lead.phone for lead in result.serious] == ["254700000001"]
        assert result.serious[0].reason == "asked for till number"
        assert result.analyzed_sessions == 2
        assert result.last_updated is not None
        assert provider.json_calls[0]["schema"] == LEAD_SCHEMA
        # watermark moves for every analyzed session, classified or not
        for session_id in ("254700000001", "254700000002"):
            assert runtime.store.require(session_id).last_analyzed_time is not None

    def test_upsert_keeps_one_entry_per_phone(self, runtime, provider):
        seed_conversation(runtime.store, "254700000001", 4)
        seed_conversation(runtime.store, "254700000002", 4)
        provider.json_responses = [
            _analysis(
                serious=[{"phone": "254700000001", "name": "Alice", "reason": "first reason"}],
                stalled=[{"phone": "254700000002", "name": "Bob", "reason": "went quiet"}],
            ),
            _analysis(
                serious=[
                    {"phone": "254700000001", "name": "Alice", "reason": "second reason"},
                    {"phone": "254700000001", "name": "Alice", "reason": "second reason"},
                ],
                stalled=[{"phone": "254700000001", "name": "Alice", "reason": "also quiet"}],
            ),
        ]

        asyncio.run(runtime.lead_analyzer.analyze(force=True))
        result = asyncio.run(runtime.lead_analyzer.analyze(force=True))

        assert [(lead.phone, lead.reason) for lead in result.serious] == [("254700000001", "second reason")]
        stalled = sorted((lead.phone, lead.reason) for lead in result.stalled)
        assert stalled == [("254700000001", "also quiet"), ("254700000002", "went quiet")]

    def test_unknown_phone_dropped(self, runtime, provider):
        seed_conversation(runtime.store, "254700000001", 4)
        provider.json_responses = [_analysis(visiting=[{"phone": "999", "name": "X", "reason": "made up"}])]

        result = asyncio.run(runtime.lead_analyzer.analyze())

        assert result.visiting == []

    def test_cooldown_short_circuits(self, runtime, provider):
        seed_conversation(runtime.store, "254700000001", 4)
        provider.json_responses = [_analysis(), _analysis()]
        asyncio.run(runtime.lead_analyzer.analyze())

        runtime.store.append_message("254700000001", text_message("late", "still there?", at=T0 + timedelta(days=400)))
        result = asyncio.run(runtime.lead_analyzer.analyze())

        assert result.skipped is True
        assert len(provider.json_calls) == 1

    def test_force_bypasses_cooldown(self, runtime, provider):
        seed_conversation(runtime.store, "254700000001", 4)
        provider.json_responses = [_analysis(), _analysis()]

        asyncio.run(runtime.lead_analyzer.analyze())
        result = asyncio.run(runtime.lead_analyzer.analyze(force=True))

        assert result.skipped is False
        assert len(provider.json_calls) == 2

    def test_nothing_new_is_skipped(self, runtime, provider):
        result = asyncio.run(runtime.lead_analyzer.analyze())

        assert result.skipped is True
        assert provider.json_calls == []

    def test_failure_leaves_cache_unchanged(self, runtime, provider, session_factory):
        seed_conversation(runtime.store, "254700000001", 4)
        provider.json_responses = [
            _analysis(serious=[{"phone": "254700000001", "name": "Alice", "reason": "keep me"}]),
            PermanentProviderError("invalid JSON"),
        ]
        asyncio.run(runtime.lead_analyzer.analyze())
        watermark = runtime.store.require("254700000001").last_analyzed_time

        with pytest.raises(LeadAnalysisError):
            asyncio.run(runtime.lead_analyzer.analyze(force=True))

        cached = runtime.lead_analyzer.get_cached()
        assert [lead.reason for lead in cached.serious] == ["keep me"]
        assert runtime.store.require("254700000001").last_analyzed_time == watermark
        db = session_factory()
        try:
            statuses = [run.status for run in db.query(LeadAnalysisRun).order_by(LeadAnalysisRun.started_at)]
        finally:
            db.close()
        assert statuses == ["completed", "failed"]

    def test_malformed_result_is_a_failure(self, runtime, provider):
        seed_conversation(runtime.store, "254700000001", 4)
        provider.json_responses = [{"serious": [{"name": "no phone"}]}]

        with pytest.raises(LeadAnalysisError):
            asyncio.run(runtime.lead_analyzer.analyze())


class TestTranscript:
    def test_speakers_and_limit(self, runtime):
        seed_conversation(runtime.store, "s1", 6)
        transcript = format_transcript(runtime.store.require("s1"), 4)

        lines = transcript.splitlines()
        assert lines[0] == "PHONE: s1 | NAME: Customer s1"
        assert lines[1:] == ["Customer: message 2", "Agent: message 3", "Customer: message 4", "Agent: message 5"]
