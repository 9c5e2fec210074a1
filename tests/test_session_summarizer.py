"""
Unit tests for SessionSummarizer.
"""

from datetime import datetime, timedelta, timezone

import pytest

from convo_coach.models import SessionStats
from convo_coach.orchestration.session_summarizer import SessionSummarizer, elapsed_minutes
from convo_coach.persistence import InMemoryProgressStore

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class TestElapsedMinutes:
    """Whole-minute rounding."""

    @pytest.mark.parametrize(
        "seconds, expected",
        [(0, 0), (29, 0), (30, 1), (89, 1), (90, 2), (600, 10)],
    )
    def test_rounds_half_up(self, seconds, expected):
        assert elapsed_minutes(START, START + timedelta(seconds=seconds)) == expected

    def test_never_negative(self):
        assert elapsed_minutes(START, START - timedelta(minutes=5)) == 0


class TestFinalize:
    """Summary delivery and best-effort persistence."""

    @pytest.mark.asyncio
    async def test_summary_without_store(self):
        summarizer = SessionSummarizer(clock=lambda: START + timedelta(minutes=12))
        stats = SessionStats(turn_count=5, grammar_clean_count=2, improvement_suggested_count=3)

        summary = await summarizer.finalize(stats, START)

        assert summary.duration_minutes == 12
        assert summary.turn_count == 5
        assert summary.grammar_clean_count == 2
        assert summary.improvement_suggested_count == 3

    @pytest.mark.asyncio
    async def test_progress_update_sent_to_store(self):
        store = InMemoryProgressStore()
        ended = START + timedelta(minutes=7)
        summarizer = SessionSummarizer(store=store, learner_id="learner-1", clock=lambda: ended)

        await summarizer.finalize(SessionStats(turn_count=4), START)

        learner_id, update = store.updates[0]
        assert learner_id == "learner-1"
        assert update.duration_minutes == 7
        assert update.session_increment == 1
        assert update.streak_increment == 1
        assert update.last_practice_at == ended
        assert update.turn_count == 4

    @pytest.mark.asyncio
    async def test_demo_mode_skips_store(self):
        store = InMemoryProgressStore()
        summarizer = SessionSummarizer(store=store, learner_id=None)

        await summarizer.finalize(SessionStats(), START)

        assert store.updates == []

    @pytest.mark.asyncio
    async def test_store_failure_does_not_block_summary(self):
        class BrokenStore(InMemoryProgressStore):
            async def record_session(self, learner_id, update):
                raise ConnectionError("database unreachable")

        summarizer = SessionSummarizer(
            store=BrokenStore(),
            learner_id="learner-1",
            clock=lambda: START + timedelta(minutes=3),
        )

        summary = await summarizer.finalize(SessionStats(turn_count=2), START)

        assert summary.duration_minutes == 3
        assert summary.turn_count == 2
