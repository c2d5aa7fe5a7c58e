"""Tests for the suggestion engine, its fallback and the LLM advisor adapter."""
import asyncio
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from config.settings import LLMConfig, SuggestionConfig
from deadlines.policy import BusinessCalendar
from models.errors import ValidationError
from models.schemas import ItemContext, SnoozePreferences, SuggestionSource
from suggestions.advisor import LLMSuggestionAdvisor, SuggestionAdvisor
from suggestions.engine import FALLBACK_MARKER, SuggestionEngine

UTC = timezone.utc
MONDAY_10 = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)
FRIDAY_10 = datetime(2026, 3, 6, 10, 0, tzinfo=UTC)


class StubAdvisor(SuggestionAdvisor):
    """Returns a canned response, raises, or stalls."""

    def __init__(self, response=None, error=None, delay=0.0):
        self.response = response
        self.error = error
        self.delay = delay
        self.calls = 0

    async def suggest(self, context, preferences, now):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.response


def _engine(advisor=None, **config) -> SuggestionEngine:
    return SuggestionEngine(BusinessCalendar(), advisor=advisor, config=SuggestionConfig(**config))


def _ctx(priority="medium", category="general", item_id="q_1") -> ItemContext:
    return ItemContext(item_id=item_id, subject="Budget review", sender="cfo@acme.com",
                       priority=priority, category=category, body="Can we talk numbers?")


class TestFallback:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("priority,expected", [
        ("critical", datetime(2026, 3, 2, 11, 0, tzinfo=UTC)),
        ("high", datetime(2026, 3, 2, 13, 0, tzinfo=UTC)),
        ("medium", datetime(2026, 3, 3, 9, 0, tzinfo=UTC)),
        ("low", datetime(2026, 3, 9, 10, 0, tzinfo=UTC)),
    ])
    async def test_priority_rules(self, priority, expected):
        s = await _engine().suggest(_ctx(priority), now=MONDAY_10)
        assert s.time == expected
        assert s.source == SuggestionSource.FALLBACK
        assert s.is_fallback
        assert s.confidence == 0.5
        assert s.reasoning.startswith(FALLBACK_MARKER)
        assert 1 <= len(s.alternatives) <= 3
        assert all(alt.time > MONDAY_10 for alt in s.alternatives)

    @pytest.mark.asyncio
    async def test_advisor_error_falls_back(self):
        advisor = StubAdvisor(error=RuntimeError("provider down"))
        s = await _engine(advisor).suggest(_ctx("high"), now=MONDAY_10)
        assert advisor.calls == 1
        assert s.is_fallback
        assert s.confidence == 0.5
        assert "advisor unavailable" in s.reasoning

    @pytest.mark.asyncio
    async def test_advisor_timeout_falls_back(self):
        advisor = StubAdvisor(response={"suggested_time": "2026-03-03T14:00:00Z"}, delay=1.0)
        s = await _engine(advisor, timeout_s=0.01).suggest(_ctx(), now=MONDAY_10)
        assert s.is_fallback
        assert "timed out" in s.reasoning

    @pytest.mark.asyncio
    async def test_malformed_advisor_output_falls_back(self):
        advisor = StubAdvisor(response={"reasoning": "no time given"})
        s = await _engine(advisor).suggest(_ctx(), now=MONDAY_10)
        assert s.is_fallback

    @pytest.mark.asyncio
    async def test_disabled_advisor_is_never_called(self):
        advisor = StubAdvisor(response={"suggested_time": "2026-03-03T14:00:00Z"})
        s = await _engine(advisor, enabled=False).suggest(_ctx(), now=MONDAY_10)
        assert advisor.calls == 0
        assert s.is_fallback

    @pytest.mark.asyncio
    async def test_preferences_time_zone(self):
        prefs = SnoozePreferences(timezone="America/New_York")
        s = await _engine().suggest(_ctx("medium"), prefs, now=MONDAY_10)
        # 09:00 EST on Tuesday
        assert s.time == datetime(2026, 3, 3, 14, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_invalid_preferences_rejected(self):
        prefs = SnoozePreferences(work_start_hour=18, work_end_hour=9)
        with pytest.raises(ValidationError):
            await _engine().suggest(_ctx(), prefs, now=MONDAY_10)


class TestAdvisorPath:
    @pytest.mark.asyncio
    async def test_advisor_output_normalised(self):
        advisor = StubAdvisor(response={
            "suggested_time": "2026-03-03T14:00:00Z",
            "reasoning": "Sender asked for Tuesday afternoon",
            "alternatives": [
                {"time": "2026-03-01T10:00:00Z", "reason": "in the past"},
                {"time": "2026-03-04T10:00:00Z", "reason": "Wednesday"},
            ],
            "confidence": 1.5,
        })
        s = await _engine(advisor).suggest(_ctx(), now=MONDAY_10)
        assert s.source == SuggestionSource.ADVISOR
        assert s.time == datetime(2026, 3, 3, 14, 0, tzinfo=UTC)
        assert [a.reason for a in s.alternatives] == ["Wednesday"]
        assert s.confidence == 1.0
        assert not s.reasoning.startswith(FALLBACK_MARKER)

    @pytest.mark.asyncio
    async def test_past_time_repaired(self):
        advisor = StubAdvisor(response={"suggested_time": "2026-03-01T10:00:00Z", "reasoning": "x"})
        s = await _engine(advisor).suggest(_ctx(), now=MONDAY_10)
        assert s.time == MONDAY_10 + timedelta(hours=1)
        assert s.time > MONDAY_10
        assert len(s.alternatives) == 1
        assert s.alternatives[0].time == s.time + timedelta(hours=3)

    @pytest.mark.asyncio
    async def test_missing_confidence_uses_default(self):
        advisor = StubAdvisor(response={"suggested_time": "2026-03-03T14:00:00+00:00"})
        s = await _engine(advisor).suggest(_ctx(), now=MONDAY_10)
        assert s.confidence == 0.7

    @pytest.mark.asyncio
    async def test_snapped_into_working_hours(self):
        advisor = StubAdvisor(response={"suggested_time": "2026-03-07T12:00:00Z", "confidence": 0.9})
        s = await _engine(advisor).suggest(_ctx(), now=MONDAY_10)
        assert s.time == datetime(2026, 3, 9, 9, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_no_snap_when_not_requested(self):
        advisor = StubAdvisor(response={"suggested_time": "2026-03-07T12:00:00Z", "confidence": 0.9})
        prefs = SnoozePreferences(respect_working_hours=False)
        s = await _engine(advisor).suggest(_ctx(), prefs, now=MONDAY_10)
        assert s.time == datetime(2026, 3, 7, 12, 0, tzinfo=UTC)


class TestQuickPresets:
    def test_monday_menu(self):
        options = _engine().quick_presets(now=MONDAY_10)
        assert [o.label for o in options] == [
            "In 1 hour", "In 3 hours", "Tomorrow morning", "Next week", "End of week",
        ]
        by_label = {o.label: o.time for o in options}
        assert by_label["In 1 hour"] == MONDAY_10 + timedelta(hours=1)
        assert by_label["In 3 hours"] == MONDAY_10 + timedelta(hours=3)
        assert by_label["Tomorrow morning"] == datetime(2026, 3, 3, 9, 0, tzinfo=UTC)
        assert by_label["Next week"] == datetime(2026, 3, 9, 9, 0, tzinfo=UTC)
        assert by_label["End of week"] == datetime(2026, 3, 6, 9, 0, tzinfo=UTC)

    def test_friday_has_no_end_of_week(self):
        options = _engine().quick_presets(now=FRIDAY_10)
        labels = [o.label for o in options]
        assert "End of week" not in labels
        assert options[2].time == datetime(2026, 3, 9, 9, 0, tzinfo=UTC)

    def test_presets_do_not_call_advisor(self):
        advisor = StubAdvisor(response={})
        _engine(advisor).quick_presets(now=MONDAY_10)
        assert advisor.calls == 0


class TestLearning:
    @pytest.mark.asyncio
    async def test_offset_shifts_next_suggestion(self):
        engine = _engine()
        first = await engine.suggest(_ctx("medium", "finance"), now=MONDAY_10)
        assert first.time == datetime(2026, 3, 3, 9, 0, tzinfo=UTC)
        assert engine.last_suggested("q_1") == first.time

        mean = engine.learn("q_1", "finance", first.time + timedelta(hours=2))
        assert mean == pytest.approx(2.0)
        assert engine.learned_offset("finance") == pytest.approx(2.0)

        second = await engine.suggest(_ctx("medium", "finance", item_id="q_2"), now=MONDAY_10)
        assert second.time == datetime(2026, 3, 3, 11, 0, tzinfo=UTC)
        # Other categories are unaffected
        other = await engine.suggest(_ctx("medium", "legal", item_id="q_3"), now=MONDAY_10)
        assert other.time == first.time

    def test_offset_clamped(self):
        engine = _engine(max_learned_offset_hours=24)
        assert engine.learn("q_1", "a", MONDAY_10 + timedelta(hours=100), MONDAY_10) == 24.0
        assert engine.learn("q_2", "b", MONDAY_10 - timedelta(hours=100), MONDAY_10) == -24.0

    def test_running_mean(self):
        engine = _engine()
        engine.learn("q_1", "a", MONDAY_10 + timedelta(hours=2), MONDAY_10)
        assert engine.learn("q_2", "a", MONDAY_10 + timedelta(hours=4), MONDAY_10) == pytest.approx(3.0)

    def test_nothing_to_learn_from(self):
        assert _engine().learn("q_unknown", "a", MONDAY_10) is None

    @pytest.mark.asyncio
    async def test_explicit_suggested_time_still_releases_item(self):
        engine = _engine()
        first = await engine.suggest(_ctx("medium", "finance"), now=MONDAY_10)
        engine.learn("q_1", "finance", first.time, suggested_time=first.time)
        assert engine.last_suggested("q_1") is None
        assert engine.pending_suggestions == 0

    @pytest.mark.asyncio
    async def test_forget(self):
        engine = _engine()
        await engine.suggest(_ctx("medium", "finance"), now=MONDAY_10)
        assert engine.pending_suggestions == 1
        engine.forget("q_1")
        engine.forget("q_never_seen")
        assert engine.pending_suggestions == 0


def _anthropic_response(text: str):
    return SimpleNamespace(content=[SimpleNamespace(text=text)])


class TestLLMSuggestionAdvisor:
    def test_unavailable_without_key(self):
        assert not LLMSuggestionAdvisor(LLMConfig(api_key="")).available
        assert not LLMSuggestionAdvisor(LLMConfig(api_key="${ANTHROPIC_API_KEY}")).available
        assert LLMSuggestionAdvisor(LLMConfig(api_key="sk-test")).available

    @pytest.mark.asyncio
    async def test_engine_skips_unavailable_advisor(self):
        engine = _engine(LLMSuggestionAdvisor(LLMConfig(api_key="")))
        assert not engine.advisor_enabled
        s = await engine.suggest(_ctx(), now=MONDAY_10)
        assert s.is_fallback

    @pytest.mark.asyncio
    async def test_parses_fenced_json(self):
        advisor = LLMSuggestionAdvisor(LLMConfig(api_key="sk-test"))
        body = json.dumps({"suggested_time": "2026-03-03T14:00:00Z", "confidence": 0.8,
                           "reasoning": "Tuesday works"})
        advisor._client = MagicMock()
        advisor._client.messages.create = AsyncMock(
            return_value=_anthropic_response(f"```json\n{body}\n```"))

        data = await advisor.suggest(_ctx(), SnoozePreferences(), MONDAY_10)
        assert data["confidence"] == 0.8
        kwargs = advisor._client.messages.create.call_args.kwargs
        assert "Working hours: 09:00-17:00" in kwargs["messages"][0]["content"]
        assert "Budget review" in kwargs["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_openai_provider(self):
        advisor = LLMSuggestionAdvisor(LLMConfig(provider="openai", model="gpt-4o-mini",
                                                 api_key="sk-test"))
        advisor._client = MagicMock()
        advisor._client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(
                content='{"suggested_time": "2026-03-03T14:00:00Z"}'))]))

        engine = _engine(advisor)
        s = await engine.suggest(_ctx(), now=MONDAY_10)
        assert s.source == SuggestionSource.ADVISOR
        assert s.time == datetime(2026, 3, 3, 14, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_non_json_response_falls_back(self):
        advisor = LLMSuggestionAdvisor(LLMConfig(api_key="sk-test"))
        advisor._client = MagicMock()
        advisor._client.messages.create = AsyncMock(
            return_value=_anthropic_response("Tomorrow sounds good!"))
        s = await _engine(advisor).suggest(_ctx(), now=MONDAY_10)
        assert s.is_fallback
