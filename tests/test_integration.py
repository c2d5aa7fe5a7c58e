"""
End-to-end tests through the assembled engine: admission → suggestion →
snooze → sweep → completion → archive.
"""
import json
import logging
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
import structlog

from config.logging import HANDLER_NAME, configure_logging
from config.settings import Settings, settings_from_dict
from database.store_memory import InMemoryItemStore
from followups.bootstrap import build_engine
from inbox.connector import InMemoryMailbox
from models.schemas import (
    MessageMetadata, QueueAction, QueueItemStatus, SuggestionSource,
)
from suggestions.advisor import SuggestionAdvisor

UTC = timezone.utc
MONDAY_9 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class CannedAdvisor(SuggestionAdvisor):
    async def suggest(self, context, preferences, now):
        return {
            "suggested_time": (now + timedelta(hours=2)).isoformat(),
            "reasoning": f"'{context.subject}' can wait until after lunch",
            "alternatives": [{"time": (now + timedelta(days=1)).isoformat(), "reason": "Tomorrow"}],
            "confidence": 0.8,
        }


@pytest.fixture
def settings() -> Settings:
    return settings_from_dict({
        "deadlines": {"vip_overrides": {"ceo@acme.com": 1}},
        "scheduler": {"completed_retention_hours": 24},
    })


@pytest.fixture
def inbox() -> InMemoryMailbox:
    return InMemoryMailbox([
        MessageMetadata(message_id="msg-1", thread_id="thr-1", subject="Budget sign-off",
                        sender="cfo@acme.com", recipients=["me@acme.com"],
                        received_at=MONDAY_9 - timedelta(hours=2),
                        body="Need your approval on the Q2 budget."),
    ])


@pytest_asyncio.fixture
async def engine(settings, inbox, clock):
    eng = build_engine(settings, store=InMemoryItemStore(), mailbox=inbox, clock=clock)
    await eng.start(run_scheduler=False)
    yield eng
    await eng.close()


class TestBuildEngine:
    def test_advisor_disabled_without_credentials(self, engine):
        assert not engine.suggestions.advisor_enabled

    def test_injected_advisor_used(self, settings, inbox, clock):
        eng = build_engine(settings, store=InMemoryItemStore(), advisor=CannedAdvisor(),
                           mailbox=inbox, clock=clock)
        assert eng.suggestions.advisor_enabled

    def test_store_from_settings(self, clock):
        eng = build_engine(settings_from_dict({"database": {"store_backend": "memory"}}), clock=clock)
        assert isinstance(eng.store, InMemoryItemStore)
        assert isinstance(eng.mailbox, InMemoryMailbox)


class TestFollowUpFlow:
    @pytest.mark.asyncio
    async def test_full_lifecycle(self, engine, clock):
        queue = engine.queue
        item_id = await queue.admit_message("msg-1", {"priority": "high", "needs_reply": True,
                                                      "category": "finance"})
        item = await queue.get(item_id)
        assert item.deadline == MONDAY_9 + timedelta(hours=4)

        suggestion = await queue.suggest_snooze(item_id)
        assert suggestion.source == SuggestionSource.FALLBACK
        await queue.snooze(item_id, suggestion.time, smart=True)

        clock.set(suggestion.time)
        report = await engine.scheduler.run_once()
        assert report.resurfaced == 1
        assert report.ok

        await queue.complete(item_id)
        clock.advance(hours=24)
        report = await engine.scheduler.run_once()
        assert report.archived == 1

        actions = [h.action for h in await queue.history(item_id)]
        assert actions == [
            QueueAction.ARCHIVED,
            QueueAction.COMPLETED,
            QueueAction.RESURFACED,
            QueueAction.SNOOZED,
            QueueAction.SUGGESTION_RECORDED,
            QueueAction.ADDED,
        ]
        final = await queue.get(item_id)
        assert final.status == QueueItemStatus.ARCHIVED
        assert final.completed_at == suggestion.time

    @pytest.mark.asyncio
    async def test_advisor_suggestion(self, settings, inbox, clock):
        eng = build_engine(settings, store=InMemoryItemStore(), advisor=CannedAdvisor(),
                           mailbox=inbox, clock=clock)
        await eng.start(run_scheduler=False)
        try:
            item_id = await eng.queue.admit_message("msg-1", {"needs_reply": True})
            suggestion = await eng.queue.suggest_snooze(item_id)
            assert suggestion.source == SuggestionSource.ADVISOR
            assert suggestion.time == MONDAY_9 + timedelta(hours=2)
            assert "Budget sign-off" in suggestion.reasoning
            assert suggestion.confidence == 0.8
        finally:
            await eng.close()

    @pytest.mark.asyncio
    async def test_statistics_after_sweep(self, engine, clock):
        queue = engine.queue
        await queue.add({"email_id": "m-a", "priority": "critical"})
        await queue.add({"email_id": "m-b", "priority": "low", "reason": "manual"})

        clock.advance(hours=3)
        report = await engine.scheduler.run_once()
        assert report.escalated == 1
        assert report.statistics_refreshed

        stats = await queue.statistics()
        assert stats.by_status["escalated"] == 1
        assert stats.by_status["active"] == 1
        assert stats.total_items == 2


class TestLogging:
    @pytest.fixture(autouse=True)
    def _restore_logging(self):
        root = logging.getLogger()
        level = root.level
        yield
        structlog.reset_defaults()
        root.handlers = [h for h in root.handlers if h.get_name() != HANDLER_NAME]
        root.setLevel(level)
        for name in ("sqlalchemy.engine", "httpx", "httpcore"):
            logging.getLogger(name).setLevel(logging.NOTSET)

    @pytest.mark.parametrize("fmt", ["json", "console"])
    def test_configure(self, fmt, capsys):
        configure_logging(fmt, debug=True)
        structlog.get_logger().info("queue_event", item_id="q_1")
        out = capsys.readouterr().out
        assert "queue_event" in out
        assert "q_1" in out

    def test_stdlib_records_share_the_format(self, capsys):
        configure_logging("json")
        logging.getLogger("sqlalchemy.pool").warning("connection %s invalidated", "c-7")
        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "connection c-7 invalidated"
        assert record["level"] == "warning"
        assert record["logger"] == "sqlalchemy.pool"

    def test_reconfigure_keeps_one_handler(self):
        configure_logging("console")
        configure_logging("json")
        names = [h.get_name() for h in logging.getLogger().handlers]
        assert names.count(HANDLER_NAME) == 1

    def test_noisy_loggers_quiet_unless_debug(self, monkeypatch):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        configure_logging("console")
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
        configure_logging("console", debug=True)
        assert logging.getLogger("sqlalchemy.engine").level == logging.DEBUG
