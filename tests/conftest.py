"""Shared test fixtures for the follow-up queue engine."""
from datetime import datetime, timedelta, timezone

import pytest

from config.settings import DeadlineConfig, QueueConfig, SuggestionConfig, reset_settings
from database.store_memory import InMemoryItemStore
from deadlines.policy import DeadlinePolicy
from followups.cache import QueueCache
from followups.locks import ItemLockRegistry
from followups.queue_store import QueueStore
from inbox.connector import InMemoryMailbox
from models.schemas import MessageMetadata
from suggestions.engine import SuggestionEngine

UTC = timezone.utc

# 2026-03-02 is a Monday
MONDAY_9 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, start: datetime = MONDAY_9):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, when: datetime) -> datetime:
        self.now = when
        return self.now


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def deadline_config() -> DeadlineConfig:
    return DeadlineConfig(vip_overrides={"ceo@acme.com": 1})


@pytest.fixture
def policy(deadline_config) -> DeadlinePolicy:
    return DeadlinePolicy(deadline_config)


@pytest.fixture
def suggestion_engine(policy) -> SuggestionEngine:
    return SuggestionEngine(policy.calendar, advisor=None, config=SuggestionConfig(enabled=False))


@pytest.fixture
def item_store() -> InMemoryItemStore:
    return InMemoryItemStore()


@pytest.fixture
def mailbox() -> InMemoryMailbox:
    return InMemoryMailbox([
        MessageMetadata(
            message_id="msg-100",
            thread_id="thr-100",
            subject="Contract renewal: need your sign-off",
            sender="legal@partner.com",
            recipients=["me@acme.com"],
            received_at=MONDAY_9 - timedelta(hours=1),
            labels=["INBOX", "IMPORTANT"],
            body="Could you confirm the renewal terms by Wednesday?",
        ),
        MessageMetadata(
            message_id="msg-200",
            subject="Weekly newsletter",
            sender="news@vendor.com",
            recipients=["me@acme.com"],
            received_at=MONDAY_9 - timedelta(hours=2),
        ),
        MessageMetadata(
            message_id="msg-300",
            subject="Board deck",
            sender="CEO@acme.com",
            recipients=["me@acme.com"],
            received_at=MONDAY_9 - timedelta(minutes=30),
        ),
    ])


@pytest.fixture
def queue_config() -> QueueConfig:
    return QueueConfig(max_page_size=20, default_page_size=10)


@pytest.fixture
def queue(item_store, policy, suggestion_engine, mailbox, queue_config, clock) -> QueueStore:
    return QueueStore(
        store=item_store,
        policy=policy,
        suggestions=suggestion_engine,
        cache=QueueCache.from_config(queue_config, clock=clock),
        locks=ItemLockRegistry("wait", timeout_s=0.5),
        config=queue_config,
        mailbox=mailbox,
        clock=clock,
    )


@pytest.fixture
def payload():
    return {
        "email_id": "msg-1",
        "thread_id": "thr-1",
        "subject": "Quarterly numbers",
        "sender": "finance@acme.com",
        "recipient": "me@acme.com",
        "received_at": MONDAY_9 - timedelta(hours=1),
        "priority": "medium",
        "category": "finance",
        "reason": "needs_reply",
    }
