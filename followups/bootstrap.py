"""
Bootstrap — wires the follow-up engine together from Settings.

Everything is constructed here and passed down explicitly. Tests build
their own engine with in-memory collaborators and a fake clock.

Usage:
    engine = build_engine(load_settings())
    await engine.start()                 # initialise store, start the sweep loop
    item_id = await engine.queue.add({"email_id": "m-1", "priority": "high"})
    await engine.close()
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from config.settings import Settings, get_settings
from database.store_base import BaseItemStore
from database.store_factory import create_store
from deadlines.policy import DeadlinePolicy
from followups.cache import QueueCache
from followups.locks import ItemLockRegistry
from followups.queue_store import QueueStore
from inbox.connector import MailboxConnector, create_mailbox_connector
from scheduler.sweep import SchedulerSweep
from suggestions.advisor import LLMSuggestionAdvisor, SuggestionAdvisor
from suggestions.engine import SuggestionEngine

logger = structlog.get_logger()


@dataclass
class FollowUpEngine:
    settings: Settings
    store: BaseItemStore
    policy: DeadlinePolicy
    suggestions: SuggestionEngine
    queue: QueueStore
    scheduler: SchedulerSweep
    mailbox: Optional[MailboxConnector] = None

    async def start(self, run_scheduler: bool = True) -> None:
        await self.store.initialize()
        if run_scheduler:
            await self.scheduler.start()
        logger.info("followup_engine_started",
                    store=type(self.store).__name__,
                    scheduler=run_scheduler,
                    advisor=self.suggestions.advisor_enabled)

    async def close(self) -> None:
        await self.scheduler.stop()
        if self.mailbox is not None:
            await self.mailbox.close()
        await self.store.close()
        logger.info("followup_engine_closed")


def build_engine(
    settings: Settings = None,
    store: BaseItemStore = None,
    advisor: SuggestionAdvisor = None,
    mailbox: MailboxConnector = None,
    clock: Callable[[], datetime] = None,
) -> FollowUpEngine:
    """Assemble the engine. Explicit arguments override what settings would build."""
    settings = settings or get_settings()

    policy = DeadlinePolicy.from_config(settings.deadlines)
    calendar = policy.calendar

    if advisor is None and settings.suggestions.enabled:
        advisor = LLMSuggestionAdvisor(
            settings.suggestions.llm,
            work_start_hour=calendar.start_hour,
            work_end_hour=calendar.end_hour,
            timezone=calendar.timezone_name,
        )
    suggestions = SuggestionEngine(calendar, advisor=advisor, config=settings.suggestions)

    store = store or create_store(settings.database)
    mailbox = mailbox or create_mailbox_connector(settings.mailbox)

    queue = QueueStore(
        store=store,
        policy=policy,
        suggestions=suggestions,
        cache=QueueCache.from_config(settings.queue, clock=clock),
        locks=ItemLockRegistry(settings.queue.lock_policy, settings.queue.lock_timeout_s),
        config=settings.queue,
        mailbox=mailbox,
        clock=clock,
    )
    scheduler = SchedulerSweep(queue, settings.scheduler, clock=clock)

    return FollowUpEngine(
        settings=settings,
        store=store,
        policy=policy,
        suggestions=suggestions,
        queue=queue,
        scheduler=scheduler,
        mailbox=mailbox,
    )
