"""
Scheduler Sweep — periodic maintenance of the follow-up queue.

Runs as a background task at a fixed interval. Each run:
  (a) resurfaces snoozed items whose snoozed_until has passed
  (b) refreshes deadline status of active/waiting/escalated items,
      escalating the overdue ones
  (c) archives completed items older than the retention window
  (d) refreshes the cached statistics
  (e) purges history older than the history retention window

Steps are independent and so are items within a step. Collaborator errors are
retried (tenacity) for the failing scan or the failing item only; what still
fails is recorded in the report and the sweep carries on. The sweep writes
only through QueueStore.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from config.settings import SchedulerConfig
from models.errors import CollaboratorError, QueueError
from models.schemas import QueueItemStatus, SweepReport, SweepStepError

if TYPE_CHECKING:
    from followups.queue_store import QueueStore

logger = structlog.get_logger()

T = TypeVar("T")


class SchedulerSweep:
    """
    Owns only its run cursor (last_run_at) and the last report.

    Configure in settings:
        scheduler:
          interval_seconds: 3600
          completed_retention_hours: 168
          history_retention_days: 90
    """

    def __init__(
        self,
        queue: QueueStore,
        config: SchedulerConfig = None,
        clock: Callable[[], datetime] = None,
        retry_wait_s: float = 0.5,
    ):
        self.queue = queue
        self.config = config or SchedulerConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._retry_wait_s = retry_wait_s
        self.last_run_at: Optional[datetime] = None
        self.last_report: Optional[SweepReport] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the sweep loop as a background task."""
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="scheduler_sweep")
        logger.info("scheduler_started", interval_s=self.config.interval_seconds)

    async def stop(self) -> None:
        """Gracefully stop the loop."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("scheduler_stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("sweep_error", error=str(e), error_type=type(e).__name__)

            await asyncio.sleep(self.config.interval_seconds)

    # ── One sweep ─────────────────────────────────────────────

    async def run_once(self, now: datetime = None) -> SweepReport:
        now = now or self._clock()
        report = SweepReport(started_at=now)

        await self._step("resurface", report, lambda: self._resurface(now, report))
        await self._step("deadlines", report, lambda: self._refresh_deadlines(now, report))
        await self._step("archive", report, lambda: self._archive(now, report))
        await self._step("statistics", report, lambda: self._refresh_statistics(now, report))
        await self._step("history", report, lambda: self._purge_history(now, report))

        report.finished_at = self._clock()
        self.last_run_at = now
        self.last_report = report
        logger.info("sweep_completed",
                    resurfaced=report.resurfaced,
                    deadlines_refreshed=report.deadlines_refreshed,
                    escalated=report.escalated,
                    archived=report.archived,
                    history_purged=report.history_purged,
                    errors=len(report.errors))
        return report

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(CollaboratorError),
            stop=stop_after_attempt(max(1, self.config.retry_attempts)),
            wait=wait_exponential(multiplier=self._retry_wait_s, max=30),
            reraise=True,
        )

    async def _step(self, name: str, report: SweepReport,
                    fn: Callable[[], Awaitable[None]]) -> None:
        try:
            async for attempt in self._retrying():
                with attempt:
                    await fn()
        except QueueError as e:
            logger.error("sweep_step_failed", step=name, error=e.message, code=e.code)
            report.errors.append(SweepStepError(step=name, error=e.message))
        except Exception as e:
            logger.error("sweep_step_failed", step=name, error=str(e),
                         error_type=type(e).__name__)
            report.errors.append(SweepStepError(step=name, error=str(e) or type(e).__name__))

    async def _for_item(self, step: str, item_id: str, report: SweepReport,
                        fn: Callable[[], Awaitable[T]]) -> Optional[T]:
        """
        Run one item's transition. Collaborator errors are retried for this
        item alone; whatever still fails is recorded and the loop moves on.
        """
        try:
            async for attempt in self._retrying():
                with attempt:
                    return await fn()
        except QueueError as e:
            logger.warning("sweep_item_failed", step=step, item_id=item_id,
                           error=e.message, code=e.code)
            report.errors.append(SweepStepError(step=step, item_id=item_id, error=e.message))
        except Exception as e:
            logger.error("sweep_item_failed", step=step, item_id=item_id,
                         error=str(e), error_type=type(e).__name__)
            report.errors.append(SweepStepError(step=step, item_id=item_id,
                                                error=str(e) or type(e).__name__))
        return None

    # ── Steps ─────────────────────────────────────────────────

    async def _resurface(self, now: datetime, report: SweepReport) -> None:
        due = [
            item for item in await self.queue.scan([QueueItemStatus.SNOOZED], now=now)
            if item.snoozed_until is not None and item.snoozed_until <= now
        ]
        for item in due:
            done = await self._for_item("resurface", item.id, report,
                                        lambda: self.queue.resurface(item.id, now=now))
            if done is not None:
                report.resurfaced += 1

    async def _refresh_deadlines(self, now: datetime, report: SweepReport) -> None:
        # Stored values, not refreshed ones: the report counts status changes
        items = await self.queue.scan(
            [QueueItemStatus.ACTIVE, QueueItemStatus.WAITING, QueueItemStatus.ESCALATED],
            refresh=False,
        )
        for before in items:
            if before.deadline is None:
                continue
            after = await self._for_item("deadlines", before.id, report,
                                         lambda: self.queue.refresh_deadline(before.id, now=now))
            if after is None:
                continue
            if after.status == QueueItemStatus.ESCALATED and before.status != QueueItemStatus.ESCALATED:
                report.escalated += 1
            elif after.deadline_status != before.deadline_status:
                report.deadlines_refreshed += 1

    async def _archive(self, now: datetime, report: SweepReport) -> None:
        cutoff = now - timedelta(hours=self.config.completed_retention_hours)
        for item in await self.queue.scan([QueueItemStatus.COMPLETED], now=now):
            if item.completed_at is None or item.completed_at > cutoff:
                continue
            done = await self._for_item("archive", item.id, report,
                                        lambda: self.queue.archive(item.id, now=now))
            if done is not None:
                report.archived += 1

    async def _refresh_statistics(self, now: datetime, report: SweepReport) -> None:
        await self.queue.statistics(force_refresh=True, now=now)
        report.statistics_refreshed = True

    async def _purge_history(self, now: datetime, report: SweepReport) -> None:
        days = self.config.history_retention_days
        if days <= 0:
            return
        report.history_purged += await self.queue.purge_history(now - timedelta(days=days))
