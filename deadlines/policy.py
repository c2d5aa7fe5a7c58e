"""
Deadline Policy — SLA allowances, business-hours arithmetic, status evaluation.

Pure and stateless: nothing here reads the clock on its own. Callers pass
``now`` explicitly so the sweep and tests control time.

Flow:
  admission / escalation
    → allowance_for(priority, sender, override)   hours or None
    → compute_deadline(start, allowance)          working or wall-clock hours
  read / sweep
    → evaluate_status(now, deadline, allowance)   on_time | at_risk | overdue

Usage:
    cal = BusinessCalendar(start_hour=9, end_hour=17, timezone="Europe/Berlin")
    policy = DeadlinePolicy(config, cal)
    deadline, allowance = policy.deadline_for(now, QueuePriority.HIGH, sender="ceo@acme.com")
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config.settings import DeadlineConfig
from models.errors import ConfigurationError
from models.schemas import (
    AdmissionReason, DeadlineStatus, QueueItem, QueuePriority,
)


_PRIORITY_RANK = {
    QueuePriority.CRITICAL: 3,
    QueuePriority.HIGH: 2,
    QueuePriority.MEDIUM: 1,
    QueuePriority.LOW: 0,
}

_ESCALATION = {
    QueuePriority.LOW: QueuePriority.MEDIUM,
    QueuePriority.MEDIUM: QueuePriority.HIGH,
    QueuePriority.HIGH: QueuePriority.CRITICAL,
    QueuePriority.CRITICAL: QueuePriority.CRITICAL,
}

_DEADLINE_REASONS = frozenset({
    AdmissionReason.NEEDS_REPLY,
    AdmissionReason.DEADLINE_APPROACHING,
    AdmissionReason.VIP_ATTENTION,
    AdmissionReason.SLA_AT_RISK,
})

# Guards against float drift when a deadline lands exactly on a window edge
_EPSILON = timedelta(microseconds=1)


def priority_rank(priority: QueuePriority) -> int:
    """Higher rank sorts first."""
    return _PRIORITY_RANK[QueuePriority(priority)]


def escalate_priority(priority: QueuePriority) -> QueuePriority:
    """One tier up; critical stays critical."""
    return _ESCALATION[QueuePriority(priority)]


# ──────────────────────────────────────────────────────────────
#  Business Calendar
# ──────────────────────────────────────────────────────────────

class BusinessCalendar:
    """
    Working window in a named time zone. Monday to Friday are working days.

    Invalid hours or an unknown time zone raise ConfigurationError here,
    so a bad calendar is caught at startup rather than mid-evaluation.
    """

    def __init__(
        self,
        start_hour: int = 9,
        end_hour: int = 17,
        timezone: str = "UTC",
        exclude_non_working_time: bool = True,
    ):
        if not (0 <= start_hour <= 23) or not (1 <= end_hour <= 24):
            raise ConfigurationError(
                f"Working hours out of range: {start_hour}-{end_hour}",
                details={"start_hour": start_hour, "end_hour": end_hour},
            )
        if end_hour <= start_hour:
            raise ConfigurationError(
                f"work_end_hour ({end_hour}) must be after work_start_hour ({start_hour})",
                details={"start_hour": start_hour, "end_hour": end_hour},
            )
        try:
            self.tz = ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigurationError(f"Unknown time zone: {timezone}",
                                     details={"timezone": timezone}) from e

        self.start_hour = start_hour
        self.end_hour = end_hour
        self.timezone_name = timezone
        self.exclude_non_working_time = exclude_non_working_time

    def __repr__(self):
        return (f"<BusinessCalendar {self.start_hour:02d}-{self.end_hour:02d} "
                f"{self.timezone_name} exclude={self.exclude_non_working_time}>")

    @property
    def hours_per_day(self) -> int:
        return self.end_hour - self.start_hour

    # ── Helpers ───────────────────────────────────────────────

    def _local(self, dt: datetime) -> datetime:
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(self.tz)

    def _at_hour(self, local: datetime, hour: int) -> datetime:
        base = local.replace(hour=0, minute=0, second=0, microsecond=0, tzinfo=None)
        return (base + timedelta(hours=hour)).replace(tzinfo=self.tz)

    def _window(self, local: datetime) -> tuple[datetime, datetime]:
        return self._at_hour(local, self.start_hour), self._at_hour(local, self.end_hour)

    @staticmethod
    def is_working_day(local: datetime) -> bool:
        return local.weekday() < 5

    # ── Queries ───────────────────────────────────────────────

    def is_working_time(self, dt: datetime) -> bool:
        local = self._local(dt)
        if not self.is_working_day(local):
            return False
        start, end = self._window(local)
        return start <= local < end

    def day_start(self, dt: datetime) -> datetime:
        """Start of the working window on ``dt``'s local date (weekends included)."""
        return self._at_hour(self._local(dt), self.start_hour).astimezone(timezone.utc)

    def next_working_day_start(self, dt: datetime) -> datetime:
        """Start of the next working day strictly after ``dt``'s date."""
        local = self._local(dt)
        day = local + timedelta(days=1)
        while not self.is_working_day(day):
            day += timedelta(days=1)
        return self._at_hour(day, self.start_hour).astimezone(timezone.utc)

    def snap_to_working_time(self, dt: datetime) -> datetime:
        """Move ``dt`` forward to the nearest moment inside the working window."""
        local = self._local(dt)
        if self.is_working_day(local):
            start, end = self._window(local)
            if local < start:
                return start.astimezone(timezone.utc)
            if local < end:
                return local.astimezone(timezone.utc)
        return self.next_working_day_start(local)

    def add_working_hours(self, start: datetime, hours: float) -> datetime:
        """
        Advance ``start`` by ``hours`` of working time.

        Time outside the window and weekends does not count. A deadline that
        exhausts the allowance exactly at the end of a day stays on that day.
        """
        if hours < 0:
            raise ValueError("hours must be non-negative")

        cursor = self._local(self.snap_to_working_time(start))
        remaining = timedelta(hours=hours)

        while True:
            _, day_end = self._window(cursor)
            available = day_end - cursor
            if remaining <= available + _EPSILON:
                return (cursor + remaining).astimezone(timezone.utc)
            remaining -= available
            cursor = self._local(self.next_working_day_start(cursor))

    def add_hours(self, start: datetime, hours: float) -> datetime:
        """Working or wall-clock hours depending on the calendar's flag."""
        if self.exclude_non_working_time:
            return self.add_working_hours(start, hours)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        return (start + timedelta(hours=hours)).astimezone(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Pure functions
# ──────────────────────────────────────────────────────────────

def compute_deadline(
    admitted_at: datetime,
    priority: QueuePriority,
    override_hours: Optional[float] = None,
    calendar: BusinessCalendar = None,
    sla_hours: dict[str, Optional[float]] = None,
) -> Optional[datetime]:
    """
    Deadline for an item admitted at ``admitted_at``.
    Override hours take precedence over the priority's base allowance.
    Returns None when neither yields an allowance.
    """
    calendar = calendar or BusinessCalendar()
    allowance = override_hours
    if allowance is None:
        allowance = (sla_hours or DeadlineConfig().sla_hours).get(QueuePriority(priority).value)
    if allowance is None:
        return None
    return calendar.add_hours(admitted_at, allowance)


def time_remaining_hours(now: datetime, deadline: Optional[datetime]) -> Optional[float]:
    if deadline is None:
        return None
    return (deadline - now).total_seconds() / 3600.0


def evaluate_status(
    now: datetime,
    deadline: Optional[datetime],
    allowance_hours: Optional[float] = None,
    at_risk_fraction: float = 0.25,
) -> tuple[DeadlineStatus, Optional[float]]:
    """
    Returns (status, hours remaining).

    overdue  iff now >= deadline
    at_risk  when remaining <= at_risk_fraction × allowance
    on_time  otherwise, and always when there is no deadline
    """
    if deadline is None:
        return DeadlineStatus.ON_TIME, None

    remaining = time_remaining_hours(now, deadline)
    if now >= deadline:
        return DeadlineStatus.OVERDUE, remaining
    if allowance_hours and remaining <= at_risk_fraction * allowance_hours:
        return DeadlineStatus.AT_RISK, remaining
    return DeadlineStatus.ON_TIME, remaining


# ──────────────────────────────────────────────────────────────
#  Deadline Policy
# ──────────────────────────────────────────────────────────────

class DeadlinePolicy:
    """Binds the deadline config to a calendar."""

    def __init__(self, config: DeadlineConfig = None, calendar: BusinessCalendar = None):
        self.config = config or DeadlineConfig()
        self.calendar = calendar or BusinessCalendar(
            start_hour=self.config.work_start_hour,
            end_hour=self.config.work_end_hour,
            timezone=self.config.timezone,
            exclude_non_working_time=self.config.exclude_non_working_time,
        )
        self._vip = {k.lower(): v for k, v in self.config.vip_overrides.items()}

    @classmethod
    def from_config(cls, config: DeadlineConfig) -> "DeadlinePolicy":
        return cls(config)

    @property
    def at_risk_fraction(self) -> float:
        return self.config.at_risk_fraction

    def is_vip(self, sender: str) -> bool:
        return bool(sender) and sender.lower() in self._vip

    def allowance_for(
        self,
        priority: QueuePriority,
        sender: str = "",
        override_hours: Optional[float] = None,
    ) -> Optional[float]:
        """Explicit override, then VIP sender override, then the priority's base hours."""
        if override_hours is not None:
            return float(override_hours)
        if self.is_vip(sender):
            return float(self._vip[sender.lower()])
        hours = self.config.sla_hours.get(QueuePriority(priority).value)
        return float(hours) if hours is not None else None

    def reason_implies_deadline(self, reason: AdmissionReason) -> bool:
        return AdmissionReason(reason) in _DEADLINE_REASONS

    def should_track(self, reason: AdmissionReason, sender: str = "",
                     override_hours: Optional[float] = None) -> bool:
        return (
            self.reason_implies_deadline(reason)
            or override_hours is not None
            or self.is_vip(sender)
        )

    def deadline_for(
        self,
        start: datetime,
        priority: QueuePriority,
        sender: str = "",
        override_hours: Optional[float] = None,
    ) -> tuple[Optional[datetime], Optional[float]]:
        """Returns (deadline, allowance hours); both None when no SLA applies."""
        allowance = self.allowance_for(priority, sender, override_hours)
        if allowance is None:
            return None, None
        return self.calendar.add_hours(start, allowance), allowance

    def status_for(self, item: QueueItem, now: datetime) -> tuple[DeadlineStatus, Optional[float]]:
        return evaluate_status(
            now, item.deadline, item.deadline_allowance_hours, self.at_risk_fraction,
        )

    def refresh(self, item: QueueItem, now: datetime) -> QueueItem:
        """Copy of ``item`` with derived deadline fields recomputed for ``now``."""
        status, remaining = self.status_for(item, now)
        if remaining is not None and math.isfinite(remaining):
            remaining = round(remaining, 4)
        return item.model_copy(update={
            "deadline_status": status,
            "time_remaining_hours": remaining,
        })
