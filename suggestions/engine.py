"""
Suggestion Engine — snooze-time suggestions with a deterministic fallback.

  suggest()
    → advisor available?  ──yes──▶ advisor.suggest() under wait_for(timeout)
    │                                  ├─ ok        → repair & normalise
    │                                  └─ any error → fallback
    └─no──▶ fallback (priority rules on the business calendar)
    → apply learned category offset
    → snap into working hours when requested

The engine never mutates queue state. It remembers the last time it
suggested per item so that a later snooze can feed learn().
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from config.settings import SuggestionConfig
from deadlines.policy import BusinessCalendar
from models.errors import ConfigurationError, ValidationError
from models.schemas import (
    ItemContext, QueuePriority, QuickSnoozeOption, SnoozePreferences,
    SnoozeSuggestion, SuggestionAlternative, SuggestionSource,
)
from suggestions.advisor import SuggestionAdvisor

logger = structlog.get_logger()

FALLBACK_MARKER = "fallback:"
_MAX_ALTERNATIVES = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class SuggestionEngine:
    """
    Produces SnoozeSuggestions. Advisor problems of any kind (missing
    credentials, timeouts, malformed JSON) end in the fallback path.
    """

    def __init__(
        self,
        calendar: BusinessCalendar,
        advisor: SuggestionAdvisor = None,
        config: SuggestionConfig = None,
    ):
        self._calendar = calendar
        self._advisor = advisor
        self._config = config or SuggestionConfig()
        self._offsets: dict[str, tuple[float, int]] = {}      # category → (mean hours, samples)
        self._last_suggested: dict[str, datetime] = {}        # item id → suggested time

    @property
    def advisor_enabled(self) -> bool:
        return bool(self._config.enabled and self._advisor is not None and self._advisor.available)

    def _calendar_for(self, preferences: SnoozePreferences) -> BusinessCalendar:
        if (preferences.work_start_hour is None and preferences.work_end_hour is None
                and not preferences.timezone):
            return self._calendar
        try:
            return BusinessCalendar(
                start_hour=preferences.work_start_hour if preferences.work_start_hour is not None
                else self._calendar.start_hour,
                end_hour=preferences.work_end_hour if preferences.work_end_hour is not None
                else self._calendar.end_hour,
                timezone=preferences.timezone or self._calendar.timezone_name,
                exclude_non_working_time=self._calendar.exclude_non_working_time,
            )
        except ConfigurationError as e:
            raise ValidationError(f"Invalid snooze preferences: {e.message}", details=e.details) from e

    # ── Suggest ───────────────────────────────────────────────

    async def suggest(
        self,
        context: ItemContext,
        preferences: SnoozePreferences = None,
        now: datetime = None,
    ) -> SnoozeSuggestion:
        preferences = preferences or SnoozePreferences()
        now = now or _utcnow()
        calendar = self._calendar_for(preferences)

        suggestion = None
        fallback_reason = "advisor disabled"
        if self.advisor_enabled:
            try:
                raw = await asyncio.wait_for(
                    self._advisor.suggest(context, preferences, now),
                    timeout=self._config.timeout_s,
                )
                suggestion = self._from_advisor(raw, now)
            except asyncio.TimeoutError:
                fallback_reason = "advisor timed out"
                logger.warning("advisor_timeout", item_id=context.item_id,
                               timeout_s=self._config.timeout_s)
            except Exception as e:
                fallback_reason = "advisor unavailable"
                logger.warning("advisor_failed", item_id=context.item_id,
                               error=str(e), error_type=type(e).__name__)

        if suggestion is None:
            suggestion = self._fallback(context.priority, now, calendar, fallback_reason)

        suggestion = self._adjust(suggestion, context.category, now, calendar,
                                  preferences.respect_working_hours)
        if context.item_id:
            self._last_suggested[context.item_id] = suggestion.time

        logger.info("snooze_suggested",
                    item_id=context.item_id,
                    source=suggestion.source.value,
                    time=suggestion.time.isoformat(),
                    confidence=suggestion.confidence)
        return suggestion

    def _from_advisor(self, raw: dict[str, Any], now: datetime) -> SnoozeSuggestion:
        """Validate and repair advisor output. Raises ValueError when unusable."""
        time = _parse_time(raw.get("suggested_time"))
        if time is None:
            raise ValueError(f"advisor returned no usable suggested_time: {raw.get('suggested_time')!r}")
        if time <= now:
            time = now + timedelta(hours=1)

        alternatives = []
        for alt in raw.get("alternatives") or []:
            if isinstance(alt, dict):
                alt_time, alt_reason = _parse_time(alt.get("time")), str(alt.get("reason") or "")
            else:
                alt_time, alt_reason = _parse_time(alt), ""
            if alt_time is None or alt_time <= now:
                continue
            alternatives.append(SuggestionAlternative(time=alt_time, reason=alt_reason or "Alternative time"))
        if not alternatives:
            alternatives.append(SuggestionAlternative(time=time + timedelta(hours=3),
                                                      reason="A few hours later"))

        try:
            confidence = float(raw.get("confidence", self._config.default_confidence))
        except (TypeError, ValueError):
            confidence = self._config.default_confidence
        confidence = min(1.0, max(0.0, confidence))

        reasoning = str(raw.get("reasoning") or "").strip() or "Suggested from message content"

        return SnoozeSuggestion(
            time=time,
            reasoning=reasoning,
            alternatives=alternatives[:_MAX_ALTERNATIVES],
            confidence=confidence,
            source=SuggestionSource.ADVISOR,
        )

    def _fallback(self, priority: QueuePriority, now: datetime,
                  calendar: BusinessCalendar, why: str) -> SnoozeSuggestion:
        priority = QueuePriority(priority)
        candidates = {
            "next_hour": (calendar.snap_to_working_time(now + timedelta(hours=1)),
                          "Critical items come back within the hour"),
            "later_today": (calendar.add_working_hours(now, 3),
                            "High priority items come back after three working hours"),
            "next_day": (calendar.next_working_day_start(now),
                         "Next working morning"),
            "next_week": (calendar.snap_to_working_time(now + timedelta(days=7)),
                          "Low priority items can wait a week"),
        }
        primary_key = {
            QueuePriority.CRITICAL: "next_hour",
            QueuePriority.HIGH: "later_today",
            QueuePriority.MEDIUM: "next_day",
            QueuePriority.LOW: "next_week",
        }[priority]
        time, reason = candidates.pop(primary_key)

        alternatives = [
            SuggestionAlternative(time=t, reason=r)
            for t, r in sorted(candidates.values(), key=lambda c: c[0])
            if t != time and t > now
        ][:2]
        if not alternatives:
            alternatives = [SuggestionAlternative(time=time + timedelta(days=1), reason="One day later")]

        return SnoozeSuggestion(
            time=time,
            reasoning=f"{FALLBACK_MARKER} {reason} ({why})",
            alternatives=alternatives,
            confidence=self._config.fallback_confidence,
            source=SuggestionSource.FALLBACK,
        )

    def _adjust(self, suggestion: SnoozeSuggestion, category: str, now: datetime,
                calendar: BusinessCalendar, snap: bool) -> SnoozeSuggestion:
        offset = self.learned_offset(category)
        time = suggestion.time
        if offset:
            shifted = time + timedelta(hours=offset)
            if shifted > now:
                time = shifted
        if snap:
            time = calendar.snap_to_working_time(time)
        if time == suggestion.time:
            return suggestion
        return suggestion.model_copy(update={"time": time})

    # ── Presets ───────────────────────────────────────────────

    def quick_presets(self, now: datetime = None,
                      preferences: SnoozePreferences = None) -> list[QuickSnoozeOption]:
        """Fixed menu of snooze choices. Does not touch the advisor."""
        now = now or _utcnow()
        calendar = self._calendar_for(preferences or SnoozePreferences())
        local_weekday = now.astimezone(calendar.tz).weekday()

        options = [
            QuickSnoozeOption(label="In 1 hour", time=now + timedelta(hours=1),
                              reason="Short break"),
            QuickSnoozeOption(label="In 3 hours", time=now + timedelta(hours=3),
                              reason="Later today"),
            QuickSnoozeOption(label="Tomorrow morning", time=calendar.next_working_day_start(now),
                              reason="Start of the next working day"),
            QuickSnoozeOption(label="Next week",
                              time=calendar.snap_to_working_time(
                                  calendar.day_start(now + timedelta(days=7))),
                              reason="Same day next week"),
        ]
        if local_weekday < 4:
            friday = calendar.day_start(now + timedelta(days=4 - local_weekday))
            options.append(QuickSnoozeOption(label="End of week", time=friday,
                                             reason="Friday morning"))
        return options

    # ── Learning ──────────────────────────────────────────────

    def last_suggested(self, item_id: str) -> Optional[datetime]:
        return self._last_suggested.get(item_id)

    def forget(self, item_id: str) -> None:
        """Drop the remembered suggestion for an item that left the queue."""
        self._last_suggested.pop(item_id, None)

    @property
    def pending_suggestions(self) -> int:
        return len(self._last_suggested)

    def learned_offset(self, category: str) -> float:
        mean, _ = self._offsets.get(category, (0.0, 0))
        return mean

    def learn(
        self,
        item_id: str,
        category: str,
        chosen_time: datetime,
        suggested_time: datetime = None,
    ) -> Optional[float]:
        """
        Fold (chosen − suggested) into the category's running mean.
        Returns the new mean, or None when there was nothing to compare.
        """
        remembered = self._last_suggested.pop(item_id, None)
        suggested = suggested_time or remembered
        if suggested is None:
            return None

        limit = self._config.max_learned_offset_hours
        offset = (chosen_time - suggested).total_seconds() / 3600.0
        offset = max(-limit, min(limit, offset))

        mean, count = self._offsets.get(category, (0.0, 0))
        count += 1
        mean += (offset - mean) / count
        self._offsets[category] = (mean, count)

        logger.info("snooze_offset_learned", item_id=item_id, category=category,
                    offset_hours=round(offset, 3), mean_hours=round(mean, 3), samples=count)
        return mean
