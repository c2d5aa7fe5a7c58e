"""
Queue Store — the single writer of queue items and their history.

Every mutation follows the same path:

  lock item (ItemLockRegistry)
    → load current version from the item store
    → QueueStateMachine.apply()  (or a field merge for update())
    → store.commit(new, expected_version, entry)   item + exactly one history
                                                   entry, in one transaction
    → invalidate the item's cache keys
  release

Reads never lock. Derived deadline fields (deadline_status,
time_remaining_hours) are recomputed on every read and not persisted by reads.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from config.settings import QueueConfig
from database.store_base import BaseItemStore
from deadlines.policy import DeadlinePolicy, escalate_priority, priority_rank
from followups.cache import ACTIVE_KEY, STATS_KEY, QueueCache, history_key
from followups.locks import ItemLockRegistry
from inbox.connector import MailboxConnector
from lifecycle.state_machine import QueueStateMachine, TransitionResult
from models.errors import (
    CollaboratorError, InvalidTransitionError, NotFoundError, QueueError, ValidationError,
)
from models.schemas import (
    AdmissionReason, BulkFailure, BulkOperationResult, Classification, DeadlineStatus,
    ItemContext, PageRequest, QueueAction, QueueFilter, QueueHistoryEntry, QueueItem,
    QueueItemCreate, QueueItemStatus, QueueItemUpdate, QueuePage, QueuePriority,
    QueueStatistics, QuickSnoozeOption, SnoozeOptions, SnoozePreferences, SnoozeSuggestion,
)
from suggestions.engine import SuggestionEngine

logger = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)

_OPEN_STATES = (
    QueueItemStatus.ACTIVE, QueueItemStatus.SNOOZED,
    QueueItemStatus.WAITING, QueueItemStatus.ESCALATED,
)
_TRACKED_STATES = (QueueItemStatus.ACTIVE, QueueItemStatus.WAITING, QueueItemStatus.ESCALATED)
_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _validate(model: Type[M], data: Any) -> M:
    """Coerce a dict into ``model``, turning pydantic errors into ValidationError."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError(f"Invalid {model.__name__}: {errors[0]['field']}: {errors[0]['message']}",
                              details={"errors": errors}) from e


def _hours(delta: timedelta) -> float:
    return delta.total_seconds() / 3600.0


class QueueStore:
    """
    Query, mutation, bulk and statistics surface of the follow-up queue.
    All collaborators are injected; nothing here reaches for globals.
    """

    def __init__(
        self,
        store: BaseItemStore,
        policy: DeadlinePolicy,
        suggestions: SuggestionEngine,
        cache: QueueCache = None,
        locks: ItemLockRegistry = None,
        config: QueueConfig = None,
        mailbox: MailboxConnector = None,
        state_machine: QueueStateMachine = None,
        clock: Callable[[], datetime] = None,
    ):
        self._store = store
        self._policy = policy
        self._suggestions = suggestions
        self._config = config or QueueConfig()
        self._clock = clock or _utcnow
        self._cache = cache or QueueCache.from_config(self._config, clock=self._clock)
        self._locks = locks or ItemLockRegistry(self._config.lock_policy, self._config.lock_timeout_s)
        self._mailbox = mailbox
        self._sm = state_machine or QueueStateMachine()

    @property
    def policy(self) -> DeadlinePolicy:
        return self._policy

    def _now(self) -> datetime:
        return self._clock()

    # ── Internals ─────────────────────────────────────────────

    async def _load(self, item_id: str) -> QueueItem:
        item = await self._store.get_item(item_id)
        if item is None:
            raise NotFoundError(item_id)
        return item

    async def _commit(self, current: QueueItem, new: QueueItem,
                      record: QueueHistoryEntry) -> QueueItem:
        # Item and history entry land together or not at all
        stored = await self._store.commit(new, expected_version=current.version, entry=record)
        self._cache.invalidate_item(current.id)
        return stored

    async def _transition(
        self,
        item_id: str,
        trigger: str,
        actor: str,
        now: datetime = None,
        changes: Callable[[QueueItem], dict[str, Any]] = None,
        metadata: Callable[[QueueItem], dict[str, Any]] = None,
    ) -> tuple[QueueItem, QueueItem]:
        """Apply one lifecycle trigger under the item lock. Returns (before, after)."""
        now = now or self._now()
        async with self._locks.hold(item_id):
            item = await self._load(item_id)
            result: TransitionResult = self._sm.apply(
                item, trigger, now=now, actor=actor,
                changes=changes(item) if changes else None,
                metadata=metadata(item) if metadata else None,
            )
            stored = await self._commit(item, result.item, result.record)
        return item, self._policy.refresh(stored, now)

    # ── Admission ─────────────────────────────────────────────

    async def add(self, payload: QueueItemCreate | dict[str, Any], actor: str = "system") -> str:
        """
        Admit an item. Returns its id; an item already queued for the same
        email (and not archived) is returned instead of creating a duplicate.
        """
        payload = _validate(QueueItemCreate, payload)
        now = self._now()
        if payload.snooze_until is not None and payload.snooze_until <= now:
            raise ValidationError("snooze_until must be in the future",
                                  details={"snooze_until": payload.snooze_until.isoformat()})

        async with self._locks.hold(f"email:{payload.email_id}"):
            existing = await self._store.get_item_by_email_id(payload.email_id)
            if existing is not None:
                logger.info("queue_item_exists", item_id=existing.id, email_id=payload.email_id)
                return existing.id

            deadline, allowance = None, None
            if self._policy.should_track(payload.reason, payload.sender, payload.deadline_override_hours):
                deadline, allowance = self._policy.deadline_for(
                    now, payload.priority, payload.sender, payload.deadline_override_hours,
                )

            item = QueueItem(
                email_id=payload.email_id,
                thread_id=payload.thread_id or payload.email_id,
                subject=payload.subject,
                sender=payload.sender,
                recipient=payload.recipient,
                received_at=payload.received_at or now,
                labels=list(payload.labels),
                priority=payload.priority,
                category=payload.category,
                reason=payload.reason,
                added_at=now,
                last_action_at=now,
                deadline=deadline,
                deadline_allowance_hours=allowance,
                deadline_override_hours=payload.deadline_override_hours,
                created_at=now,
                updated_at=now,
            )
            item = self._policy.refresh(item, now)
            stored = await self._store.insert_item(item, entry=QueueHistoryEntry(
                item_id=item.id,
                action=QueueAction.ADDED,
                new_status=item.status,
                new_priority=item.priority,
                actor=actor,
                timestamp=now,
                metadata={"email_id": item.email_id, "reason": item.reason.value,
                          "deadline": deadline.isoformat() if deadline else None},
            ))
            self._cache.invalidate_item(stored.id)

        logger.info("queue_item_added",
                    item_id=stored.id,
                    email_id=stored.email_id,
                    priority=stored.priority.value,
                    reason=stored.reason.value,
                    deadline=deadline.isoformat() if deadline else None)

        if payload.snooze_until is not None:
            await self.snooze(stored.id, payload.snooze_until, reason="snoozed on admission", actor=actor)
        return stored.id

    async def admit_message(
        self,
        message_id: str,
        classification: Classification | dict[str, Any],
        actor: str = "classifier",
    ) -> Optional[str]:
        """Admit a classified message when it needs follow-up. Returns the item id or None."""
        classification = _validate(Classification, classification)
        if self._mailbox is None:
            raise CollaboratorError("No mailbox connector configured")

        message = await self._mailbox.get_message(message_id)
        if message is None:
            logger.warning("admission_message_missing", message_id=message_id)
            return None

        is_vip = classification.is_vip or self._policy.is_vip(message.sender)
        needs_follow_up = (
            classification.needs_reply
            or classification.waiting_on_others
            or classification.priority in (QueuePriority.CRITICAL, QueuePriority.HIGH)
            or is_vip
        )
        if not needs_follow_up:
            logger.debug("message_not_queued", message_id=message_id,
                         priority=classification.priority.value)
            return None

        if classification.waiting_on_others:
            reason = AdmissionReason.WAITING_ON_OTHERS
        elif is_vip:
            reason = AdmissionReason.VIP_ATTENTION
        else:
            reason = AdmissionReason.NEEDS_REPLY

        item_id = await self.add(QueueItemCreate(
            email_id=message.message_id,
            thread_id=message.thread_id,
            subject=message.subject,
            sender=message.sender,
            recipient=", ".join(message.recipients),
            received_at=message.received_at,
            labels=message.labels,
            priority=classification.priority,
            category=classification.category,
            reason=reason,
        ), actor=actor)

        if classification.waiting_on_others:
            item = await self._load(item_id)
            if item.status == QueueItemStatus.ACTIVE:
                await self.mark_waiting(item_id, classification.waiting_on,
                                        reason=classification.reasoning, actor=actor)
        return item_id

    # ── Reads ─────────────────────────────────────────────────

    async def get(self, item_id: str) -> QueueItem:
        return self._policy.refresh(await self._load(item_id), self._now())

    async def _all_items(self) -> list[QueueItem]:
        items = self._cache.get(ACTIVE_KEY)
        if items is None:
            generation = self._cache.generation
            items = await self._store.scan_items()
            self._cache.set(ACTIVE_KEY, items, generation=generation)
        return items

    @staticmethod
    def _matches(item: QueueItem, f: QueueFilter) -> bool:
        if f.statuses and item.status not in f.statuses:
            return False
        if f.priorities and item.priority not in f.priorities:
            return False
        if f.categories and item.category not in f.categories:
            return False
        if f.deadline_statuses and item.deadline_status not in f.deadline_statuses:
            return False
        if f.reasons and item.reason not in f.reasons:
            return False
        if f.text:
            needle = f.text.lower()
            if needle not in item.subject.lower() and needle not in item.sender.lower():
                return False
        return True

    @staticmethod
    def sort_key(item: QueueItem) -> tuple:
        """priority desc, deadline asc with no deadline last, received desc."""
        return (
            -priority_rank(item.priority),
            item.deadline is None,
            item.deadline or _FAR_FUTURE,
            -item.received_at.timestamp(),
        )

    async def query(
        self,
        filter: QueueFilter | dict[str, Any] = None,
        page: PageRequest | dict[str, Any] = None,
    ) -> QueuePage:
        f = _validate(QueueFilter, filter or {})
        page = _validate(PageRequest, page or {})
        limit = page.limit or self._config.default_page_size
        if limit > self._config.max_page_size:
            raise ValidationError(
                f"Page size {limit} exceeds maximum of {self._config.max_page_size}",
                details={"limit": limit, "max_page_size": self._config.max_page_size},
            )

        now = self._now()
        matched = [
            item for item in (self._policy.refresh(i, now) for i in await self._all_items())
            if self._matches(item, f)
        ]
        matched.sort(key=self.sort_key)
        return QueuePage(
            items=matched[page.offset:page.offset + limit],
            total=len(matched),
            offset=page.offset,
            limit=limit,
        )

    async def scan(self, statuses: list[QueueItemStatus] = None, now: datetime = None,
                   refresh: bool = True) -> list[QueueItem]:
        """Uncached read of every item in ``statuses``."""
        items = await self._store.scan_items(statuses=statuses)
        if not refresh:
            return items
        now = now or self._now()
        return [self._policy.refresh(i, now) for i in items]

    async def history(self, item_id: str, limit: int = None) -> list[QueueHistoryEntry]:
        """History of one item, newest first."""
        key = history_key(item_id)
        entries = self._cache.get(key)
        if entries is None:
            generation = self._cache.generation
            entries = await self._store.get_history(item_id)
            if not entries and await self._store.get_item(item_id) is None:
                raise NotFoundError(item_id)
            self._cache.set(key, entries, generation=generation)
        return entries[:limit] if limit else list(entries)

    # ── Field updates ─────────────────────────────────────────

    async def update(
        self,
        item_id: str,
        changes: QueueItemUpdate | dict[str, Any],
        actor: str = "user",
    ) -> QueueItem:
        """
        Merge classification changes. Only fields present in ``changes`` are
        applied. Status is owned by the lifecycle operations.
        """
        if isinstance(changes, dict) and "status" in changes:
            raise ValidationError("status cannot be changed through update; use a lifecycle operation",
                                  details={"field": "status"})
        changes = _validate(QueueItemUpdate, changes)
        requested = {
            k: getattr(changes, k) for k in changes.model_fields_set
            if getattr(changes, k) is not None or k == "deadline_override_hours"
        }

        now = self._now()
        async with self._locks.hold(item_id):
            item = await self._load(item_id)
            if item.status == QueueItemStatus.ARCHIVED:
                raise InvalidTransitionError(item.id, item.status.value, "update")

            diff = {k: v for k, v in requested.items() if getattr(item, k) != v}
            if not diff:
                return self._policy.refresh(item, now)

            update: dict[str, Any] = {**diff, "updated_at": now}
            if {"priority", "reason", "deadline_override_hours"} & diff.keys():
                priority = diff.get("priority", item.priority)
                reason = diff.get("reason", item.reason)
                override = diff.get("deadline_override_hours", item.deadline_override_hours)
                if self._policy.should_track(reason, item.sender, override):
                    deadline, allowance = self._policy.deadline_for(
                        item.added_at, priority, item.sender, override,
                    )
                else:
                    deadline, allowance = None, None
                update["deadline"] = deadline
                update["deadline_allowance_hours"] = allowance

            new = self._policy.refresh(item.model_copy(update=update), now)
            priority_changed = "priority" in diff
            record = QueueHistoryEntry(
                item_id=item.id,
                action=QueueAction.PRIORITY_CHANGED if priority_changed else QueueAction.UPDATED,
                old_status=item.status,
                new_status=item.status,
                old_priority=item.priority if priority_changed else None,
                new_priority=new.priority if priority_changed else None,
                actor=actor,
                timestamp=now,
                metadata={"changes": {k: getattr(v, "value", v) for k, v in diff.items()}},
            )
            stored = await self._commit(item, new, record)

        logger.info("queue_item_updated", item_id=item_id, fields=sorted(diff), actor=actor)
        return self._policy.refresh(stored, now)

    async def remove(self, item_id: str, actor: str = "user") -> None:
        """Hard delete. Only completed or archived items can be removed."""
        now = self._now()
        async with self._locks.hold(item_id):
            item = await self._load(item_id)
            if not item.is_terminal:
                raise InvalidTransitionError(item.id, item.status.value, "remove")
            await self._store.delete_item(item_id, entry=QueueHistoryEntry(
                item_id=item.id,
                action=QueueAction.REMOVED,
                old_status=item.status,
                actor=actor,
                timestamp=now,
            ))
            self._cache.invalidate_item(item_id)
        self._suggestions.forget(item_id)
        logger.info("queue_item_removed", item_id=item_id, actor=actor)

    # ── Lifecycle ─────────────────────────────────────────────

    async def snooze(
        self,
        item_id: str,
        until: datetime,
        reason: str = "",
        actor: str = "user",
        smart: bool = False,
    ) -> QueueItem:
        until = SnoozeOptions(until=until).until
        now = self._now()
        if until <= now:
            raise ValidationError("Snooze time must be in the future",
                                  details={"item_id": item_id, "until": until.isoformat()})

        async with self._locks.hold(item_id):
            item = await self._load(item_id)
            suggested = item.suggested_snooze_time
            result = self._sm.apply(
                item, "snooze", now=now, actor=actor,
                changes={
                    "snoozed_until": until,
                    "snooze_count": item.snooze_count + 1,
                    # A suggestion is consumed by the snooze that follows it
                    "suggested_snooze_time": None,
                    "suggestion_reasoning": None,
                    "suggestion_confidence": None,
                    "suggestion_source": None,
                },
                metadata={
                    "until": until.isoformat(),
                    "hours": round(_hours(until - now), 3),
                    "reason": reason,
                    "smart": smart,
                    "suggested_time": suggested.isoformat() if suggested else None,
                },
            )
            stored = await self._commit(item, result.item, result.record)

        if suggested is not None:
            self._suggestions.learn(item.id, item.category, until, suggested_time=suggested)
        logger.info("queue_item_snoozed", item_id=item_id, until=until.isoformat(), actor=actor)
        return self._policy.refresh(stored, now)

    async def unsnooze(self, item_id: str, actor: str = "user") -> QueueItem:
        _, item = await self._transition(item_id, "unsnooze", actor)
        return item

    async def resurface(self, item_id: str, actor: str = "scheduler", now: datetime = None) -> QueueItem:
        _, item = await self._transition(item_id, "resurface", actor, now=now)
        return item

    async def complete(self, item_id: str, actor: str = "user") -> QueueItem:
        before, item = await self._transition(item_id, "complete", actor)
        self._suggestions.forget(item_id)
        logger.info("queue_item_completed", item_id=item_id, from_status=before.status.value)
        return item

    async def archive(self, item_id: str, actor: str = "scheduler", now: datetime = None) -> QueueItem:
        _, item = await self._transition(item_id, "archive", actor, now=now)
        return item

    async def mark_waiting(self, item_id: str, target: str = "", reason: str = "",
                           actor: str = "user") -> QueueItem:
        _, item = await self._transition(
            item_id, "mark_waiting", actor,
            changes=lambda _: {"waiting_on": target, "waiting_reason": reason},
            metadata=lambda _: {"waiting_on": target, "reason": reason},
        )
        return item

    async def mark_reply_received(self, item_id: str, actor: str = "user") -> QueueItem:
        # The transition clears waiting_on; history keeps who replied
        _, item = await self._transition(
            item_id, "reply_received", actor,
            metadata=lambda current: {"waiting_on": current.waiting_on},
        )
        return item

    async def escalate(
        self,
        item_id: str,
        new_priority: QueuePriority = None,
        actor: str = "user",
        reason: str = "manual",
        now: datetime = None,
    ) -> QueueItem:
        """
        Bump priority one tier, or to ``new_priority`` when given (never lower),
        and restart the deadline clock from now.
        """
        now = now or self._now()
        async with self._locks.hold(item_id):
            item = await self._load(item_id)
            stored = await self._escalate_locked(item, new_priority, actor, reason, now)
        return self._policy.refresh(stored, now)

    async def _escalate_locked(
        self,
        item: QueueItem,
        new_priority: Optional[QueuePriority],
        actor: str,
        reason: str,
        now: datetime,
        auto: bool = False,
    ) -> QueueItem:
        if new_priority is not None:
            target = QueuePriority(new_priority)
            if priority_rank(target) < priority_rank(item.priority):
                raise ValidationError(
                    f"Cannot escalate {item.id} from {item.priority.value} down to {target.value}",
                    details={"item_id": item.id, "priority": item.priority.value,
                             "requested": target.value},
                )
        else:
            target = escalate_priority(item.priority)

        deadline, allowance = self._policy.deadline_for(
            now, target, item.sender, item.deadline_override_hours,
        )
        changes: dict[str, Any] = {"deadline": deadline, "deadline_allowance_hours": allowance}
        if auto:
            changes["reason"] = AdmissionReason.SLA_AT_RISK

        result = self._sm.apply(
            item, "escalate", now=now, actor=actor, new_priority=target,
            changes=changes,
            metadata={"reason": reason, "auto": auto,
                      "previous_deadline": item.deadline.isoformat() if item.deadline else None},
        )
        new = self._policy.refresh(result.item, now)
        stored = await self._commit(item, new, result.record)
        logger.info("queue_item_escalated",
                    item_id=item.id,
                    priority=f"{item.priority.value} → {target.value}",
                    auto=auto,
                    reason=reason)
        return stored

    async def refresh_deadline(self, item_id: str, now: datetime = None,
                               actor: str = "scheduler") -> QueueItem:
        """
        Persist the current deadline status. Active or waiting items that are
        overdue (or at risk, when configured) are escalated.
        """
        now = now or self._now()
        async with self._locks.hold(item_id):
            item = await self._load(item_id)
            if item.status not in _TRACKED_STATES or item.deadline is None:
                return self._policy.refresh(item, now)

            status, remaining = self._policy.status_for(item, now)
            escalate = item.status in (QueueItemStatus.ACTIVE, QueueItemStatus.WAITING) and (
                status == DeadlineStatus.OVERDUE
                or (status == DeadlineStatus.AT_RISK and self._policy.config.escalate_on_at_risk)
            )
            if escalate:
                stored = await self._escalate_locked(
                    item, None, actor, reason=f"deadline {status.value}", now=now, auto=True,
                )
            elif status != item.deadline_status:
                new = self._policy.refresh(item, now).model_copy(update={"updated_at": now})
                # Derived-field refresh: persisted without a history entry
                stored = await self._store.update_item(new, expected_version=item.version)
                self._cache.invalidate_item(item.id)
                logger.info("deadline_status_changed", item_id=item.id,
                            status=f"{item.deadline_status.value} → {status.value}",
                            remaining_hours=round(remaining, 2))
            else:
                stored = item
        return self._policy.refresh(stored, now)

    # ── Bulk ──────────────────────────────────────────────────

    async def _bulk(self, ids: list[str], op: Callable, label: str) -> BulkOperationResult:
        result = BulkOperationResult(total_processed=len(ids))
        for item_id in ids:
            try:
                await op(item_id)
                result.successful.append(item_id)
            except QueueError as e:
                result.failed.append(BulkFailure(id=item_id, error=e.message, code=e.code))
        logger.info("bulk_operation", op=label, total=len(ids),
                    successful=len(result.successful), failed=len(result.failed))
        return result

    async def bulk_snooze(self, ids: list[str], options: SnoozeOptions | dict[str, Any],
                          actor: str = "user") -> BulkOperationResult:
        options = _validate(SnoozeOptions, options)
        return await self._bulk(
            ids,
            lambda item_id: self.snooze(item_id, options.until, options.reason, actor, options.smart),
            "snooze",
        )

    async def bulk_complete(self, ids: list[str], actor: str = "user") -> BulkOperationResult:
        return await self._bulk(ids, lambda item_id: self.complete(item_id, actor), "complete")

    # ── Suggestions ───────────────────────────────────────────

    async def suggest_snooze(
        self,
        item_id: str,
        preferences: SnoozePreferences | dict[str, Any] = None,
        actor: str = "user",
    ) -> SnoozeSuggestion:
        """
        Ask the suggestion engine for a snooze time. The (possibly slow)
        advisor call happens before the item lock is taken.
        """
        preferences = _validate(SnoozePreferences, preferences or {})
        item = await self._load(item_id)
        if item.is_terminal:
            raise InvalidTransitionError(item.id, item.status.value, "suggest_snooze")

        body = ""
        if self._mailbox is not None:
            try:
                message = await self._mailbox.get_message(item.email_id)
                body = message.body if message else ""
            except CollaboratorError as e:
                logger.warning("suggestion_body_unavailable", item_id=item_id, error=e.message)

        suggestion = await self._suggestions.suggest(
            ItemContext(item_id=item.id, subject=item.subject, body=body, sender=item.sender,
                        priority=item.priority, category=item.category),
            preferences,
            now=self._now(),
        )

        now = self._now()
        async with self._locks.hold(item_id):
            current = await self._load(item_id)
            new = current.model_copy(update={
                "suggested_snooze_time": suggestion.time,
                "suggestion_reasoning": suggestion.reasoning,
                "suggestion_confidence": suggestion.confidence,
                "suggestion_source": suggestion.source,
                "updated_at": now,
            })
            await self._commit(current, new, QueueHistoryEntry(
                item_id=current.id,
                action=QueueAction.SUGGESTION_RECORDED,
                old_status=current.status,
                new_status=current.status,
                actor=actor,
                timestamp=now,
                metadata={"time": suggestion.time.isoformat(),
                          "source": suggestion.source.value,
                          "confidence": suggestion.confidence},
            ))
        return suggestion

    def quick_snooze_options(self, preferences: SnoozePreferences = None) -> list[QuickSnoozeOption]:
        return self._suggestions.quick_presets(now=self._now(), preferences=preferences)

    # ── Statistics & retention ────────────────────────────────

    async def statistics(self, force_refresh: bool = False, now: datetime = None) -> QueueStatistics:
        """
        Aggregate counts and averages. Served from cache for up to
        statistics_ttl_s; writes do not invalidate it.
        """
        if not force_refresh:
            cached = self._cache.get(STATS_KEY)
            if cached is not None:
                return cached

        now = now or self._now()
        items = [self._policy.refresh(i, now) for i in await self._store.scan_items()]
        tz = self._policy.calendar.tz
        local_now = now.astimezone(tz)
        today = local_now.date()
        week_start = (local_now - timedelta(days=local_now.weekday())).date()

        by_status = {s.value: 0 for s in QueueItemStatus}
        by_priority = {p.value: 0 for p in QueuePriority}
        by_deadline = {d.value: 0 for d in DeadlineStatus}
        queue_ages, response_times, snooze_lengths = [], [], []
        completed_today = completed_week = 0

        for item in items:
            by_status[item.status.value] += 1
            by_priority[item.priority.value] += 1
            if item.status in _OPEN_STATES:
                by_deadline[item.deadline_status.value] += 1
                queue_ages.append(_hours(now - item.added_at))
            if item.status == QueueItemStatus.SNOOZED and item.snoozed_until and item.last_action_at:
                snooze_lengths.append(_hours(item.snoozed_until - item.last_action_at))
            if item.completed_at is not None:
                response_times.append(_hours(item.completed_at - item.received_at))
                completed_day = item.completed_at.astimezone(tz).date()
                if completed_day == today:
                    completed_today += 1
                if completed_day >= week_start:
                    completed_week += 1

        def _avg(values: list[float]) -> float:
            return round(sum(values) / len(values), 2) if values else 0.0

        stats = QueueStatistics(
            by_status=by_status,
            by_priority=by_priority,
            by_deadline_status=by_deadline,
            total_items=len(items),
            completed_today=completed_today,
            completed_this_week=completed_week,
            waiting_count=by_status[QueueItemStatus.WAITING.value],
            average_time_in_queue_hours=_avg(queue_ages),
            average_response_time_hours=_avg(response_times),
            average_snooze_hours=_avg(snooze_lengths),
            generated_at=now,
        )
        self._cache.set(STATS_KEY, stats)
        logger.debug("statistics_refreshed", total=stats.total_items)
        return stats

    async def purge_history(self, before: datetime) -> int:
        removed = await self._store.purge_history(before)
        if removed:
            self._cache.invalidate_prefix("history:")
        return removed
