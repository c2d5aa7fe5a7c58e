"""
Queue Lifecycle State Machine — the only place item status may change.

  active ──snooze──▶ snoozed ──resurface/unsnooze──▶ active
  active ──mark_waiting──▶ waiting ──reply_received──▶ active
  active|waiting ──escalate──▶ escalated ──snooze──▶ snoozed
  active|snoozed|waiting|escalated ──complete──▶ completed ──archive──▶ archived

Archived is terminal: it has no outgoing transitions.

Usage:
    sm = QueueStateMachine()
    result = sm.apply(item, "snooze", now=now, actor="user")
    # result.item is a new QueueItem; result.record is the history entry to append
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from models.errors import InvalidTransitionError
from models.schemas import (
    QueueAction, QueueHistoryEntry, QueueItem, QueueItemStatus as S, QueuePriority,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class TransitionDef:
    trigger: str
    from_states: frozenset[S]
    to_state: S
    action: QueueAction


TRANSITIONS: dict[str, TransitionDef] = {
    t.trigger: t for t in (
        TransitionDef("snooze", frozenset({S.ACTIVE, S.ESCALATED}), S.SNOOZED, QueueAction.SNOOZED),
        TransitionDef("resurface", frozenset({S.SNOOZED}), S.ACTIVE, QueueAction.RESURFACED),
        TransitionDef("unsnooze", frozenset({S.SNOOZED}), S.ACTIVE, QueueAction.UNSNOOZED),
        TransitionDef("mark_waiting", frozenset({S.ACTIVE}), S.WAITING, QueueAction.MARKED_WAITING),
        TransitionDef("reply_received", frozenset({S.WAITING}), S.ACTIVE, QueueAction.REPLY_RECEIVED),
        TransitionDef("complete", frozenset({S.ACTIVE, S.SNOOZED, S.WAITING, S.ESCALATED}),
                      S.COMPLETED, QueueAction.COMPLETED),
        TransitionDef("archive", frozenset({S.COMPLETED}), S.ARCHIVED, QueueAction.ARCHIVED),
        TransitionDef("escalate", frozenset({S.ACTIVE, S.WAITING}), S.ESCALATED, QueueAction.ESCALATED),
    )
}

TERMINAL_STATES = frozenset({S.ARCHIVED})


# ──────────────────────────────────────────────────────────────
#  Transition Result
# ──────────────────────────────────────────────────────────────

class TransitionResult:
    """Outcome of applying a trigger to a queue item."""

    def __init__(
        self,
        item: QueueItem,
        from_state: S,
        to_state: S,
        record: QueueHistoryEntry,
    ):
        self.item = item
        self.from_state = from_state
        self.to_state = to_state
        self.record = record

    def __repr__(self):
        return f"<Transition {self.from_state.value} → {self.to_state.value} item={self.item.id}>"


# ──────────────────────────────────────────────────────────────
#  State Machine
# ──────────────────────────────────────────────────────────────

class QueueStateMachine:
    """Validates triggers against the transition table and builds the resulting item."""

    def __init__(self, transitions: dict[str, TransitionDef] = None):
        self._transitions = dict(transitions or TRANSITIONS)
        errors = self._validate_table(self._transitions)
        if errors:
            logger.error("invalid_transition_table", errors=errors)
            raise ValueError(f"Invalid transition table: {'; '.join(errors)}")

    @staticmethod
    def _validate_table(table: dict[str, TransitionDef]) -> list[str]:
        errors = []
        for name, t in table.items():
            if name != t.trigger:
                errors.append(f"key '{name}' does not match trigger '{t.trigger}'")
            for terminal in TERMINAL_STATES:
                if terminal in t.from_states:
                    errors.append(f"transition '{name}' leaves terminal state '{terminal.value}'")
            if not t.from_states:
                errors.append(f"transition '{name}' has no source states")
        return errors

    # ── Introspection ─────────────────────────────────────────

    def can_apply(self, status: S, trigger: str) -> bool:
        t = self._transitions.get(trigger)
        return t is not None and S(status) in t.from_states

    def available_triggers(self, status: S) -> list[str]:
        return [name for name, t in self._transitions.items() if S(status) in t.from_states]

    def target_of(self, trigger: str) -> S:
        return self._transitions[trigger].to_state

    # ── Apply ─────────────────────────────────────────────────

    def apply(
        self,
        item: QueueItem,
        trigger: str,
        now: datetime = None,
        actor: str = "system",
        changes: dict[str, Any] = None,
        new_priority: Optional[QueuePriority] = None,
        metadata: dict[str, Any] = None,
    ) -> TransitionResult:
        """
        Apply ``trigger`` to ``item``. The input item is left untouched.

        ``changes`` are merged into the new item alongside the status change
        (snoozed_until, waiting target, recomputed deadline and so on).
        Raises InvalidTransitionError for any unlisted (state, trigger) pair.
        """
        t = self._transitions.get(trigger)
        if t is None or item.status not in t.from_states:
            logger.warning("transition_rejected",
                           item_id=item.id,
                           status=item.status.value,
                           trigger=trigger)
            raise InvalidTransitionError(item.id, item.status.value, trigger)

        now = now or datetime.now(timezone.utc)
        update: dict[str, Any] = {
            "status": t.to_state,
            "updated_at": now,
            "last_action_at": now,
            "action_count": item.action_count + 1,
        }
        # snoozed_until lives exactly as long as the snoozed state
        if t.to_state != S.SNOOZED:
            update["snoozed_until"] = None
        if t.to_state == S.COMPLETED:
            update["completed_at"] = now
        if item.status == S.WAITING and t.to_state != S.WAITING:
            update["waiting_on"] = ""
            update["waiting_reason"] = ""
        if new_priority is not None:
            update["priority"] = new_priority
        update.update(changes or {})

        new_item = item.model_copy(update=update)
        record = QueueHistoryEntry(
            item_id=item.id,
            action=t.action,
            old_status=item.status,
            new_status=t.to_state,
            old_priority=item.priority if new_item.priority != item.priority else None,
            new_priority=new_item.priority if new_item.priority != item.priority else None,
            actor=actor,
            timestamp=now,
            metadata=metadata or {},
        )

        logger.info("state_transition",
                    item_id=item.id,
                    transition=f"{item.status.value} → {t.to_state.value}",
                    trigger=trigger,
                    actor=actor)
        return TransitionResult(new_item, item.status, t.to_state, record)
