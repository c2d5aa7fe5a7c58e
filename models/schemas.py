"""
Core data models for the follow-up queue engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC; aware ones are normalised to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UTCDatetime = Annotated[datetime, AfterValidator(_as_utc)]


def new_item_id() -> str:
    return f"q_{uuid.uuid4().hex[:16]}"


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class QueuePriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class QueueItemStatus(str, Enum):
    ACTIVE = "active"
    SNOOZED = "snoozed"
    WAITING = "waiting"
    COMPLETED = "completed"
    ARCHIVED = "archived"
    ESCALATED = "escalated"


class AdmissionReason(str, Enum):
    NEEDS_REPLY = "needs_reply"
    WAITING_ON_OTHERS = "waiting_on_others"
    DEADLINE_APPROACHING = "deadline_approaching"
    VIP_ATTENTION = "vip_attention"
    MANUAL = "manual"
    SLA_AT_RISK = "sla_at_risk"
    PERIODIC_CHECK = "periodic_check"


class DeadlineStatus(str, Enum):
    ON_TIME = "on_time"
    AT_RISK = "at_risk"
    OVERDUE = "overdue"


class QueueAction(str, Enum):
    ADDED = "added"
    UPDATED = "updated"
    SNOOZED = "snoozed"
    RESURFACED = "resurfaced"
    UNSNOOZED = "unsnoozed"
    COMPLETED = "completed"
    ARCHIVED = "archived"
    ESCALATED = "escalated"
    MARKED_WAITING = "marked_waiting"
    REPLY_RECEIVED = "reply_received"
    PRIORITY_CHANGED = "priority_changed"
    SUGGESTION_RECORDED = "suggestion_recorded"
    REMOVED = "removed"


class SuggestionSource(str, Enum):
    ADVISOR = "advisor"
    FALLBACK = "fallback"


# ──────────────────────────────────────────────────────────────
#  Queue items
# ──────────────────────────────────────────────────────────────

class QueueItem(BaseModel):
    """A mail item that still needs human follow-up."""
    id: str = Field(default_factory=new_item_id)
    email_id: str
    thread_id: str = ""

    # Snapshot taken at admission; later label changes do not touch it
    subject: str = ""
    sender: str = ""
    recipient: str = ""
    received_at: UTCDatetime = Field(default_factory=_utcnow)
    labels: list[str] = []

    priority: QueuePriority = QueuePriority.MEDIUM
    category: str = "general"
    reason: AdmissionReason = AdmissionReason.NEEDS_REPLY

    status: QueueItemStatus = QueueItemStatus.ACTIVE
    added_at: UTCDatetime = Field(default_factory=_utcnow)
    last_action_at: Optional[UTCDatetime] = None
    snoozed_until: Optional[UTCDatetime] = None
    completed_at: Optional[UTCDatetime] = None
    action_count: int = 0
    snooze_count: int = 0
    waiting_on: str = ""
    waiting_reason: str = ""

    deadline: Optional[UTCDatetime] = None
    deadline_allowance_hours: Optional[float] = None
    deadline_override_hours: Optional[float] = None
    deadline_status: DeadlineStatus = DeadlineStatus.ON_TIME
    time_remaining_hours: Optional[float] = None

    suggested_snooze_time: Optional[UTCDatetime] = None
    suggestion_reasoning: Optional[str] = None
    suggestion_confidence: Optional[float] = None
    suggestion_source: Optional[SuggestionSource] = None

    created_at: UTCDatetime = Field(default_factory=_utcnow)
    updated_at: UTCDatetime = Field(default_factory=_utcnow)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in (QueueItemStatus.COMPLETED, QueueItemStatus.ARCHIVED)


class QueueItemCreate(BaseModel):
    """Admission payload. Unknown fields are rejected at the boundary."""
    model_config = ConfigDict(extra="forbid")

    email_id: str
    thread_id: str = ""
    subject: str = ""
    sender: str = ""
    recipient: str = ""
    received_at: Optional[UTCDatetime] = None
    labels: list[str] = []
    priority: QueuePriority = QueuePriority.MEDIUM
    category: str = "general"
    reason: AdmissionReason = AdmissionReason.NEEDS_REPLY
    snooze_until: Optional[UTCDatetime] = None
    deadline_override_hours: Optional[float] = Field(default=None, gt=0)

    @field_validator("email_id")
    @classmethod
    def _email_id_present(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("email_id is required")
        return v.strip()


class QueueItemUpdate(BaseModel):
    """Partial update. Only fields explicitly set are merged."""
    model_config = ConfigDict(extra="forbid")

    priority: Optional[QueuePriority] = None
    category: Optional[str] = None
    reason: Optional[AdmissionReason] = None
    deadline_override_hours: Optional[float] = Field(default=None, gt=0)


# ──────────────────────────────────────────────────────────────
#  History & statistics
# ──────────────────────────────────────────────────────────────

class QueueHistoryEntry(BaseModel):
    """Immutable audit record of one mutating operation."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    item_id: str
    action: QueueAction
    old_status: Optional[QueueItemStatus] = None
    new_status: Optional[QueueItemStatus] = None
    old_priority: Optional[QueuePriority] = None
    new_priority: Optional[QueuePriority] = None
    actor: str = "system"
    timestamp: UTCDatetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = {}


class QueueStatistics(BaseModel):
    by_status: dict[str, int] = {}
    by_priority: dict[str, int] = {}
    by_deadline_status: dict[str, int] = {}
    total_items: int = 0
    completed_today: int = 0
    completed_this_week: int = 0
    waiting_count: int = 0
    average_time_in_queue_hours: float = 0.0
    average_response_time_hours: float = 0.0
    average_snooze_hours: float = 0.0
    generated_at: UTCDatetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Query surface
# ──────────────────────────────────────────────────────────────

class QueueFilter(BaseModel):
    """All non-empty predicates are combined with AND."""
    model_config = ConfigDict(extra="forbid")

    statuses: list[QueueItemStatus] = []
    priorities: list[QueuePriority] = []
    categories: list[str] = []
    deadline_statuses: list[DeadlineStatus] = []
    reasons: list[AdmissionReason] = []
    text: str = ""                                 # matched against subject and sender


class PageRequest(BaseModel):
    offset: int = Field(default=0, ge=0)
    limit: Optional[int] = Field(default=None, ge=1)


class QueuePage(BaseModel):
    items: list[QueueItem]
    total: int
    offset: int
    limit: int


# ──────────────────────────────────────────────────────────────
#  Snooze & suggestions
# ──────────────────────────────────────────────────────────────

class SnoozeOptions(BaseModel):
    until: UTCDatetime
    reason: str = ""
    smart: bool = False                            # caller accepted a suggestion


class ItemContext(BaseModel):
    """What the suggestion engine knows about an item."""
    item_id: str = ""
    subject: str = ""
    body: str = ""
    sender: str = ""
    priority: QueuePriority = QueuePriority.MEDIUM
    category: str = "general"


class SnoozePreferences(BaseModel):
    work_start_hour: Optional[int] = Field(default=None, ge=0, le=23)
    work_end_hour: Optional[int] = Field(default=None, ge=1, le=24)
    timezone: Optional[str] = None
    respect_working_hours: bool = True


class SuggestionAlternative(BaseModel):
    time: UTCDatetime
    reason: str


class SnoozeSuggestion(BaseModel):
    time: UTCDatetime
    reasoning: str
    alternatives: list[SuggestionAlternative] = Field(min_length=1, max_length=3)
    confidence: float = Field(ge=0.0, le=1.0)
    source: SuggestionSource

    @property
    def is_fallback(self) -> bool:
        return self.source == SuggestionSource.FALLBACK


class QuickSnoozeOption(BaseModel):
    label: str
    time: UTCDatetime
    reason: str


# ──────────────────────────────────────────────────────────────
#  Bulk results
# ──────────────────────────────────────────────────────────────

class BulkFailure(BaseModel):
    id: str
    error: str
    code: str = "QUEUE_ERROR"


class BulkOperationResult(BaseModel):
    successful: list[str] = []
    failed: list[BulkFailure] = []
    total_processed: int = 0


class SweepStepError(BaseModel):
    step: str
    error: str
    item_id: Optional[str] = None


class SweepReport(BaseModel):
    """Per-step counts of one scheduler sweep."""
    started_at: UTCDatetime
    finished_at: Optional[UTCDatetime] = None
    resurfaced: int = 0
    deadlines_refreshed: int = 0
    escalated: int = 0
    archived: int = 0
    statistics_refreshed: bool = False
    history_purged: int = 0
    errors: list[SweepStepError] = []

    @property
    def ok(self) -> bool:
        return not self.errors


# ──────────────────────────────────────────────────────────────
#  Collaborator payloads
# ──────────────────────────────────────────────────────────────

class MessageMetadata(BaseModel):
    """Message metadata pulled from the mailbox collaborator."""
    message_id: str
    thread_id: str = ""
    subject: str = ""
    sender: str = ""
    recipients: list[str] = []
    received_at: UTCDatetime = Field(default_factory=_utcnow)
    labels: list[str] = []
    body: str = ""


class Classification(BaseModel):
    """Output of the upstream classifier, consumed as input."""
    priority: QueuePriority = QueuePriority.MEDIUM
    category: str = "general"
    needs_reply: bool = False
    waiting_on_others: bool = False
    waiting_on: str = ""
    is_vip: bool = False
    reasoning: str = ""
