from deadlines.policy import (
    BusinessCalendar, DeadlinePolicy,
    compute_deadline, evaluate_status, time_remaining_hours,
    escalate_priority, priority_rank,
)

__all__ = [
    "BusinessCalendar", "DeadlinePolicy",
    "compute_deadline", "evaluate_status", "time_remaining_hours",
    "escalate_priority", "priority_rank",
]
