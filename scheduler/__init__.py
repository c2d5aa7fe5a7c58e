from scheduler.sweep import SchedulerSweep

__all__ = ["SchedulerSweep"]
