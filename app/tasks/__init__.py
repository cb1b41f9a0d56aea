from .cron import recovery_monitor_task, scheduler_worker_task

__all__ = [
    "scheduler_worker_task",
    "recovery_monitor_task",
]
