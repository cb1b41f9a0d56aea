from .recovery_monitor import recovery_monitor_task
from .scheduler_worker import scheduler_worker_task

__all__ = [
    "scheduler_worker_task",
    "recovery_monitor_task",
]
