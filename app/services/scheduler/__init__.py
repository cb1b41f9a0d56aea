from .recovery_monitor import RecoveryMonitor
from .worker import SchedulerWorker

__all__ = ["SchedulerWorker", "RecoveryMonitor"]
