from .settings import settings

# Basic Celery Configuration
broker_url = f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"
result_backend = f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"

# Task Discovery
include = ["app.tasks"]

# Timezone Configuration
timezone = "UTC"
enable_utc = True

# Task Result Configuration
result_expires = 3600

# Task Serialization
task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"

# Task Execution Configuration
task_track_started = True
task_time_limit = 5 * 60  # 5 minutes
task_soft_time_limit = 4 * 60  # 4 minutes

# Worker Configuration
worker_prefetch_multiplier = 1
worker_max_tasks_per_child = 1000

# Task Retry Configuration
task_acks_late = True
task_reject_on_worker_lost = True
task_default_retry_delay = 30  # 30 seconds
task_max_retries = 3

# Queued runs expire after one interval
beat_schedule = {
    "process-due-schedule": {
        "task": "app.tasks.cron.scheduler_worker.scheduler_worker_task",
        "schedule": float(settings.SCHEDULER_POLL_INTERVAL_SECONDS),
        "args": ("scheduler_worker_cron",),
        "options": {"expires": float(settings.SCHEDULER_POLL_INTERVAL_SECONDS)},
    },
    "recovery-monitor": {
        "task": "app.tasks.cron.recovery_monitor.recovery_monitor_task",
        "schedule": float(settings.RECOVERY_INTERVAL_SECONDS),
        "args": ("recovery_monitor_cron",),
        "options": {"expires": float(settings.RECOVERY_INTERVAL_SECONDS)},
    },
}

# Default Queue
task_default_queue = "failsafe"

# Beat Scheduler Configuration
beat_schedule_filename = "tmp/celerybeat-schedule"
