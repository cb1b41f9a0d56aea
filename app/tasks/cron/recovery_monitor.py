import asyncio

from app.celery import celery
from app.db.session import get_sync_session
from app.services.scheduler.recovery_monitor import RecoveryMonitor
from app.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=30)
def recovery_monitor_task(self, request_id: str):
    """
    Periodic task that resets stuck schedule entries and delivers conditions
    whose deadline passed unnoticed. Runs every RECOVERY_INTERVAL_SECONDS.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    return asyncio.run(_async_recovery_monitor(request_id))


async def _async_recovery_monitor(request_id: str):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            report = await RecoveryMonitor(db_session).run()
            return {"success": True, **report, "request_id": request_id}

        except Exception as e:
            logger.error(
                "Recovery monitor task exception",
                request_id=request_id,
                error=str(e),
                exc_info=True,
            )
            return {"success": False, "error": str(e), "request_id": request_id}
