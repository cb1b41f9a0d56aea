import asyncio

from app.celery import celery
from app.db.session import get_sync_session
from app.services.scheduler.worker import SchedulerWorker
from app.utils.errors import PersistenceFailureError
from app.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=30)
def scheduler_worker_task(self, request_id: str):
    """
    Periodic task that claims due reminder/final-delivery entries and
    dispatches them. Runs every SCHEDULER_POLL_INTERVAL_SECONDS via Celery Beat.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    return asyncio.run(_async_scheduler_worker(request_id))


async def _async_scheduler_worker(request_id: str):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            report = await SchedulerWorker(db_session).run_cycle()

            if report["claimed"]:
                logger.info(
                    "Scheduler worker cycle completed",
                    request_id=request_id,
                    **report,
                )

            return {"success": True, **report, "request_id": request_id}

        except PersistenceFailureError as e:
            logger.error(
                "Scheduler worker could not reach the store",
                request_id=request_id,
                error=e.message,
            )
            return {"success": False, "error": e.message, "request_id": request_id}

        except Exception as e:
            logger.error(
                "Scheduler worker task exception",
                request_id=request_id,
                error=str(e),
                exc_info=True,
            )
            return {"success": False, "error": str(e), "request_id": request_id}
