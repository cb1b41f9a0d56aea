from fastapi import APIRouter, Depends, Request, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config.settings import settings
from app.db.session import get_sync_session
from app.utils.logging import get_logger
from app.utils.responses import ResponseBuilder

logger = get_logger()

health_router = APIRouter()


@health_router.get(
    "",
    status_code=status.HTTP_200_OK,
    summary="Service health",
    description="Reports whether the API process is up and the store is reachable",
)
async def health(request: Request, db: Session = Depends(get_sync_session)):
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error("Health check database probe failed", error=str(e))
        database = "unavailable"

    healthy = database == "ok"
    data = {
        "service": settings.NAME,
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT,
        "database": database,
    }
    if healthy:
        return ResponseBuilder.success(request=request, data=data, message="Healthy")
    return ResponseBuilder.error(
        request=request,
        message="Store unavailable",
        error_code="UNHEALTHY",
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        data=data,
    )
