from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config.settings import settings
from app.db.models import Base
from app.db.session import engine
from app.middlewares import RequestIDMiddleware
from app.routers import main_router
from app.services.notifications.registry import NotificationDispatcherRegistry
from app.utils.errors import setup_error_handlers
from app.utils.logging import get_logger

logger = get_logger()


@asynccontextmanager
async def lifespan(_: FastAPI):
    logger.info(
        "{name} is starting up...",
        name=settings.NAME,
        environment=settings.ENVIRONMENT,
        notification_channel=settings.NOTIFICATION_CHANNEL,
        event_bus=settings.EVENT_BUS_BACKEND,
    )
    if not NotificationDispatcherRegistry.is_registered(settings.NOTIFICATION_CHANNEL):
        logger.warning(
            "Unknown notification channel, deliveries will only be logged",
            channel=settings.NOTIFICATION_CHANNEL,
            registered=NotificationDispatcherRegistry.list_registered_channels(),
        )
    # Migrations own the schema elsewhere
    if settings.ENVIRONMENT == "development":
        Base.metadata.create_all(bind=engine)
    yield
    logger.info(f"{settings.NAME} is shutting down...")


def create_application() -> FastAPI:
    """Build the API app: error envelope, CORS, request ids, routers."""
    application = FastAPI(
        title=settings.NAME,
        version=settings.VERSION,
        description="Arms message conditions, schedules reminders and final deliveries",
        lifespan=lifespan,
    )

    setup_error_handlers(application)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_HOSTS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )
    # Added last so it wraps CORS and tags every response
    application.add_middleware(RequestIDMiddleware)

    application.include_router(main_router, prefix=settings.API_PREFIX)

    return application


app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.ENVIRONMENT == "development",
        log_config=None,
        log_level=None,
    )
