from fastapi import APIRouter

from app.routers.conditions import conditions_router
from app.routers.health import health_router

main_router = APIRouter()

# Include domain-based routers
main_router.include_router(conditions_router, prefix="/conditions", tags=["Conditions"])
main_router.include_router(health_router, prefix="/health", tags=["Health"])
