from fastapi import APIRouter, Response, status
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import literal, select

from bookshop.api.routes import books, orders, payments
from bookshop.core.config import ServiceRole
from bookshop.deps import RedisDep, SessionDep

ROLE_ROUTERS = {
    ServiceRole.ORDER: [orders.router],
    ServiceRole.PAYMENT: [payments.router],
    ServiceRole.CATALOG: [books.router],
}

health_router = APIRouter(prefix="/health", tags=["health"])


@health_router.get("/live")
async def liveness():
    return {"status": "alive"}


@health_router.get("/ready")
async def readiness(response: Response, session: SessionDep, redis: RedisDep):
    health_status = {"status": "ready", "checks": {}}
    all_healthy = True

    try:
        session.exec(select(literal(1)))
        health_status["checks"]["database"] = "connected"
    except SQLAlchemyError as e:
        health_status["checks"]["database"] = f"error: {str(e)}"
        all_healthy = False

    if await redis.ping():
        health_status["checks"]["redis"] = "connected"
    else:
        health_status["checks"]["redis"] = "disconnected"
        all_healthy = False

    if not all_healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        health_status["status"] = "not ready"

    return health_status


def build_api_router(role: ServiceRole) -> APIRouter:
    """Health endpoints plus the routes owned by ``role``"""
    api_router = APIRouter()
    api_router.include_router(health_router)
    for router in ROLE_ROUTERS[role]:
        api_router.include_router(router)
    return api_router
