
#main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.providers.mobile_money.factory import reset_mpesa_provider
from app.providers.mobile_money.validate import validate_mpesa_startup
from db import close_pool
from middleware import RequestContextMiddleware
from routes.health import router as health_router
from routes.metrics import router as metrics_router
from routes.payments import router as payments_router
from services.observability import configure_logging
from settings import settings, validate_env_settings

logger = logging.getLogger("school_pay.app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    reset_mpesa_provider()
    close_pool()


def create_app() -> FastAPI:
    configure_logging(settings.LOG_LEVEL)
    validate_env_settings()
    validate_mpesa_startup()

    app = FastAPI(title="School Payments API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(RequestContextMiddleware)

    # -----------------------------
    # ROUTERS
    # -----------------------------
    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(payments_router)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(
            "unhandled error method=%s path=%s",
            request.method,
            request.url.path,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app


app = create_app()
