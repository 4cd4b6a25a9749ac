import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from apps.auth.errors import AppError
from apps.auth.identity import IdentityVerifier
from apps.auth.payments import StripeGateway
from apps.auth.router import router as auth_router
from apps.auth.webhook_router import router as webhook_router
from apps.core.cors import PreflightCORSMiddleware, cors_options
from config import Settings, settings
from database import Database

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s | %(message)s",
)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings = settings,
    database: Optional[Database] = None,
    verifier: Optional[IdentityVerifier] = None,
    gateway: Optional[StripeGateway] = None,
) -> FastAPI:
    database = database or Database.from_settings(settings)
    verifier = verifier or IdentityVerifier(settings)
    gateway = gateway or StripeGateway(
        settings.STRIPE_SECRET_KEY,
        settings.STRIPE_WEBHOOK_SECRET,
        tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting %s (%s) with %s", settings.SERVICE_NAME, settings.API_VERSION, settings.describe())
        database.connect()
        database.create_db_and_tables()
        yield
        await verifier.close()
        database.dispose()

    app = FastAPI(title=settings.PROJECT_NAME, version=settings.API_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.verifier = verifier
    app.state.gateway = gateway

    app.add_middleware(PreflightCORSMiddleware, **cors_options(settings))

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.code, exc.detail)
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "message": "Internal server error"},
        )

    app.include_router(auth_router)
    app.include_router(webhook_router)

    @app.get("/health")
    def health():
        return {
            "status": "healthy",
            "service": settings.SERVICE_NAME,
            "version": settings.API_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
