import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .dependencies import Services, build_services
from .errors import FraudSuspicionError, TransientInfrastructureError, ValidationError
from .routers import identity, offline, ratings, realtime, restaurants, security
from .storage.supabase_store import SupabaseRatingStore
from .supabase_client import get_supabase_client
from .utils.logging import configure_logging

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            client = await get_supabase_client()
            store = SupabaseRatingStore(client, timeout=settings.STORE_TIMEOUT_SECONDS)
            app.state.services = build_services(settings, store)
        await app.state.services.start()
        logger.info("%s started", settings.APP_NAME)
        try:
            yield
        finally:
            await app.state.services.stop()

    app = FastAPI(title=settings.APP_NAME, redirect_slashes=False, lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        content = {"detail": str(exc), "reasons": exc.reasons}
        if isinstance(exc, FraudSuspicionError):
            content["detection_type"] = exc.detection_type
        return JSONResponse(status_code=422, content=content)

    @app.exception_handler(TransientInfrastructureError)
    async def transient_error_handler(request: Request, exc: TransientInfrastructureError):
        logger.error("Transient failure on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={"detail": "Service temporarily unavailable. Please retry.", "reasons": [str(exc)]},
        )

    app.include_router(identity.router, prefix=settings.API_PREFIX)
    app.include_router(ratings.router, prefix=settings.API_PREFIX)
    app.include_router(restaurants.router, prefix=settings.API_PREFIX)
    app.include_router(offline.router, prefix=settings.API_PREFIX)
    app.include_router(security.router, prefix=settings.API_PREFIX)
    app.include_router(realtime.router, prefix=settings.API_PREFIX)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
