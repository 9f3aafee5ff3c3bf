import os
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
import structlog

from .config import settings
from .db import Base, engine
from .logging import setup_logging, RequestIdMiddleware
from .models import models  # noqa: F401  registers tables on Base.metadata
from .services.idempotency import LedgerWriteError
from .routes.sync import router as sync_router
from .routes.projects import router as projects_router
from .routes.wages import router as wages_router
from .routes.wage_rates import router as wage_rates_router
from .routes.attendance import router as attendance_router
from .routes.labour_requests import router as labour_requests_router
from .routes.audit import router as audit_router

logger = structlog.get_logger(__name__)


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[settings.rate_limit],
        enabled=settings.rate_limit_enabled,
    )
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # Storage failures leave nothing recorded, so the client may retry the same action id
    @app.exception_handler(LedgerWriteError)
    async def _ledger_write_error(request: Request, exc: LedgerWriteError):
        logger.error("ledger_write_error", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=503, content={"detail": "Storage unavailable, retry later"})

    @app.exception_handler(SQLAlchemyError)
    async def _database_error(request: Request, exc: SQLAlchemyError):
        logger.error("database_error", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=503, content={"detail": "Storage unavailable, retry later"})

    # Routers
    app.include_router(sync_router)
    app.include_router(projects_router)
    app.include_router(wages_router)
    app.include_router(wage_rates_router)
    app.include_router(attendance_router)
    app.include_router(labour_requests_router)
    app.include_router(audit_router)

    @app.get("/health")
    def health():
        return {"status": "ok", "app": settings.app_name, "environment": settings.environment}

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.on_event("startup")
    def _startup():
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            logger.info("database_tables_ready", tables=len(Base.metadata.tables))

    return app


app = create_app()
