# backend/app/main.py
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from backend.app.api.v1.router import api_router
from backend.app.core.config import Settings, get_settings
from backend.app.core.exceptions import ErrorKind, ZeroLockError
from backend.app.core.logging import configure_logging
from backend.app.db.session import Database
from backend.app.middleware.logging import RequestLoggingMiddleware
from backend.app.services.auth import AuthService
from backend.app.services.scheduler import PeriodicTask

logger = logging.getLogger(__name__)


def _error_body(kind: str, message: str, **extra) -> dict:
    error = {"kind": kind, "message": message}
    error.update(extra)
    return {"success": False, "error": error}


def _build_periodic_tasks(database: Database, settings: Settings) -> List[PeriodicTask]:
    auth = AuthService(database, settings)
    return [
        PeriodicTask(
            "srp-session-sweep",
            settings.SRP_SESSION_SWEEP_INTERVAL_MINUTES * 60,
            auth.sweep_expired_sessions,
        ),
        PeriodicTask(
            "audit-log-prune",
            settings.AUDIT_PRUNE_INTERVAL_HOURS * 3600,
            auth.prune_audit_log,
        ),
    ]


def create_app(database: Optional[Database] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    database = database or Database.from_settings(settings)

    # --- LIFESPAN: schema on startup, background sweeps, clean shutdown ---
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        logger.info("Starting %s (%s)", settings.PROJECT_NAME, settings.ENVIRONMENT)
        await database.create_all()

        tasks: List[PeriodicTask] = []
        if settings.SCHEDULER_ENABLED and not settings.is_testing:
            tasks = _build_periodic_tasks(database, settings)
            for task in tasks:
                task.start()

        yield

        for task in tasks:
            await task.stop()
        await database.dispose()
        logger.info("Shutdown complete")

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.PROJECT_VERSION,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )
    app.state.database = database
    app.state.settings = settings

    # Set up CORS
    if settings.BACKEND_CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.BACKEND_CORS_ORIGINS,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.add_middleware(RequestLoggingMiddleware)

    @app.exception_handler(ZeroLockError)
    async def zerolock_error_handler(request: Request, exc: ZeroLockError):
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", exc.kind.value, request.method, request.url.path, exc.message)
        else:
            logger.info("%s on %s %s", exc.kind.value, request.method, request.url.path)
        body = _error_body(exc.kind.value, exc.message)
        if exc.retryable:
            body["error"]["retryable"] = True
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg")}
            for err in exc.errors()
        ]
        logger.info("Validation failed on %s %s: %s", request.method, request.url.path, errors)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=_error_body(ErrorKind.VALIDATION_FAILURE.value, "Validation failed", errors=errors),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s", request.method, request.url.path, exc_info=exc)
        if settings.is_development:
            message = f"{exc.__class__.__name__}: {exc}"
        else:
            message = "Something went wrong"
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(ErrorKind.FATAL.value, message),
        )

    app.include_router(api_router, prefix=settings.API_V1_STR)

    @app.get("/")
    async def root():
        return {"message": f"Welcome to {settings.PROJECT_NAME} API", "version": settings.PROJECT_VERSION}

    @app.get("/health")
    async def health():
        db_ok = await database.check_connection()
        return JSONResponse(
            status_code=status.HTTP_200_OK if db_ok else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "healthy" if db_ok else "degraded", "database": db_ok},
        )

    return app


app = create_app()
