"""
FastAPI application factory
"""
import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from estatecrm.config import get_settings
from estatecrm.domain.errors import ConflictError, NotFoundError, QueryCancelled, ValidationError
from estatecrm.infrastructure.db.session import check_db_connection
from estatecrm.api.v1 import appointments, calendar, clients, deadlines, notifications

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.SCHEDULER_ENABLED:
        from estatecrm.application.scheduler import start_scheduler
        start_scheduler()
    yield
    if settings.SCHEDULER_ENABLED:
        from estatecrm.application.scheduler import shutdown_scheduler
        shutdown_scheduler()


def _register_error_handlers(app: FastAPI) -> None:
    """Domain errors reach the client verbatim"""

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(ConflictError)
    async def conflict_error(request: Request, exc: ConflictError):
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "conflicting_ids": exc.conflicting_ids},
        )

    @app.exception_handler(NotFoundError)
    async def not_found_error(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(QueryCancelled)
    async def query_cancelled(request: Request, exc: QueryCancelled):
        return JSONResponse(status_code=503, content={"detail": str(exc)})


def create_app() -> FastAPI:
    """
    Application factory - builds and configures the FastAPI app

    Returns:
        Configured FastAPI app
    """
    settings = get_settings()

    app = FastAPI(
        title="EstateCRM Scheduling",
        debug=settings.DEBUG,
        lifespan=lifespan,
    )

    # Error-logging middleware: catches everything the handlers below do not
    from starlette.middleware.base import BaseHTTPMiddleware
    from starlette.responses import Response

    class ErrorLoggingMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request, call_next):
            try:
                response = await call_next(request)
                return response
            except Exception as exc:
                tb_str = traceback.format_exc()
                logger.error(f"\n{'='*60}\nERROR on {request.method} {request.url.path}\n{tb_str}{'='*60}")
                return Response(content=f"Internal Server Error: {exc}", status_code=500)

    app.add_middleware(ErrorLoggingMiddleware)

    # Middleware
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SECRET_KEY
    )

    _register_error_handlers(app)

    # Routers
    app.include_router(appointments.router)
    app.include_router(calendar.router)
    app.include_router(clients.router)
    app.include_router(deadlines.router)
    app.include_router(notifications.router)

    # Health checks
    @app.get("/health", response_class=PlainTextResponse, tags=["system"])
    def health():
        """Health check endpoint"""
        return "ok"

    @app.get("/ready", response_class=PlainTextResponse, tags=["system"])
    def ready():
        """Readiness check endpoint (checks the database)"""
        try:
            check_db_connection()
        except SQLAlchemyError:
            logger.exception("Readiness check failed")
            return PlainTextResponse("database unavailable", status_code=503)
        return "ok"

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "estatecrm.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
