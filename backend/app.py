import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.core.validation import (
    EngineError,
    InvalidTransition,
    InvariantViolation,
    PermissionDenied,
    RecordNotFound,
    StateConflict,
    StorageUnavailable,
)
from backend.routes import dashboard, documents, jobs

logger = logging.getLogger(__name__)

STATUS_CODES: dict[type[EngineError], int] = {
    InvalidTransition: 409,
    StateConflict: 409,
    InvariantViolation: 422,
    PermissionDenied: 403,
    RecordNotFound: 404,
    StorageUnavailable: 503,
}


def _status_for(exc: EngineError) -> int:
    for error_type, status_code in STATUS_CODES.items():
        if isinstance(exc, error_type):
            return status_code
    return 400


def create_app() -> FastAPI:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = FastAPI(title="Repair Job Reconciliation API", version="0.1.0")

    origins_env = os.getenv("API_CORS_ORIGINS", "")
    origins = [origin.strip() for origin in origins_env.split(",") if origin.strip()]
    if not origins:
        origins = ["http://localhost:3000", "http://127.0.0.1:3000"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.code, "detail": exc.message, "retryable": exc.retryable},
        )

    app.include_router(jobs.router, prefix="/api")
    app.include_router(documents.job_documents_router, prefix="/api")
    app.include_router(documents.router, prefix="/api")
    app.include_router(dashboard.router, prefix="/api")

    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        """Provide a lightweight landing page for container checks."""
        return JSONResponse(
            {
                "message": "Repair Job Reconciliation API",
                "docs": "/docs",
                "health": "/api/jobs",
            }
        )

    return app


app = create_app()
