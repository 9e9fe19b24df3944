"""FastAPI application initialization."""

from contextlib import asynccontextmanager
from uuid import uuid4

from dotenv import load_dotenv

# Load environment variables before anything else
load_dotenv()

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docarchive import __version__
from docarchive.api.audit import router as audit_router
from docarchive.api.auth import router as auth_router
from docarchive.api.middleware import CorrelationIdMiddleware
from docarchive.config import get_settings
from docarchive.database import (
    close_database,
    health_check,
    init_database,
    role_is_seeded,
    run_migrations,
)
from docarchive.services.audit_service import await_pending_audit_writes
from docarchive.services.auth_service import await_pending_commits
from docarchive.services.errors import ConfigurationError
from docarchive.services.logging_service import configure_logging, get_logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger = get_logger("main")

    if not settings.jwt_secret:
        raise ConfigurationError("JWT_SECRET must be set")

    await init_database()
    await run_migrations()
    if not await role_is_seeded(settings.default_role):
        raise ConfigurationError(
            f"Default role '{settings.default_role}' not found. Ensure seed data is present."
        )
    logger.info("database_initialized")

    logger.info(
        "application_started",
        log_level=settings.log_level,
        reset_email_enabled=settings.reset_email_enabled,
    )

    yield

    # Let in-flight commits and audit writes land before the pool goes away
    await await_pending_commits(timeout=5.0)
    logger.info("pending_auth_commits_drained")
    await await_pending_audit_writes(timeout=5.0)
    logger.info("pending_audit_writes_drained")

    await close_database()
    logger.info("application_shutdown")


app = FastAPI(
    title="Document Archive - Identity API",
    description="Registration, login, token refresh and password lifecycle",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Return 400 with the first validation problem and the correlation ID."""
    correlation_id = getattr(request.state, "correlation_id", None) or str(uuid4())
    logger = structlog.get_logger()

    errors = exc.errors()
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", ["unknown"]))
        message = first_error.get("msg", "Validation failed")
        detail = f"Field '{field}': {message}"
    else:
        detail = "Request validation failed"

    # input values are left out so passwords never reach the log
    logger.warning(
        "validation_error",
        correlation_id=correlation_id,
        detail=detail,
        fields=[".".join(str(loc) for loc in e.get("loc", [])) for e in errors],
    )

    return JSONResponse(
        status_code=400,
        content={
            "error": "Validation error",
            "detail": detail,
            "correlation_id": correlation_id,
        },
        headers={"X-Correlation-Id": correlation_id},
    )


@app.get("/health", tags=["Health"])
async def health() -> dict:
    """Liveness plus database reachability."""
    database_ok = await health_check()
    return {"status": "healthy" if database_ok else "degraded", "database": database_ok}


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(CorrelationIdMiddleware)

app.include_router(auth_router)
app.include_router(audit_router)
