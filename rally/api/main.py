"""
rally.api.main — FastAPI application entry point
=================================================

Run with::

    uvicorn rally.api.main:app --reload --port 8000

The API never runs lifecycle jobs itself; it only enqueues them.  Start a
worker with ``python -m rally.worker``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

load_dotenv()

from rally import __version__  # noqa: E402
from rally.api.deps import get_engine  # noqa: E402
from rally.api.routes.admin import router as admin_router  # noqa: E402
from rally.api.routes.challenges import router as challenges_router  # noqa: E402
from rally.errors import (  # noqa: E402
    BusinessRuleError,
    ConcurrentModification,
    NotFoundError,
    RallyError,
    StateViolation,
    TransientInfrastructureError,
    ValidationError,
)

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 2


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine."""
    engine = get_engine()
    logger.info("Rally API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("Rally API shutting down")


app = FastAPI(
    title="Rally Challenge API",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(challenges_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
def status_for(exc: RallyError) -> int:
    """HTTP status for an engine error."""
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (StateViolation, BusinessRuleError)):
        return 409
    if isinstance(exc, (ConcurrentModification, TransientInfrastructureError)):
        return 503
    return 500


@app.exception_handler(RallyError)
async def rally_error_handler(request: Request, exc: RallyError) -> JSONResponse:
    code = status_for(exc)
    headers = {"Retry-After": str(RETRY_AFTER_SECONDS)} if code == 503 else None
    if code >= 500:
        logger.warning("%s %s → %d: %s", request.method, request.url.path, code, exc.message)
    return JSONResponse(status_code=code, content=exc.to_dict(), headers=headers)


@app.get("/api/health")
def health():
    return {"status": "ok"}
