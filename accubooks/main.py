"""Main FastAPI application."""
import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from accubooks.automation import routes as automation_routes
from accubooks.automation.scheduler import setup_apscheduler
from accubooks.config import settings
from accubooks.errors import (
    ActionExecutionError,
    CoreError,
    IdempotencyConflict,
    InsufficientDataError,
    InvalidStateTransition,
    NotFoundError,
    PlanLimitExceeded,
    TenantIsolationViolation,
    ValidationError,
)
from accubooks.forecast import routes as forecast_routes
from accubooks.insights import routes as insight_routes
from accubooks.middleware import setup_rate_limiting
from accubooks.scenarios import routes as scenario_routes
from accubooks.services import build_services

logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins
ERROR_STATUS = [
    (ValidationError, 422),
    (InsufficientDataError, 422),
    (PlanLimitExceeded, 402),
    (TenantIsolationViolation, 403),
    (NotFoundError, 404),
    (IdempotencyConflict, 409),
    (InvalidStateTransition, 409),
    (ActionExecutionError, 502),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = AsyncIOScheduler()
        setup_apscheduler(scheduler, app.state.services.scheduler)
        scheduler.start()
        logger.info("Automation scheduler started")
    yield
    if scheduler is not None:
        scheduler.shutdown(wait=False)


# Create FastAPI app
app = FastAPI(
    title="AccuBooks Core API",
    description="Deterministic automation, forecasting, insights and scenario simulation",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.services = build_services()

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

setup_rate_limiting(app)


@app.exception_handler(CoreError)
async def core_error_handler(request: Request, exc: CoreError):
    """Convert core errors into their user-safe shape."""
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 400)
    if status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.explanation}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# Include routers
app.include_router(automation_routes.router, prefix=f"{settings.API_V1_PREFIX}/automations", tags=["Automations"])
app.include_router(forecast_routes.router, prefix=f"{settings.API_V1_PREFIX}/forecasts", tags=["Forecasts"])
app.include_router(insight_routes.router, prefix=f"{settings.API_V1_PREFIX}/insights", tags=["Insights"])
app.include_router(scenario_routes.router, prefix=f"{settings.API_V1_PREFIX}/scenarios", tags=["Scenarios"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "AccuBooks Core API",
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "storage": settings.STORAGE_BACKEND}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "accubooks.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
