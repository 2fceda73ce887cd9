from contextlib import asynccontextmanager
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.api.v1.router import api_router
from app.core.exceptions import OrderLifecycleError
from app.database import init_db, async_session_factory
from app.jobs.scheduler import start_scheduler, shutdown_scheduler, get_job_status
from app.services.accounting_client import HttpAccountingClient
from app.services.delivery_pricing import DeliveryPricingEngine
from app.services.email_service import get_email_service
from app.services.external_sync import ExternalSyncOrchestrator, SyncQueue
from app.services.geocoding_service import build_geocoding_cache


logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create tables
    - Build the process-wide geocode cache and pricing engine
    - Start the accounting sync workers and background scheduler
    """
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await init_db()

    email_service = get_email_service()
    orchestrator = ExternalSyncOrchestrator(
        async_session_factory,
        HttpAccountingClient(),
        email_service=email_service,
    )
    sync_queue = SyncQueue(orchestrator, worker_count=settings.SYNC_WORKER_COUNT)

    app.state.geocoding_cache = build_geocoding_cache()
    app.state.pricing_engine = DeliveryPricingEngine()
    app.state.email_service = email_service
    app.state.sync_queue = sync_queue

    if not settings.accounting_configured:
        logger.warning("Accounting API not configured - document sync jobs will fail until it is")

    await sync_queue.start()
    start_scheduler(orchestrator, sync_queue, app.state.geocoding_cache)

    yield

    # Shutdown
    shutdown_scheduler()
    await sync_queue.stop()
    logger.info("Shutting down...")


# OpenAPI Tags with detailed descriptions
OPENAPI_TAGS = [
    {"name": "Orders", "description": "Order lifecycle: cart, placement, vendor acceptance, payment, confirmation and shipping"},
    {"name": "Delivery", "description": "Distance-based delivery pricing from the nearest serving warehouse"},
    {"name": "Location", "description": "Pincode validation and geocode cache"},
    {"name": "Warehouses", "description": "Warehouse locations and delivery charge configuration"},
    {"name": "Health", "description": "Service and database health"},
]

FULL_API_DESCRIPTION = """
## Buildmart Order Service

Order lifecycle engine for a B2B construction materials marketplace
(cement, iron, concrete mixers).

### Lifecycle

`pending -> order_placed -> vendor_accepted -> payment_done -> order_confirmed
-> truck_loading -> in_transit -> shipped -> out_for_delivery -> delivered`

Admins can cancel any order that is not yet delivered.

### Authentication

All order and warehouse endpoints require a JWT with `sub` (user id) and
`role` (customer, vendor or admin). Include token in Authorization header:
`Bearer <token>`

### Error Codes

| Code | Description |
|------|-------------|
| 401 | Unauthorized - Invalid/expired token |
| 403 | Forbidden - Actor may not perform this action |
| 404 | Not Found - Order doesn't exist or is not visible |
| 409 | Conflict - Order is in the wrong status or was updated concurrently |
| 422 | Unprocessable Entity - Invalid input |
| 500 | Internal Server Error |
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=FULL_API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
    swagger_ui_parameters={
        "deepLinking": True,
        "persistAuthorization": True,
        "filter": True,
    },
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router, prefix="/api/v1")


@app.exception_handler(OrderLifecycleError)
async def order_lifecycle_exception_handler(request: Request, exc: OrderLifecycleError):
    """Map domain errors to their HTTP status with a stable error_code."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.message,
            "error_code": exc.error_code,
            "details": exc.details,
            "path": str(request.url.path),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Unhandled errors become a 500; the traceback is returned only in DEBUG."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")

    error_detail = {
        "error": str(exc) if settings.DEBUG else "Internal server error",
        "type": type(exc).__name__,
        "path": str(request.url.path),
        "method": request.method,
    }
    if settings.DEBUG:
        error_detail["traceback"] = traceback.format_exc()

    return JSONResponse(status_code=500, content=error_detail)


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """Health check endpoint with database validation."""
    from sqlalchemy import text
    from datetime import datetime, timezone

    sync_queue = getattr(request.app.state, "sync_queue", None)
    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown",
            "sync_queue": {
                "running": sync_queue.running if sync_queue else False,
                "pending": sync_queue.qsize() if sync_queue else 0,
            },
            "scheduled_jobs": get_job_status(),
        }
    }

    # Check database connectivity
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "redoc": "/redoc",
    }
