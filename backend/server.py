from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pymongo.errors import OperationFailure
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import admin, auth, infringements, inspections, operator_licenses, registrations, reports, users
from utils.errors import RegoCraftError, translate_store_error

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

# Import job runners from shared module (used by scheduler and admin run-now)
from job_runner import run_expiry_sweep


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting RegoCraft API")
    await database.connect()

    # Idempotent ADMIN bootstrap when email+password env are set
    bootstrap_email = (os.environ.get("BOOTSTRAP_ADMIN_EMAIL") or "").strip()
    bootstrap_password = (os.environ.get("BOOTSTRAP_ADMIN_PASSWORD") or "").strip()
    if bootstrap_email and bootstrap_password:
        try:
            from services.admin_bootstrap import run_bootstrap_admin
            result = await run_bootstrap_admin()
            logger.info("Bootstrap admin: %s - %s", result.get("action"), result.get("message"))
        except Exception as e:
            logger.warning("Bootstrap admin failed: %s", e)

    if os.environ.get("PYTEST_RUNNING"):
        logger.info("PYTEST_RUNNING set; background job scheduler not started")
    else:
        # Expiry sweep - daily at 1:00 AM UTC
        # Approved registrations/licenses past expiry -> Expired, unpaid infringements -> Overdue
        scheduler.add_job(
            run_expiry_sweep,
            CronTrigger(hour=1, minute=0),
            id="expiry_sweep",
            name="Registration/License Expiry Sweep",
            replace_existing=True
        )
        scheduler.start()
        logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down RegoCraft API")
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="RegoCraft API",
    description="Small-craft registration, inspection, operator licensing and infringements",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth.router)
app.include_router(users.router)
app.include_router(registrations.router)
app.include_router(inspections.router)
app.include_router(operator_licenses.router)
app.include_router(infringements.router)
app.include_router(reports.router)
app.include_router(admin.router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "RegoCraft",
        "version": "1.0.0",
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


def _error_response(request: Request, exc: RegoCraftError) -> JSONResponse:
    content = exc.to_dict()
    # Manual retry affordance for authenticated callers; there is no automatic retry
    if exc.status_code >= 400 and getattr(request.state, "context", None) is not None:
        content["retry"] = {"method": request.method, "path": request.url.path}
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RegoCraftError)
async def domain_exception_handler(request: Request, exc: RegoCraftError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
    elif exc.status_code >= 400:
        logger.info(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
    return _error_response(request, exc)


# Store authorization failures are surfaced verbatim with a remediation hint
@app.exception_handler(OperationFailure)
async def store_exception_handler(request: Request, exc: OperationFailure):
    translated = translate_store_error(exc, f"{request.method} {request.url.path}")
    if isinstance(translated, RegoCraftError):
        logger.error(f"Document store refused {request.method} {request.url.path}: {exc}")
        return _error_response(request, translated)
    logger.error(f"Document store error: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


# Validation error handler: log request_id + full errors (loc path)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    path = getattr(request, "url", None) and getattr(request.url, "path", "") or ""
    logger.warning(
        "Validation failed request_id=%s path=%s errors=%s",
        request_id,
        path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_errors(errors), "request_id": request_id},
    )


def jsonable_errors(errors):
    """Pydantic error dicts may carry the raw exception under ctx; keep only printable fields."""
    cleaned = []
    for e in errors:
        item = {k: v for k, v in e.items() if k != "ctx"}
        if "ctx" in e:
            item["ctx"] = {k: str(v) for k, v in e["ctx"].items()}
        cleaned.append(item)
    return cleaned


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
