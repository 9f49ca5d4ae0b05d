"""
ShipStation Gateway - FastAPI Backend
"""
from datetime import datetime, timezone
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi import status
import uvicorn
import logging

from routes.api import register_routes
from app.database import engine, Base, SessionLocal
from app.config import settings
from app.errors import IntegrationError
from app.services.credentials import SecretCipher
from app.services.job_handlers import JobHandlerRegistry
from app.services.job_queue import JobQueue
from app.workers.scheduler import get_workers_status, start_background_workers, stop_background_workers

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="ShipStation Gateway API",
    description="ShipStation Custom Store and webhook integration",
    version="1.0.0",
    docs_url="/docs" if settings.IS_DEVELOPMENT else None,
    redoc_url="/redoc" if settings.IS_DEVELOPMENT else None,
)

logger.info("Starting ShipStation Gateway")
logger.info(f"Environment: {settings.ENV}")
logger.info(f"Host: {settings.HOST}:{settings.PORT}")

if settings.IS_PRODUCTION and settings.JWT_SECRET.strip() in ("", "supersecret_fallback_key_change_in_production"):
    logger.warning("JWT_SECRET is default or empty in production. Set a strong JWT_SECRET in environment.")
if settings.IS_PRODUCTION and settings.ENCRYPTION_KEY == "your-32-character-encryption-key!!":
    logger.warning("ENCRYPTION_KEY is the default value in production. Stored credentials are not protected.")


def error_body(message: str, code: str) -> dict:
    return {
        "error": {
            "message": message,
            "code": code,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    }


@app.exception_handler(IntegrationError)
async def integration_error_handler(request: Request, exc: IntegrationError):
    """Map integration errors to their status code and the error body"""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.warning(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    headers = {"WWW-Authenticate": "Basic"} if exc.status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.code), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": exc.errors(),
            "message": "Validation error: Please check your request format"
        },
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    message = str(exc) if settings.IS_DEVELOPMENT else "An error occurred"
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(message, "INTERNAL_ERROR"),
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Excluded-Orders"],
)
logger.info(f"CORS configured for {len(settings.ALLOWED_ORIGINS)} origin(s)")

register_routes(app, settings)


@app.get("/health")
async def health():
    """Health check endpoint. Includes DB connectivity check."""
    db_status = "ok"
    try:
        from sqlalchemy import text
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Health check DB ping failed: %s", e)
        db_status = "error"
    return {
        "status": "ok" if db_status == "ok" else "degraded",
        "service": "shipstation-gateway",
        "db": db_status,
        "environment": settings.ENV,
        "workers": get_workers_status(),
    }


@app.on_event("startup")
async def startup_workers() -> None:
    """Start job workers and periodic tasks unless disabled (tests, one-off scripts)."""
    if not settings.JOB_WORKERS_ENABLED:
        logger.info("Job workers disabled (JOB_WORKERS_ENABLED=false)")
        return
    job_queue = JobQueue(SessionLocal)
    registry = JobHandlerRegistry(SessionLocal, job_queue, SecretCipher.from_settings())
    start_background_workers(job_queue, registry, SessionLocal)


@app.on_event("shutdown")
async def shutdown_workers() -> None:
    stop_background_workers()


@app.get("/api")
async def root():
    """API root endpoint"""
    return {
        "message": "ShipStation Gateway API",
        "version": "1.0.0",
        "environment": settings.ENV,
        "docs": "/docs" if settings.IS_DEVELOPMENT else "disabled in production"
    }


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.IS_DEVELOPMENT,
        log_level=settings.LOG_LEVEL.lower()
    )
