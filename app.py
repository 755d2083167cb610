"""
Course Registration API with MFA login, tamper-evident audit ledger and seat accounting.
"""
import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text

import config
from auth.security import CryptoCore
from core.errors import CourseRegistrationError
from core.logger import logger
from database.connection import Database
from middleware.security import (
    RateLimitMiddleware, SecurityHeadersMiddleware,
    default_route_limits, setup_cors, setup_trusted_hosts
)
from middleware.auth_middleware import AuthRequiredMiddleware
from services.container import CoreServices
from routers.auth import router as auth_router
from routers.courses import router as courses_router
from routers.registrations import router as registrations_router
from routers.admin import router as admin_router


async def sweep_expired_sessions(services: CoreServices, interval_seconds: int):
    """Periodically delete expired sessions until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            with config.db.get_session() as db:
                await asyncio.to_thread(services.sessions.purge_expired, db)
        except Exception as e:
            logger.error(f"Session sweep failed: {e}", exc_info=True)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan events for FastAPI app.
    Initialize database, key material and services on startup.
    """
    logger.info("=" * 60)
    logger.info(f"Starting {config.APP_NAME} ({config.ENVIRONMENT})...")
    logger.info("=" * 60)

    # Initialize database
    try:
        config.db = Database(
            database_url=config.DATABASE_URL,
            pool_size=config.DB_POOL_SIZE,
            max_overflow=config.DB_MAX_OVERFLOW,
            sqlite_timeout=config.SQLITE_BUSY_TIMEOUT_SECONDS,
        )
        # Create tables if they don't exist
        config.db.create_tables()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}", exc_info=True)
        raise

    crypto = CryptoCore.from_config()
    services = CoreServices.build(crypto)
    app.state.services = services

    with config.db.get_session() as db:
        services.policies.seed_defaults(db)

    sweeper = asyncio.create_task(
        sweep_expired_sessions(services, config.SESSION_SWEEP_INTERVAL_SECONDS)
    )

    yield

    # Cleanup on shutdown
    logger.info("Shutting down...")
    sweeper.cancel()
    try:
        await sweeper
    except asyncio.CancelledError:
        pass
    services.close()
    if config.db:
        config.db.dispose()
        logger.info("Database connections closed")


# Initialize FastAPI app
app = FastAPI(
    title=config.APP_NAME,
    description="Course registration with MFA login, RBAC and a tamper-evident audit ledger",
    version=config.APP_VERSION,
    lifespan=lifespan
)


@app.exception_handler(CourseRegistrationError)
async def course_registration_error_handler(request: Request, exc: CourseRegistrationError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else first.get("msg")
    else:
        message = "Invalid request"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "message": message, "error": "ValidationError"},
    )


# Setup security middleware
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    RateLimitMiddleware,
    requests_per_minute=config.RATE_LIMIT_PER_MINUTE,
    requests_per_hour=config.RATE_LIMIT_PER_HOUR,
    route_limits=default_route_limits(
        login=config.LOGIN_RATE_LIMIT,
        otp=config.OTP_RATE_LIMIT,
        signup=config.SIGNUP_RATE_LIMIT,
    ),
)
# Logs protected requests that arrive without credentials
app.add_middleware(AuthRequiredMiddleware)
setup_cors(app, config.CORS_ORIGINS, allow_credentials=config.CORS_ALLOW_CREDENTIALS)
if config.ENVIRONMENT == "production":
    setup_trusted_hosts(app, config.TRUSTED_HOSTS)

# Include routers
app.include_router(auth_router)
app.include_router(courses_router)
app.include_router(registrations_router)
app.include_router(admin_router)


@app.get("/")
async def root():
    """Root endpoint with API information. Public endpoint."""
    return {
        "message": config.APP_NAME,
        "version": config.APP_VERSION,
        "environment": config.ENVIRONMENT,
        "endpoints": {
            "auth": "/api/auth",
            "courses": "/api/courses",
            "registrations": "/api/registrations",
            "admin": "/api/admin",
        },
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Liveness plus a database round trip. Public endpoint."""
    database = "unavailable"
    if config.db:
        try:
            with config.db.get_session() as db:
                db.execute(text("SELECT 1"))
            database = "connected"
        except Exception as e:
            logger.error(f"Health check database error: {e}")
            database = "error"
    healthy = database == "connected"
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "healthy" if healthy else "unhealthy", "database": database},
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=8000,
        reload=config.DEBUG,
        log_level="info"
    )
