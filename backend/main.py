"""
FastAPI application entry point for bookgate.

Routes stay thin: they parse requests and resolve the caller, services own
the entitlement logic. Domain errors are translated to JSON here.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bookgate.api.routes import (
    book_access,
    book_assignments,
    books,
    checkout,
    groups,
    health,
    schools,
    webhooks_payments,
)
from bookgate.errors import BookAccessError

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting bookgate API")

    required_vars = ["DATABASE_URL", "SESSION_JWT_SECRET", "PAYMENT_API_KEY", "PAYMENT_WEBHOOK_SECRET"]
    missing_vars = [var for var in required_vars if not os.getenv(var)]
    if missing_vars:
        logger.warning(
            "Configuration incomplete, dependent endpoints will fail",
            extra={"missing_vars": missing_vars},
        )

    database_url = os.getenv("DATABASE_URL")
    if database_url:
        # Mask credentials for safe logging
        masked = database_url.split("@")[-1] if "@" in database_url else database_url.split("://")[0]
        logger.info("DATABASE_URL configured", extra={"host_db": masked})

    yield

    logger.info("Shutting down bookgate API")


app = FastAPI(
    title="bookgate API",
    description="Book entitlements: access resolution, school licenses and purchases",
    version="1.0.0",
    lifespan=lifespan,
)

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Health route (bypasses authentication)
app.include_router(health.router)

# Webhook route (signature verification, not session tokens)
app.include_router(webhooks_payments.router)

# Authenticated routes
app.include_router(books.router)
app.include_router(book_access.router)
app.include_router(book_assignments.router)
app.include_router(groups.router)
app.include_router(schools.router)
app.include_router(checkout.router)


@app.exception_handler(BookAccessError)
async def book_access_error_handler(request: Request, exc: BookAccessError):
    """Translate domain errors into their HTTP status and JSON body."""
    log = logger.error if exc.http_status >= 500 else logger.info
    log(
        "Request failed",
        extra={"error": exc.code, "path": request.url.path, "status": exc.http_status},
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path,
        },
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development",
    )
