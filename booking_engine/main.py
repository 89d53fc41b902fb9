"""FastAPI application setup and configuration."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from booking_engine.config import settings
from booking_engine.api import api_router
from booking_engine.database import init_database, close_database
from booking_engine.middleware import (
    ErrorHandlerMiddleware,
    LoggingMiddleware,
    register_exception_handlers,
)
from booking_engine.utils.logging_config import setup_logging

# Set up logging
setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    logger.info("Starting booking engine")
    await init_database()
    logger.info("Database initialized successfully")
    yield
    logger.info("Shutting down booking engine")
    await close_database()
    logger.info("Database connections closed")


app = FastAPI(
    title="Booking Engine API",
    description="""
    ## Booking Engine

    Ticket booking lifecycle and inventory reservation.

    * **Reservations**: tickets are held atomically when a PENDING booking is created
    * **Payments**: signed gateway webhooks, manual confirmation and reconciliation
    * **Expiry**: unpaid bookings expire after the hold timeout and release their tickets

    ### Authentication

    Booking endpoints expect `Authorization: Bearer <access_token>`. The gateway
    webhook is authenticated by its HMAC signature instead.
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {"name": "bookings", "description": "Booking creation, status and payment sessions"},
        {"name": "payments", "description": "Gateway callbacks and reconciliation"},
        {"name": "health", "description": "System health endpoints"},
    ],
    lifespan=lifespan,
)

# Logging wraps error handling so failed requests are still logged
app.add_middleware(ErrorHandlerMiddleware, debug=settings.debug)
if settings.enable_request_logging:
    app.add_middleware(LoggingMiddleware)

if settings.debug:
    cors_origins = ["*"]
    cors_allow_credentials = False  # Cannot use credentials with wildcard origins
else:
    cors_origins = settings.cors_origins
    cors_allow_credentials = settings.cors_allow_credentials

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
    expose_headers=settings.cors_expose_headers,
)

register_exception_handlers(app)

# Include API routes
app.include_router(api_router)


@app.get("/", tags=["health"])
async def root():
    """Basic information about the API."""
    return {
        "message": "Booking Engine API",
        "version": "1.0.0",
        "docs_url": "/docs",
        "status": "operational",
    }


@app.get("/health", tags=["health"])
async def health_check():
    return {"status": "healthy", "service": "booking-engine"}
