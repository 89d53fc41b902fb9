"""API endpoints for the booking engine."""

from fastapi import APIRouter
from .bookings import router as bookings_router
from .payments import router as payments_router

# Create main API router
api_router = APIRouter(prefix="/api/v1")

# Include all routers
api_router.include_router(bookings_router)
api_router.include_router(payments_router)

__all__ = ["api_router"]
