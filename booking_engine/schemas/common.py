"""
Common schemas for API responses and error handling.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    """Schema for detailed error information."""

    error_code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error context")
    suggestions: Optional[List[str]] = Field(None, description="Helpful suggestions for resolving the error")
    retry_after: Optional[int] = None


class ErrorResponse(BaseModel):
    """Schema for API error responses."""

    error: ErrorDetail
    error_id: str
    timestamp: str
    path: Optional[str] = None
    method: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "error": {
                        "error_code": "INSUFFICIENT_CAPACITY",
                        "message": "Insufficient capacity: requested 2, available 0",
                        "details": {"requested": 2, "available": 0},
                        "suggestions": ["Try booking fewer tickets"],
                    },
                    "error_id": "5b0f3f9c-8a1e-4d0e-9d4c-1f4f8d7d2c11",
                    "timestamp": "2025-01-01T00:00:00+00:00",
                }
            ]
        }
    }


ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid input"},
    401: {"model": ErrorResponse, "description": "Missing or invalid credentials"},
    403: {"model": ErrorResponse, "description": "Caller does not own the resource"},
    404: {"model": ErrorResponse, "description": "Resource not found"},
    409: {"model": ErrorResponse, "description": "Sold out"},
    503: {"model": ErrorResponse, "description": "Transient contention, safe to retry"},
}
