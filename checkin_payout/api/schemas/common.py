"""
Common Pydantic schemas for API responses and requests.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict


def _now() -> datetime:
    return datetime.now(timezone.utc)


class APIResponse(BaseModel):
    """Base API response model."""
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


class SuccessResponse(APIResponse):
    """Success response model."""
    data: Optional[Any] = None


class ErrorResponse(APIResponse):
    """Error response model."""
    success: bool = False
    error: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class PaginationParams(BaseModel):
    """Pagination parameters for list endpoints."""
    page: int = Field(default=1, ge=1, description="Page number, 1-based")
    size: int = Field(default=20, ge=1, le=100, description="Items per page")


class PaginatedResponse(SuccessResponse):
    """Paginated response model."""
    data: List[Any]
    pagination: Dict[str, Any] = Field(description="Pagination metadata")


class HealthCheckResponse(BaseModel):
    """Health check response."""
    status: str = "healthy"
    timestamp: datetime = Field(default_factory=_now)
    version: str = "0.1.0"
    services: Dict[str, Any] = Field(default_factory=dict)


def create_success_response(data: Any = None, message: Optional[str] = None) -> SuccessResponse:
    """Create a success response."""
    return SuccessResponse(data=data, message=message)


def create_error_response(
    message: str,
    error: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None
) -> ErrorResponse:
    """Create an error response."""
    return ErrorResponse(message=message, error=error, details=details)


def create_paginated_response(
    data: List[Any],
    total: int,
    page: int,
    size: int
) -> PaginatedResponse:
    """Create a paginated response."""
    return PaginatedResponse(
        data=data,
        pagination={
            "total": total,
            "page": page,
            "size": size,
            "has_next": page * size < total,
            "has_previous": page > 1,
        }
    )
