# app/schemas/common.py
"""Common schemas used across multiple modules."""
from pydantic import BaseModel, Field
from typing import Iterable, List, Optional
from math import ceil


class Pagination(BaseModel):
    """Pagination metadata for list responses."""
    page: int = Field(..., ge=1, description="Current page number (1-indexed)")
    limit: int = Field(..., ge=1, description="Number of items per page")
    pages: int = Field(..., ge=0, description="Total number of pages")


def create_pagination(total: int, page: int, limit: int) -> Pagination:
    """
    Helper function to create pagination metadata.

    Args:
        total: Total number of items
        page: Current page number (1-indexed)
        limit: Number of items per page

    Returns:
        Pagination object with ``pages = ceil(total / limit)``
    """
    pages = ceil(total / limit) if limit > 0 else 0
    return Pagination(page=page, limit=limit, pages=pages)


class ErrorResponse(BaseModel):
    """Standard error response format."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[dict] = Field(None, description="Additional error details")


class SuccessResponse(BaseModel):
    """Standard success response for operations that don't return data."""
    success: bool = Field(True, description="Operation success status")
    message: str = Field(..., description="Success message")
    data: Optional[dict] = Field(None, description="Optional additional data")


def clean_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Strip, drop blanks and de-duplicate while keeping order."""
    cleaned: List[str] = []
    for tag in tags or []:
        tag = (tag or "").strip()
        if tag and tag not in cleaned:
            cleaned.append(tag)
    return cleaned
