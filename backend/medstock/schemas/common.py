"""MedStock — Common response envelope."""
from typing import Generic, TypeVar

from pydantic import BaseModel, Field

from medstock.config import get_settings

T = TypeVar("T")


class Meta(BaseModel):
    """Pagination and metadata."""

    page: int = 1
    page_size: int = Field(default_factory=lambda: get_settings().DEFAULT_PAGE_SIZE)
    total_count: int | None = None


class ApiResponse(BaseModel, Generic[T]):
    """Standard response envelope: {data, error, meta}."""

    data: T | None = None
    error: str | None = None
    meta: Meta | None = None
