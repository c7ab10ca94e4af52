from enum import Enum
from typing import Generic, List, TypeVar

from pydantic import BaseModel, Field


T = TypeVar("T")


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class PaginatedResponse(BaseModel, Generic[T]):
    """Generic paginated response: items plus total and page info."""

    items: List[T] = Field(..., description="Items on the requested page")
    total: int = Field(..., ge=0, description="Total number of items matching the query")
    page: int = Field(..., ge=1, description="Current page number")
    page_size: int = Field(..., ge=1, description="Page size used")
    total_pages: int = Field(..., ge=0, description="Total number of pages")
    has_previous: bool = False
    has_next: bool = False

    @classmethod
    def build(cls, items: List[T], total: int, page: int, page_size: int) -> "PaginatedResponse[T]":
        total_pages = (total + page_size - 1) // page_size if page_size else 0
        return cls(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
            has_previous=page > 1,
            has_next=page < total_pages,
        )
