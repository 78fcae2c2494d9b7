"""
Utilities for API pagination.
"""
from typing import Any, Dict, Generic, List, TypeVar

from fastapi import Query
from pydantic import BaseModel


class PaginationParams:
    """
    Page and page size taken from the query string.

    Used as a FastAPI dependency.
    """

    def __init__(
        self,
        page: int = Query(1, ge=1, description="Page number"),
        limit: int = Query(20, ge=1, le=100, description="Items per page"),
    ):
        self.page = page
        self.limit = limit
        self.skip = (page - 1) * limit


class PageInfo(BaseModel):
    """Page information for paginated responses."""
    current_page: int
    total_pages: int
    page_size: int
    total_items: int
    has_previous: bool
    has_next: bool


T = TypeVar('T')

class PaginatedResponse(BaseModel, Generic[T]):
    """Generic paginated response model."""
    items: List[T]
    page_info: PageInfo


def paginate_response(items: List[Any], total: int, pagination: PaginationParams) -> Dict[str, Any]:
    """
    Wrap one page of items with its page information.

    Args:
        items: Items of the current page
        total: Total number of items across all pages
        pagination: Pagination parameters
    """
    total_pages = (total + pagination.limit - 1) // pagination.limit
    return {
        "items": items,
        "page_info": PageInfo(
            current_page=pagination.page,
            total_pages=total_pages,
            page_size=pagination.limit,
            total_items=total,
            has_previous=pagination.page > 1,
            has_next=pagination.page < total_pages,
        ),
    }
