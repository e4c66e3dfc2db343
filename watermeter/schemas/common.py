"""Response envelope shared by every endpoint."""

from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    status: str = "success"
    message: str
    data: Optional[T] = None


class ErrorResponse(BaseModel):
    status: str = "error"
    message: str
    errors: Optional[list[Any]] = None


class PageMeta(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class Page(BaseModel, Generic[T]):
    items: list[T]
    meta: PageMeta


def page_of(items: list, total: int, page: int, limit: int) -> dict:
    return {
        "items": items,
        "meta": {
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": (total + limit - 1) // limit if limit else 0,
        },
    }
