"""
Response envelopes for the entity endpoints.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class PageMeta(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class Link(BaseModel):
    href: str
    rel: str
    method: str


class PageResponse(BaseModel):
    """Paginated list with HATEOAS links."""

    data: List[Dict[str, Any]]
    meta: PageMeta
    links: List[Link]


class ItemResponse(BaseModel):
    data: Dict[str, Any]
    links: List[Link] = Field(default_factory=list)


class BulkItemError(BaseModel):
    index: int
    error: str
    message: str
    details: Optional[List[Dict[str, str]]] = None


class BulkCreateResponse(BaseModel):
    """
    Partial-success bulk create result.

    Attributes:
        created: Rows that were inserted, in request order
        errors: One entry per failed item, with its index in the request
    """
    created: List[Dict[str, Any]]
    errors: List[BulkItemError]


class CountResponse(BaseModel):
    count: int


class RawQueryResponse(BaseModel):
    data: List[Dict[str, Any]]
    row_count: int
    truncated: bool = False
