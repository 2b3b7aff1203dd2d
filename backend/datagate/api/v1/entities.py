"""
Generic entity endpoints.

build_entity_router() produces the same set of routes for every registered
entity, mounted under ``{api_prefix}/{entity}``:

    GET    ""                 list (query-string filters, pagination meta, links)
    POST   ""                 create (nested writes allowed)
    POST   "/search"          structured search body
    POST   "/raw-query"       whitelisted raw query
    POST   "/bulk"            bulk create, partial success (207 on any failure)
    PUT    "/bulk"            bulk update, all-or-nothing
    POST   "/bulk/delete"     bulk hard delete
    POST   "/bulk/soft-delete"
    POST   "/bulk/restore"
    GET    "/{item_id}"
    PUT    "/{item_id}"
    DELETE "/{item_id}"       hard delete (file cleanup)
    DELETE "/{item_id}/soft"
    POST   "/{item_id}/restore"

Static paths are registered before ``/{item_id}`` so they are never
captured as ids.
"""

from typing import Annotated, Any, Dict, List

from fastapi import APIRouter, Body, Depends, Request, Response, status
from fastapi.responses import JSONResponse

from datagate.api.dependencies import RawQueryParams, gateway_for
from datagate.schemas.envelopes import (
    CountResponse,
    ItemResponse,
    PageResponse,
    RawQueryResponse,
)
from datagate.services.entity_gateway import EntityGateway

JsonBody = Annotated[Any, Body()]


def build_entity_router(entity: str) -> APIRouter:
    """
    Create the router serving one entity.

    Args:
        entity: Registered entity name, also the path segment

    Returns:
        APIRouter with prefix ``/{entity}``
    """
    router = APIRouter(prefix=f"/{entity}", tags=[entity])
    Gateway = Annotated[EntityGateway, Depends(gateway_for(entity))]
    list_route = f"{entity}:list"

    def collection_url(request: Request) -> str:
        return str(request.url_for(list_route))

    # ========================
    # Collection
    # ========================

    @router.get("", name=list_route, response_model=PageResponse, summary=f"List {entity}")
    async def list_rows(request: Request, gateway: Gateway, params: RawQueryParams) -> PageResponse:
        return await gateway.list(params, collection_url(request))

    @router.post(
        "",
        response_model=ItemResponse,
        status_code=status.HTTP_201_CREATED,
        summary=f"Create one {entity} row",
    )
    async def create_row(request: Request, gateway: Gateway, payload: JsonBody) -> ItemResponse:
        return await gateway.create(payload, collection_url(request))

    @router.post("/search", response_model=PageResponse, summary=f"Search {entity}")
    async def search_rows(request: Request, gateway: Gateway, body: JsonBody) -> PageResponse:
        return await gateway.search(body, collection_url(request))

    @router.post("/raw-query", response_model=RawQueryResponse, summary="Run a whitelisted raw query")
    async def raw_query(gateway: Gateway, body: JsonBody) -> RawQueryResponse:
        return await gateway.raw_query(body)

    # ========================
    # Bulk
    # ========================

    @router.post(
        "/bulk",
        status_code=status.HTTP_201_CREATED,
        summary="Bulk create (partial success)",
        responses={207: {"description": "Some items failed"}},
    )
    async def bulk_create(gateway: Gateway, items: JsonBody) -> JSONResponse:
        result, complete = await gateway.bulk_create(items)
        return JSONResponse(
            status_code=status.HTTP_201_CREATED if complete else status.HTTP_207_MULTI_STATUS,
            content=result.model_dump(),
        )

    @router.put("/bulk", response_model=List[Dict[str, Any]], summary="Bulk update (atomic)")
    async def bulk_update(gateway: Gateway, items: JsonBody) -> List[Dict[str, Any]]:
        return await gateway.bulk_update(items)

    @router.post("/bulk/delete", response_model=CountResponse, summary="Bulk hard delete")
    async def bulk_delete(gateway: Gateway, body: JsonBody) -> CountResponse:
        return await gateway.bulk_delete(body)

    @router.post("/bulk/soft-delete", response_model=CountResponse, summary="Bulk soft delete")
    async def bulk_soft_delete(gateway: Gateway, body: JsonBody) -> CountResponse:
        return await gateway.bulk_soft_delete(body)

    @router.post("/bulk/restore", response_model=CountResponse, summary="Bulk restore")
    async def bulk_restore(gateway: Gateway, body: JsonBody) -> CountResponse:
        return await gateway.bulk_restore(body)

    # ========================
    # Single row
    # ========================

    @router.get("/{item_id}", response_model=ItemResponse, summary=f"Get one {entity} row")
    async def get_row(
        item_id: str, request: Request, gateway: Gateway, params: RawQueryParams
    ) -> ItemResponse:
        return await gateway.get(item_id, params, collection_url(request))

    @router.put("/{item_id}", response_model=ItemResponse, summary=f"Update one {entity} row")
    async def update_row(
        item_id: str, request: Request, gateway: Gateway, payload: JsonBody
    ) -> ItemResponse:
        return await gateway.update(item_id, payload, collection_url(request))

    @router.delete("/{item_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Hard delete")
    async def delete_row(item_id: str, gateway: Gateway) -> Response:
        await gateway.delete(item_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @router.delete("/{item_id}/soft", status_code=status.HTTP_204_NO_CONTENT, summary="Soft delete")
    async def soft_delete_row(item_id: str, gateway: Gateway) -> Response:
        await gateway.soft_delete(item_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @router.post("/{item_id}/restore", status_code=status.HTTP_204_NO_CONTENT, summary="Restore")
    async def restore_row(item_id: str, gateway: Gateway) -> Response:
        await gateway.restore(item_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return router
