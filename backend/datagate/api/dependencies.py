"""
FastAPI dependency functions.

Everything request handlers need lives on ``app.state`` (set up by the
lifespan handler in main.py); these functions expose it for injection.
"""

from typing import Annotated, Any, Callable, Dict

from fastapi import Depends, Request

from datagate.core.config import Settings
from datagate.core.database import Database
from datagate.repositories.registry import EntityRegistry
from datagate.services.entity_gateway import EntityGateway
from datagate.services.query_params import query_params_from_pairs


def get_database(request: Request) -> Database:
    """Store handle created at startup."""
    return request.app.state.database


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_registry(request: Request) -> EntityRegistry:
    return request.app.state.registry


def get_gateways(request: Request) -> Dict[str, EntityGateway]:
    return request.app.state.gateways


def gateway_for(entity: str) -> Callable[[Request], EntityGateway]:
    """
    Build a dependency resolving the gateway of one entity.

    Example:
        @router.get("")
        async def list_rows(gateway: EntityGateway = Depends(gateway_for("products"))):
            ...
    """
    def get_gateway(request: Request) -> EntityGateway:
        return request.app.state.gateways[entity]

    return get_gateway


def get_query_params(request: Request) -> Dict[str, Any]:
    """Raw query parameters; repeated keys are collected into lists."""
    return query_params_from_pairs(request.query_params.multi_items())


DatabaseHandle = Annotated[Database, Depends(get_database)]
SettingsHandle = Annotated[Settings, Depends(get_settings)]
RegistryHandle = Annotated[EntityRegistry, Depends(get_registry)]
GatewaysHandle = Annotated[Dict[str, EntityGateway], Depends(get_gateways)]
RawQueryParams = Annotated[Dict[str, Any], Depends(get_query_params)]
