"""
Registered entities.

build_registry() is called once at application startup; bindings are
immutable afterwards.
"""

from datagate.entities.catalog import catalog_bindings
from datagate.repositories.registry import EntityRegistry


def build_registry() -> EntityRegistry:
    registry = EntityRegistry()
    for binding in catalog_bindings():
        registry.register(binding)
    return registry


__all__ = ["build_registry"]
