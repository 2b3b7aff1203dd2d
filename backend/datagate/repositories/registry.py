"""
Entity registry.

Binds each exposed entity name to everything the gateway needs to serve it:
the descriptor (validation schema, relations, file fields), the security
policy, the raw-query whitelist, the ORM model, and the factory producing
a client for a given session.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Optional, Type

from sqlalchemy.ext.asyncio import AsyncSession

from datagate.core.errors import NotFoundError
from datagate.repositories.entity import SQLAlchemyEntityClient
from datagate.schemas.descriptors import ModelDescriptor, RawQueryWhitelist, SecurityPolicy
from datagate.services.interfaces.entity_client import IEntityClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[[AsyncSession], IEntityClient]


@dataclass
class EntityBinding:
    """
    Everything needed to serve one entity.

    Attributes:
        descriptor: Validation schema, relation fields and file fields
        policy: Allow-lists and limits applied to every request
        orm_model: SQLAlchemy model class backing the entity
        whitelist: Raw-query whitelist (disabled by default)
        primary_key: Name of the primary key column
        client_factory: Builds a client bound to a session; defaults to
            SQLAlchemyEntityClient over ``orm_model``
    """
    descriptor: ModelDescriptor
    policy: SecurityPolicy
    orm_model: Type[Any]
    whitelist: RawQueryWhitelist = field(default_factory=RawQueryWhitelist)
    primary_key: str = "id"
    client_factory: Optional[ClientFactory] = None

    @property
    def name(self) -> str:
        return self.descriptor.name

    def client(self, session: AsyncSession) -> IEntityClient:
        if self.client_factory is not None:
            return self.client_factory(session)
        return SQLAlchemyEntityClient(session, self.orm_model, self.descriptor)


class EntityRegistry:
    """
    Name -> EntityBinding lookup.

    Example:
        registry = EntityRegistry()
        registry.register(EntityBinding(descriptor, policy, Product))
        binding = registry.get("products")
    """

    def __init__(self):
        self._bindings: Dict[str, EntityBinding] = {}

    def register(self, binding: EntityBinding) -> EntityBinding:
        if binding.name in self._bindings:
            raise ValueError(f"Entity '{binding.name}' is already registered")
        self._bindings[binding.name] = binding
        logger.debug("Entity registered", extra={"entity": binding.name})
        return binding

    def get(self, name: str) -> EntityBinding:
        try:
            return self._bindings[name]
        except KeyError:
            raise NotFoundError("entity", name, message=f"Unknown entity: {name}") from None

    def __contains__(self, name: str) -> bool:
        return name in self._bindings

    def __iter__(self) -> Iterator[EntityBinding]:
        return iter(self._bindings.values())

    def __len__(self) -> int:
        return len(self._bindings)
