"""
Entity Client Interface (IEntityClient)

Abstract base class defining the per-entity store operations the gateway
issues plans to. One implementation is bound to one entity and one session;
the registry resolves which implementation serves which entity at wiring
time.

Implementation guide:
- All methods must be async
- Plans arrive already validated; implementations must not widen them
- Rows are returned as plain dictionaries honouring projection and inclusion
- Missing rows on update/delete raise NotFoundError
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from datagate.schemas.plans import FilterGroup, QueryPlan, WriteTree
from datagate.services.raw_query_guard import QueryParams, RawQueryResult


class IEntityClient(ABC):
    """
    Abstract interface for find/create/update/delete/count on one entity.
    """

    @abstractmethod
    async def find_many(self, plan: QueryPlan) -> List[Dict[str, Any]]:
        """
        Return the page of rows described by ``plan``.

        Args:
            plan: Validated query plan (filter, order, projection, inclusion, page)

        Returns:
            List of row dictionaries
        """
        pass

    @abstractmethod
    async def find_unique(
        self,
        identifier: Any,
        plan: Optional[QueryPlan] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Return one row by primary key, or None.

        Only the plan's where/select/include are applied.
        """
        pass

    @abstractmethod
    async def count(self, where: Optional[FilterGroup] = None) -> int:
        """Count rows matching ``where``."""
        pass

    @abstractmethod
    async def create(self, tree: WriteTree) -> Dict[str, Any]:
        """
        Insert one row, applying nested relation operations.

        Raises:
            NotFoundError: A ``connect`` target does not exist
            MalformedPayloadError: A relation operation has the wrong shape
        """
        pass

    @abstractmethod
    async def update(self, identifier: Any, tree: WriteTree) -> Dict[str, Any]:
        """
        Update one row by primary key, applying nested relation operations.

        Raises:
            NotFoundError: The row (or a relation target) does not exist
        """
        pass

    @abstractmethod
    async def delete(self, identifier: Any) -> Dict[str, Any]:
        """
        Delete one row by primary key and return its last state.

        Raises:
            NotFoundError: The row does not exist
        """
        pass

    @abstractmethod
    async def update_many(self, where: FilterGroup, values: Dict[str, Any]) -> int:
        """Set ``values`` on every row matching ``where``; return the row count."""
        pass

    @abstractmethod
    async def delete_many(self, where: FilterGroup) -> int:
        """Delete every row matching ``where``; return the row count."""
        pass

    @abstractmethod
    async def execute_raw(self, query: str, params: QueryParams) -> RawQueryResult:
        """
        Execute a raw query already accepted by RawQueryGuard.

        Raises:
            sqlalchemy.exc.SQLAlchemyError: The store rejected the query
        """
        pass
