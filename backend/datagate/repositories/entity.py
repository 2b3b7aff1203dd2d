"""
SQLAlchemy implementation of the per-entity client.

Compiles QueryPlans into SELECT statements (filters, ordering, projection
via load_only, inclusion via selectinload chains) and applies WriteTrees
through ORM relationships. Also provides the raw-query executor used by
RawQueryGuard.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Type

from sqlalchemy import String, and_, delete, func, not_, or_, select, text, true, update
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import load_only, selectinload

from datagate.core.errors import (
    MalformedPayloadError,
    NotFoundError,
    UnsupportedOperationError,
)
from datagate.schemas.descriptors import ModelDescriptor
from datagate.schemas.plans import (
    Direction,
    FieldCondition,
    FilterGroup,
    IncludeTree,
    QueryPlan,
    RelationWrite,
    TargetedUpdate,
    WriteTree,
)
from datagate.services.interfaces.entity_client import IEntityClient
from datagate.services.raw_query_guard import QueryParams, RawQueryResult

logger = logging.getLogger(__name__)


class SQLAlchemyEntityClient(IEntityClient):
    """
    Entity client backed by an AsyncSession.

    The client never commits: the caller owns the session and decides the
    transaction boundary (Database.session() or TransactionRunner).

    Attributes:
        session: SQLAlchemy async session for database operations
        model: ORM model class for the entity
        descriptor: Entity descriptor (name used in NotFound errors)
    """

    def __init__(
        self,
        session: AsyncSession,
        model: Type[Any],
        descriptor: Optional[ModelDescriptor] = None,
    ):
        self.session = session
        self.model = model
        self.descriptor = descriptor
        self.entity_name = descriptor.name if descriptor else model.__name__.lower()
        self._mapper = sa_inspect(model)
        self._pk = self._mapper.primary_key[0]

    # ========================
    # Reads
    # ========================

    async def find_many(self, plan: QueryPlan) -> List[Dict[str, Any]]:
        stmt = select(self.model)
        if plan.where is not None:
            stmt = stmt.where(self._compile_group(self.model, plan.where))
        stmt = stmt.order_by(*self._order_by(plan))
        stmt = stmt.offset(plan.skip).limit(plan.take)
        stmt = stmt.options(*self._loader_options(plan))

        result = await self.session.execute(stmt)
        return [
            self._serialize(row, plan.select, plan.include)
            for row in result.scalars().all()
        ]

    async def find_unique(
        self,
        identifier: Any,
        plan: Optional[QueryPlan] = None,
    ) -> Optional[Dict[str, Any]]:
        row = await self._find_row(identifier, plan)
        if row is None:
            return None
        return self._serialize(
            row,
            plan.select if plan else None,
            plan.include if plan else None,
        )

    async def count(self, where: Optional[FilterGroup] = None) -> int:
        stmt = select(func.count()).select_from(self.model)
        if where is not None:
            stmt = stmt.where(self._compile_group(self.model, where))
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    # ========================
    # Writes
    # ========================

    async def create(self, tree: WriteTree) -> Dict[str, Any]:
        row = await self._build(self.model, tree)
        self.session.add(row)
        await self.session.flush()
        await self.session.refresh(row)
        logger.debug(
            "Row created",
            extra={"entity": self.entity_name, "id": getattr(row, self._pk.key)},
        )
        return row.to_dict()

    async def update(self, identifier: Any, tree: WriteTree) -> Dict[str, Any]:
        row = await self.session.get(self.model, identifier)
        if row is None:
            raise NotFoundError(self.entity_name, identifier)

        self._assign_scalars(self.model, row, tree.scalars)
        await self._apply_relations(self.model, row, tree, persistent=True)
        await self.session.flush()
        await self.session.refresh(row)
        return row.to_dict()

    async def delete(self, identifier: Any) -> Dict[str, Any]:
        row = await self.session.get(self.model, identifier)
        if row is None:
            raise NotFoundError(self.entity_name, identifier)

        data = row.to_dict()
        await self.session.delete(row)
        await self.session.flush()
        return data

    async def update_many(self, where: FilterGroup, values: Dict[str, Any]) -> int:
        for name in values:
            self._column(self.model, name)
        stmt = (
            update(self.model)
            .where(self._compile_group(self.model, where))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def delete_many(self, where: FilterGroup) -> int:
        stmt = (
            delete(self.model)
            .where(self._compile_group(self.model, where))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def execute_raw(self, query: str, params: QueryParams) -> RawQueryResult:
        """
        Execute a raw query that RawQueryGuard has already accepted.

        Named params (dict) bind ``:name`` placeholders portably. Positional
        params (list) are handed to the driver as-is and use its native
        placeholder style (``?`` on SQLite, ``$1`` on PostgreSQL).
        """
        if isinstance(params, Mapping):
            result = await self.session.execute(text(query), dict(params))
        else:
            connection = await self.session.connection()
            result = await connection.exec_driver_sql(query, tuple(params or ()))

        if getattr(result, "returns_rows", False):
            rows = [dict(row._mapping) for row in result.fetchall()]
            return RawQueryResult(rows=rows, row_count=len(rows))
        return RawQueryResult(rows=[], row_count=getattr(result, "rowcount", 0) or 0)

    # ========================
    # Query compilation
    # ========================

    def _column(self, model: Type[Any], name: str):
        mapper = sa_inspect(model)
        if name not in mapper.columns:
            raise UnsupportedOperationError(
                f"'{name}' is not a column of {model.__tablename__}"
            )
        return getattr(model, name)

    def _relationship(self, model: Type[Any], name: str):
        mapper = sa_inspect(model)
        if name not in mapper.relationships:
            raise UnsupportedOperationError(
                f"'{name}' is not a relation of {model.__tablename__}"
            )
        return mapper.relationships[name]

    @staticmethod
    def _bind(column, value: Any) -> Any:
        # Timestamps are stored as ISO strings
        if isinstance(value, datetime) and isinstance(column.type, String):
            return value.isoformat()
        return value

    def _compile_group(self, model: Type[Any], group: FilterGroup):
        clauses = [
            self._compile_group(model, child)
            if isinstance(child, FilterGroup)
            else self._compile_condition(model, child)
            for child in group.children
        ]
        if group.kind == "or":
            return or_(*clauses) if clauses else true()
        combined = and_(*clauses) if clauses else true()
        if group.kind == "not":
            return not_(combined)
        return combined

    def _compile_condition(self, model: Type[Any], condition: FieldCondition):
        column = self._column(model, condition.field)
        operators = dict(condition.operators)
        insensitive = operators.pop("mode", None) == "insensitive"

        clauses = []
        for operator, raw_value in operators.items():
            value = self._bind(column, raw_value)

            if operator == "equals":
                if value is None:
                    clauses.append(column.is_(None))
                elif insensitive and isinstance(value, str):
                    clauses.append(func.lower(column) == value.lower())
                else:
                    clauses.append(column == value)
            elif operator == "not":
                if isinstance(value, Mapping):
                    nested = FieldCondition(condition.field, dict(value))
                    clauses.append(not_(self._compile_condition(model, nested)))
                elif value is None:
                    clauses.append(column.is_not(None))
                else:
                    clauses.append(column != value)
            elif operator == "gt":
                clauses.append(column > value)
            elif operator == "gte":
                clauses.append(column >= value)
            elif operator == "lt":
                clauses.append(column < value)
            elif operator == "lte":
                clauses.append(column <= value)
            elif operator == "contains":
                match = column.icontains if insensitive else column.contains
                clauses.append(match(str(value), autoescape=True))
            elif operator == "startsWith":
                match = column.istartswith if insensitive else column.startswith
                clauses.append(match(str(value), autoescape=True))
            elif operator == "endsWith":
                match = column.iendswith if insensitive else column.endswith
                clauses.append(match(str(value), autoescape=True))
            elif operator == "search":
                terms = str(value).split()
                clauses.extend(column.icontains(term, autoescape=True) for term in terms)
            elif operator in ("in", "notIn"):
                if not isinstance(value, (list, tuple)):
                    raise MalformedPayloadError(
                        f"'{operator}' on '{condition.field}' expects a list"
                    )
                values = [self._bind(column, item) for item in value]
                clauses.append(
                    column.in_(values) if operator == "in" else column.not_in(values)
                )
            else:
                raise UnsupportedOperationError(
                    f"Unsupported filter operator '{operator}' on '{condition.field}'"
                )

        return and_(*clauses) if clauses else true()

    def _order_by(self, plan: QueryPlan) -> list:
        clauses = []
        for name, direction in plan.order_by:
            column = self._column(self.model, name)
            clauses.append(column.desc() if direction == Direction.DESC else column.asc())
        # Stable pagination
        if not any(name == self._pk.key for name, _ in plan.order_by):
            if "created_at" in self._mapper.columns and not plan.order_by:
                clauses.append(self.model.created_at.asc())
            clauses.append(getattr(self.model, self._pk.key).asc())
        return clauses

    def _loader_options(self, plan: QueryPlan) -> list:
        options = []
        if plan.select:
            columns = [self._column(self.model, name) for name in plan.select]
            options.append(load_only(*columns))
        if plan.include:
            options.extend(self._include_options(self.model, plan.include, None))
        return options

    def _include_options(self, model: Type[Any], tree: IncludeTree, parent) -> list:
        options = []
        for name, subtree in tree.items():
            relationship = self._relationship(model, name)
            attribute = getattr(model, name)
            loader = parent.selectinload(attribute) if parent is not None else selectinload(attribute)
            if subtree:
                options.extend(
                    self._include_options(relationship.mapper.class_, subtree, loader)
                )
            else:
                options.append(loader)
        return options

    def _serialize(
        self,
        row: Any,
        only: Optional[Iterable[str]] = None,
        include: Optional[IncludeTree] = None,
    ) -> Dict[str, Any]:
        data = row.to_dict(only=only)
        for name, subtree in (include or {}).items():
            value = getattr(row, name)
            if value is None:
                data[name] = None
            elif isinstance(value, (list, tuple, set)):
                data[name] = [self._serialize(item, None, subtree) for item in value]
            else:
                data[name] = self._serialize(value, None, subtree)
        return data

    async def _find_row(self, identifier: Any, plan: Optional[QueryPlan]) -> Optional[Any]:
        stmt = select(self.model).where(self._pk == identifier)
        if plan is not None:
            if plan.where is not None:
                stmt = stmt.where(self._compile_group(self.model, plan.where))
            stmt = stmt.options(*self._loader_options(plan))
        result = await self.session.execute(stmt.limit(1))
        return result.scalars().first()

    # ========================
    # Nested writes
    # ========================

    def _assign_scalars(self, model: Type[Any], row: Any, values: Mapping[str, Any]) -> None:
        for name, value in values.items():
            column = self._column(model, name)
            setattr(row, name, self._bind(column, value))

    async def _build(self, model: Type[Any], tree: WriteTree) -> Any:
        row = model()
        self._assign_scalars(model, row, tree.scalars)
        await self._apply_relations(model, row, tree, persistent=False)
        return row

    async def _apply_relations(
        self,
        model: Type[Any],
        row: Any,
        tree: WriteTree,
        persistent: bool,
    ) -> None:
        if tree.passthrough:
            name = next(iter(tree.passthrough))
            raise MalformedPayloadError(
                f"Relation '{name}' expects an object with create, connect, "
                f"disconnect, delete or update"
            )

        for name, relation_write in tree.relations.items():
            relationship = self._relationship(model, name)
            if persistent:
                await self.session.refresh(row, [name])
            await self._apply_relation(row, name, relationship, relation_write)

    async def _apply_relation(
        self,
        row: Any,
        name: str,
        relationship: Any,
        write: RelationWrite,
    ) -> None:
        target = relationship.mapper.class_
        to_many = relationship.uselist

        if write.create is not None:
            for subtree in self._as_list(write.create):
                if not isinstance(subtree, WriteTree):
                    raise MalformedPayloadError(f"Invalid create payload for '{name}'")
                child = await self._build(target, subtree)
                self._attach(row, name, child, to_many)

        if write.connect is not None:
            selectors = self._selectors(write.connect, name, to_many)
            for selector in selectors:
                child = await self._load_by_selector(target, selector)
                self._attach(row, name, child, to_many)

        if write.disconnect is not None:
            if to_many:
                for selector in self._selectors(write.disconnect, name, to_many):
                    child = self._match_child(row, name, target, selector)
                    getattr(row, name).remove(child)
            elif write.disconnect:
                setattr(row, name, None)

        if write.delete is not None:
            if to_many:
                for selector in self._selectors(write.delete, name, to_many):
                    child = self._match_child(row, name, target, selector)
                    getattr(row, name).remove(child)
                    await self.session.delete(child)
            elif write.delete:
                child = getattr(row, name)
                if child is None:
                    raise NotFoundError(target.__tablename__, message=f"No related {name} to delete")
                setattr(row, name, None)
                await self.session.delete(child)

        if write.update is not None:
            for item in self._as_list(write.update):
                if isinstance(item, TargetedUpdate):
                    if to_many:
                        child = self._match_child(row, name, target, item.where)
                    else:
                        child = getattr(row, name)
                        if child is None:
                            raise NotFoundError(target.__tablename__, message=f"No related {name} to update")
                    data = item.data
                elif to_many:
                    raise MalformedPayloadError(
                        f"Updates on '{name}' need 'where' and 'data'"
                    )
                else:
                    child = getattr(row, name)
                    if child is None:
                        raise NotFoundError(target.__tablename__, message=f"No related {name} to update")
                    data = item

                self._assign_scalars(target, child, data.scalars)
                await self._apply_relations(target, child, data, persistent=True)

    @staticmethod
    def _as_list(value: Any) -> list:
        return list(value) if isinstance(value, list) else [value]

    def _selectors(self, value: Any, name: str, to_many: bool) -> List[Dict[str, Any]]:
        selectors = value if isinstance(value, list) else [value]
        if not to_many and len(selectors) != 1:
            raise MalformedPayloadError(f"Relation '{name}' accepts a single target")
        for selector in selectors:
            if not isinstance(selector, Mapping) or not selector:
                raise MalformedPayloadError(
                    f"Relation '{name}' targets must be non-empty objects"
                )
        return [dict(selector) for selector in selectors]

    async def _load_by_selector(self, model: Type[Any], selector: Mapping[str, Any]) -> Any:
        clauses = [
            self._column(model, key) == self._bind(self._column(model, key), value)
            for key, value in selector.items()
        ]
        result = await self.session.execute(select(model).where(and_(*clauses)).limit(2))
        matches = result.scalars().all()
        if not matches:
            raise NotFoundError(model.__tablename__, selector)
        if len(matches) > 1:
            raise MalformedPayloadError(
                f"Selector {selector} matches more than one {model.__tablename__} row"
            )
        return matches[0]

    def _match_child(self, row: Any, name: str, model: Type[Any], selector: Mapping[str, Any]) -> Any:
        for key in selector:
            self._column(model, key)
        for child in getattr(row, name):
            if all(getattr(child, key) == value for key, value in selector.items()):
                return child
        raise NotFoundError(model.__tablename__, selector)

    @staticmethod
    def _attach(row: Any, name: str, child: Any, to_many: bool) -> None:
        if to_many:
            collection = getattr(row, name)
            if child not in collection:
                collection.append(child)
        else:
            setattr(row, name, child)
