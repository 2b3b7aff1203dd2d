"""
Static per-entity configuration objects.

Everything here is built once at wiring time and never mutated afterwards,
so instances are shared freely between concurrent requests.

- ModelDescriptor: entity name, relation and file fields, validation schema
- SecurityPolicy: allow-lists for query translation (deny-all by default)
- RawQueryWhitelist: allow-lists for raw textual queries (disabled by default)
- TransactionSpec: retry / timeout / isolation options for one unit of work
"""

from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from types import MappingProxyType
from typing import (
    Annotated,
    Any,
    FrozenSet,
    Iterable,
    Mapping,
    Optional,
    Tuple,
    Type,
    Union,
)

from pydantic import BaseModel, Field, create_model


ALL_COLUMNS = "*"

SQL_VERBS = frozenset({"SELECT", "INSERT", "UPDATE", "DELETE"})

JOIN_TYPES = frozenset({"inner", "left", "right", "full", "cross"})


class Cardinality(str, Enum):
    """Relation cardinality as seen from the owning entity."""
    ONE_TO_ONE = "oneToOne"
    ONE_TO_MANY = "oneToMany"
    MANY_TO_ONE = "manyToOne"
    MANY_TO_MANY = "manyToMany"

    @property
    def is_to_many(self) -> bool:
        return self in (Cardinality.ONE_TO_MANY, Cardinality.MANY_TO_MANY)


class IsolationLevel(str, Enum):
    """Transaction isolation levels accepted by TransactionRunner."""
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"


def _frozen(values: Optional[Iterable[str]]) -> FrozenSet[str]:
    if values is None:
        return frozenset()
    if isinstance(values, str):
        raise TypeError("Expected a collection of names, got a string")
    return frozenset(values)


@lru_cache(maxsize=None)
def build_partial_schema(schema: Type[BaseModel]) -> Type[BaseModel]:
    """
    Derive a variant of ``schema`` where no field is required.

    Field types and constraints are kept, so a value that is present must
    still be valid: an explicit null is only accepted where the full schema
    accepts one. Absent fields default to None without validation and are
    dropped by ``model_dump(exclude_unset=True)``.

    Args:
        schema: Full validation schema

    Returns:
        A new pydantic model class named ``Partial<Schema>``
    """
    fields: dict[str, Any] = {}
    for name, info in schema.model_fields.items():
        annotation = info.annotation
        if info.metadata:
            annotation = Annotated[(annotation, *info.metadata)]
        fields[name] = (
            annotation,
            Field(
                default=None,
                validate_default=False,
                alias=info.alias,
                description=info.description,
            ),
        )

    return create_model(
        f"Partial{schema.__name__}",
        __config__=schema.model_config,
        **fields,
    )


# ========================
# Model descriptors
# ========================

@dataclass(frozen=True)
class RelationMetadata:
    """
    How a relation field maps onto another entity.

    Attributes:
        descriptor: Descriptor of the related entity (used for nested validation)
        cardinality: Relation cardinality from the owner's point of view
    """
    descriptor: "ModelDescriptor"
    cardinality: Cardinality

    @property
    def is_to_many(self) -> bool:
        return self.cardinality.is_to_many


@dataclass(frozen=True)
class ModelDescriptor:
    """
    Immutable metadata describing one entity.

    Attributes:
        name: Entity name (also the route segment)
        schema: Pydantic schema validating the entity's scalar fields
        relation_fields: Ordered relation field names
        file_fields: Ordered names of fields that hold blob-store URLs
        relations: Optional relation metadata keyed by relation field

    Raises:
        ValueError: If a relation field is also a scalar field of the schema,
            or relation metadata names an undeclared relation
    """
    name: str
    schema: Type[BaseModel]
    relation_fields: Tuple[str, ...] = ()
    file_fields: Tuple[str, ...] = ()
    relations: Mapping[str, RelationMetadata] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "relation_fields", tuple(self.relation_fields))
        object.__setattr__(self, "file_fields", tuple(self.file_fields))
        object.__setattr__(self, "relations", MappingProxyType(dict(self.relations)))

        overlap = [
            name for name in self.relation_fields
            if name in self.schema.model_fields
        ]
        if overlap:
            raise ValueError(
                f"{self.name}: relation fields must not be schema fields: {overlap}"
            )

        unknown = [name for name in self.relations if name not in self.relation_fields]
        if unknown:
            raise ValueError(
                f"{self.name}: relation metadata for undeclared relations: {unknown}"
            )

    @property
    def partial_schema(self) -> Type[BaseModel]:
        return build_partial_schema(self.schema)

    def is_relation(self, name: str) -> bool:
        return name in self.relation_fields

    def related(self, name: str) -> Optional["ModelDescriptor"]:
        """Return the related entity's descriptor, if metadata declares it."""
        metadata = self.relations.get(name)
        return metadata.descriptor if metadata is not None else None


# ========================
# Query security policy
# ========================

@dataclass(frozen=True)
class SecurityPolicy:
    """
    Per-entity allow-lists for query translation.

    The default instance denies everything: every allow-list is empty,
    inclusion depth and nested-write depth are 1, and page size caps at 50.
    Every permitted name has to be listed explicitly.

    Attributes:
        allowed_filters: Field names callers may filter on
        allowed_sort_fields: Field names callers may sort by
        allowed_includes: Relation names (or dotted paths) callers may include
        allowed_select_fields: Field names callers may project
        max_include_depth: Deepest inclusion level accepted
        max_page_size: Largest page size accepted
        soft_delete: Whether rows carry a soft-delete marker
        soft_delete_field: Column holding the soft-delete marker
        max_nested_depth: Relation hops allowed in a nested write
        truncate_excess_nesting: Drop (instead of reject) relations past the
            nested-write depth
    """
    allowed_filters: FrozenSet[str] = frozenset()
    allowed_sort_fields: FrozenSet[str] = frozenset()
    allowed_includes: FrozenSet[str] = frozenset()
    allowed_select_fields: FrozenSet[str] = frozenset()
    max_include_depth: int = 1
    max_page_size: int = 50
    soft_delete: bool = False
    soft_delete_field: str = "deleted_at"
    max_nested_depth: int = 1
    truncate_excess_nesting: bool = False

    def __post_init__(self) -> None:
        for name in (
            "allowed_filters",
            "allowed_sort_fields",
            "allowed_includes",
            "allowed_select_fields",
        ):
            object.__setattr__(self, name, _frozen(getattr(self, name)))

        if self.max_include_depth < 0:
            raise ValueError("max_include_depth must be >= 0")
        if self.max_page_size < 1:
            raise ValueError("max_page_size must be >= 1")
        if self.max_nested_depth < 0:
            raise ValueError("max_nested_depth must be >= 0")


# ========================
# Raw query whitelist
# ========================

@dataclass(frozen=True)
class JoinConfig:
    """
    Join permission for one target table.

    Attributes:
        allowed: Whether the table may appear in a JOIN at all
        tables: If non-empty, the join must co-occur with one of these tables
        types: If set, the permitted join types (inner, left, right, full, cross)
    """
    allowed: bool = True
    tables: FrozenSet[str] = frozenset()
    types: Optional[FrozenSet[str]] = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "tables", frozenset(t.lower() for t in _frozen(self.tables))
        )
        if self.types is not None:
            types = frozenset(t.lower() for t in _frozen(self.types))
            unknown = types - JOIN_TYPES
            if unknown:
                raise ValueError(f"Unknown join types: {sorted(unknown)}")
            object.__setattr__(self, "types", types)


@dataclass(frozen=True)
class SortConfig:
    """
    ORDER BY permission for one table.

    Attributes:
        allowed: Whether the table's columns may be sorted on
        max_columns: Maximum number of ORDER BY columns (None = unbounded)
        allowed_columns: Sortable columns, or ALL_COLUMNS
    """
    allowed: bool = True
    max_columns: Optional[int] = None
    allowed_columns: Union[FrozenSet[str], str] = ALL_COLUMNS

    def __post_init__(self) -> None:
        if self.allowed_columns != ALL_COLUMNS:
            object.__setattr__(
                self,
                "allowed_columns",
                frozenset(c.lower() for c in _frozen(self.allowed_columns)),
            )

    def permits(self, column: str) -> bool:
        return self.allowed_columns == ALL_COLUMNS or column in self.allowed_columns


@dataclass(frozen=True)
class RawQueryWhitelist:
    """
    Allow-lists gating raw textual queries for one entity.

    Disabled by default, read-only by default, and parameterized-only by
    default. Table and column names are matched case-insensitively.

    Attributes:
        enabled: Master switch for the raw-query capability
        tables: Tables the query may reference
        columns: Allowed columns per table, or ALL_COLUMNS for a table
        allowed_operations: Permitted leading verbs
        max_query_length: Longest query text accepted
        parameterized_only: Reject inline literal values
        joins: False to forbid JOIN, True to allow any, or per-table JoinConfig
        sorting: False to forbid ORDER BY, True to allow any, or per-table SortConfig
        max_result_rows: Rows returned at most (None = no cap)
    """
    enabled: bool = False
    tables: FrozenSet[str] = frozenset()
    columns: Mapping[str, Union[FrozenSet[str], str]] = field(default_factory=dict)
    allowed_operations: FrozenSet[str] = frozenset({"SELECT"})
    max_query_length: int = 5000
    parameterized_only: bool = True
    joins: Union[bool, Mapping[str, JoinConfig]] = False
    sorting: Union[bool, Mapping[str, SortConfig]] = False
    max_result_rows: Optional[int] = 1000

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "tables", frozenset(t.lower() for t in _frozen(self.tables))
        )

        columns: dict[str, Union[FrozenSet[str], str]] = {}
        for table, allowed in self.columns.items():
            if allowed == ALL_COLUMNS:
                columns[table.lower()] = ALL_COLUMNS
            else:
                columns[table.lower()] = frozenset(c.lower() for c in _frozen(allowed))
        object.__setattr__(self, "columns", MappingProxyType(columns))

        operations = frozenset(op.upper() for op in _frozen(self.allowed_operations))
        unknown = operations - SQL_VERBS
        if unknown:
            raise ValueError(f"Unsupported SQL operations: {sorted(unknown)}")
        object.__setattr__(self, "allowed_operations", operations)

        if not isinstance(self.joins, bool):
            object.__setattr__(
                self,
                "joins",
                MappingProxyType({k.lower(): v for k, v in self.joins.items()}),
            )
        if not isinstance(self.sorting, bool):
            object.__setattr__(
                self,
                "sorting",
                MappingProxyType({k.lower(): v for k, v in self.sorting.items()}),
            )

        if self.max_query_length < 1:
            raise ValueError("max_query_length must be >= 1")

    def columns_for(self, table: str) -> Union[FrozenSet[str], str]:
        """Allowed columns for a table; tables without an entry allow none."""
        return self.columns.get(table, frozenset())

    def permits_column(self, table: str, column: str) -> bool:
        allowed = self.columns_for(table)
        return allowed == ALL_COLUMNS or column in allowed

    def join_config(self, table: str) -> Optional[JoinConfig]:
        if isinstance(self.joins, bool):
            return JoinConfig() if self.joins else None
        return self.joins.get(table)

    def sort_config(self, table: str) -> Optional[SortConfig]:
        if isinstance(self.sorting, bool):
            return SortConfig() if self.sorting else None
        return self.sorting.get(table)

    @property
    def joins_enabled(self) -> bool:
        return bool(self.joins)

    @property
    def sorting_enabled(self) -> bool:
        return bool(self.sorting)


# ========================
# Transactions
# ========================

@dataclass(frozen=True)
class TransactionSpec:
    """
    Options for one TransactionRunner invocation.

    Attributes:
        max_retries: Total attempts, including the first one
        timeout_ms: Per-attempt timeout in milliseconds
        isolation_level: Isolation level requested for every attempt
        backoff_base_ms: Base delay; attempt n waits base * 2**n
    """
    max_retries: int = 3
    timeout_ms: int = 5000
    isolation_level: IsolationLevel = IsolationLevel.SERIALIZABLE
    backoff_base_ms: int = 100

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")
        object.__setattr__(
            self, "isolation_level", IsolationLevel(self.isolation_level)
        )

    @classmethod
    def from_settings(cls, settings: Any) -> "TransactionSpec":
        return cls(
            max_retries=settings.tx_max_retries,
            timeout_ms=settings.tx_timeout_ms,
            isolation_level=IsolationLevel(settings.tx_isolation_level),
            backoff_base_ms=settings.tx_backoff_base_ms,
        )
