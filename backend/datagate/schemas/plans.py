"""
Per-request plans produced by the translators.

A QueryPlan describes one read; a WriteTree describes one create or update.
Both are built fresh for every request and discarded once the store call
returns.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Literal, Optional, Tuple, Union


FILTER_OPERATORS = frozenset({
    "equals",
    "not",
    "gt",
    "gte",
    "lt",
    "lte",
    "contains",
    "startsWith",
    "endsWith",
    "in",
    "notIn",
    "search",
    "mode",
})

# Operators whose values are pattern text and must never be type-coerced
STRING_MATCH_OPERATORS = frozenset({
    "contains",
    "startsWith",
    "endsWith",
    "search",
    "mode",
})

NESTED_WRITE_KEYS = ("create", "connect", "disconnect", "delete", "update")


class Direction(str, Enum):
    ASC = "asc"
    DESC = "desc"


# ========================
# Read plans
# ========================

@dataclass
class FieldCondition:
    """
    Leaf comparison on one field.

    Attributes:
        field: Field name
        operators: Operator -> value, e.g. {"gte": 10, "lt": 20}
        exempt: True for the injected soft-delete marker (skips allow-list)
    """
    field: str
    operators: Dict[str, Any]
    exempt: bool = False


@dataclass
class FilterGroup:
    """
    Boolean group of conditions.

    A NOT group negates the conjunction of its children.
    """
    kind: Literal["and", "or", "not"]
    children: List["FilterNode"] = field(default_factory=list)

    def iter_conditions(self) -> Iterator[FieldCondition]:
        """Yield every leaf condition, depth first."""
        for child in self.children:
            if isinstance(child, FilterGroup):
                yield from child.iter_conditions()
            else:
                yield child

    def references(self, name: str) -> bool:
        return any(cond.field == name for cond in self.iter_conditions())

    def is_empty(self) -> bool:
        return not self.children


FilterNode = Union[FieldCondition, FilterGroup]

# Relation name -> nested include tree, or None for a leaf
IncludeTree = Dict[str, Optional["IncludeTree"]]


@dataclass
class QueryPlan:
    """
    Validated, bounded representation of one read request.

    Attributes:
        skip: Rows to skip
        take: Page size
        page: 1-based page number the skip was derived from
        order_by: Ordered (field, direction) pairs
        select: Projected fields, or None for all columns
        include: Relation inclusion tree, or None
        where: Root AND group, or None when unfiltered
    """
    skip: int = 0
    take: int = 10
    page: int = 1
    order_by: List[Tuple[str, Direction]] = field(default_factory=list)
    select: Optional[List[str]] = None
    include: Optional[IncludeTree] = None
    where: Optional[FilterGroup] = None


# ========================
# Write plans
# ========================

@dataclass
class TargetedUpdate:
    """Update of one related row selected by ``where`` (to-many relations)."""
    where: Dict[str, Any]
    data: "WriteTree"

    def as_dict(self) -> Dict[str, Any]:
        return {"where": self.where, "data": self.data.as_dict()}


@dataclass
class RelationWrite:
    """
    Nested sub-operations applied to one relation field.

    ``create`` holds one WriteTree or a list of them; ``update`` holds a
    WriteTree (to-one) or a list of TargetedUpdate (to-many). ``connect``,
    ``disconnect`` and ``delete`` are passed through as supplied.
    """
    create: Optional[Union["WriteTree", List["WriteTree"]]] = None
    connect: Any = None
    disconnect: Any = None
    delete: Any = None
    update: Optional[Union["WriteTree", List[TargetedUpdate]]] = None

    def operations(self) -> List[str]:
        return [key for key in NESTED_WRITE_KEYS if getattr(self, key) is not None]

    def as_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for key in self.operations():
            value = getattr(self, key)
            if isinstance(value, list):
                result[key] = [
                    item.as_dict() if hasattr(item, "as_dict") else item
                    for item in value
                ]
            elif hasattr(value, "as_dict"):
                result[key] = value.as_dict()
            else:
                result[key] = value
        return result


@dataclass
class WriteTree:
    """
    Normalized create/update payload.

    Attributes:
        scalars: Plain field -> value assignments
        relations: Relation field -> nested sub-operations
        passthrough: Relation fields whose value was supplied as a bare array
    """
    scalars: Dict[str, Any] = field(default_factory=dict)
    relations: Dict[str, RelationWrite] = field(default_factory=dict)
    passthrough: Dict[str, List[Any]] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = dict(self.scalars)
        result.update(self.passthrough)
        for name, relation in self.relations.items():
            result[name] = relation.as_dict()
        return result

    def is_empty(self) -> bool:
        return not (self.scalars or self.relations or self.passthrough)
