"""
Query parameter translation.

Turns untrusted query-string parameters (or an explicit search body) into a
QueryPlan whose every identifier is approved by the entity's
SecurityPolicy. Translation is all-or-nothing: either a complete plan is
returned or a ClientInputError is raised, always before the store is
touched.

Supported parameters:
- page, limit: pagination (page floored at 1, limit clamped to the policy max)
- sort: comma-separated ``field:direction`` pairs
- fields: comma-separated projection
- filter: JSON filter tree (AND / OR / NOT groups, operator objects)
- include: JSON relation inclusion tree
- withDeleted: include soft-deleted rows
- anything else: simple filter ``field=operator:value``
"""

import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from datagate.core.errors import (
    ClientInputError,
    DisallowedFieldError,
    IncludeDepthExceededError,
    InvalidJSONParameterError,
    LimitExceededError,
    MalformedPayloadError,
    UnsupportedOperationError,
)
from datagate.schemas.descriptors import SecurityPolicy
from datagate.schemas.plans import (
    FILTER_OPERATORS,
    STRING_MATCH_OPERATORS,
    Direction,
    FieldCondition,
    FilterGroup,
    FilterNode,
    IncludeTree,
    QueryPlan,
)

logger = logging.getLogger(__name__)


RESERVED_PARAMS = frozenset({
    "page",
    "limit",
    "sort",
    "fields",
    "filter",
    "include",
    "withDeleted",
})

_GROUP_KEYS = {"AND": "and", "OR": "or", "NOT": "not"}

_INT_RE = re.compile(r"^-?\d+$")
_FLOAT_RE = re.compile(r"^-?(\d+\.\d*|\.\d+)([eE][-+]?\d+)?$|^-?\d+[eE][-+]?\d+$")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$")
_UNSAFE_CHARS_RE = re.compile(r"[<>\"'`;\\]")

_TRUTHY = {"true", "1", "yes", "on"}


def sanitize_string(value: str) -> str:
    """Strip characters commonly used for markup or statement injection."""
    return _UNSAFE_CHARS_RE.sub("", value)


def _parse_iso_datetime(value: str) -> Optional[datetime]:
    if not _ISO_DATE_RE.match(value):
        return None
    try:
        # fromisoformat on older interpreters rejects the Z suffix
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def coerce_value(value: Any, max_json_length: int = 10_000) -> Any:
    """
    Infer a typed value from a query-string literal.

    Order: boolean, null, integer, float, ISO-8601 date, JSON object/array,
    else the sanitized string. Strings longer than ``max_json_length`` are
    never JSON-decoded.

    Example:
        >>> coerce_value("42")
        42
        >>> coerce_value("<b>hi</b>")
        'bhi/b'
    """
    if not isinstance(value, str):
        return value

    text = value.strip()
    lowered = text.lower()

    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered == "null":
        return None
    if _INT_RE.match(text):
        try:
            return int(text)
        except ValueError:
            # Longer than the interpreter's integer conversion limit
            return sanitize_string(value)
    if _FLOAT_RE.match(text):
        return float(text)

    parsed_date = _parse_iso_datetime(text)
    if parsed_date is not None:
        return parsed_date

    if text[:1] in ("{", "[") and len(text) <= max_json_length:
        try:
            decoded = json.loads(text)
        except ValueError:
            decoded = None
        if isinstance(decoded, (dict, list)):
            return decoded

    return sanitize_string(value)


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[-1] if value else None
    return value


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


class QueryParamTranslator:
    """
    Builds QueryPlans from caller input under a SecurityPolicy.

    Two entry points share the same identifier checks:
    - translate(): query-string path; page size is clamped to the policy max
    - from_search_body() / validate_plan(): explicit pass-through path;
      a page size above the max is rejected outright

    Attributes:
        default_page_size: Page size used when ``limit`` is absent
        max_json_length: Longest string that will be JSON-decoded
    """

    def __init__(self, default_page_size: int = 10, max_json_length: int = 10_000):
        self.default_page_size = default_page_size
        self.max_json_length = max_json_length

    # ========================
    # Entry points
    # ========================

    def translate(
        self,
        raw: Mapping[str, Any],
        policy: SecurityPolicy,
        entity: Optional[str] = None,
    ) -> QueryPlan:
        """
        Translate query-string parameters into a QueryPlan.

        Args:
            raw: Parameter name -> string value (or list of values when repeated)
            policy: Entity security policy
            entity: Entity name, for log context

        Returns:
            A plan whose identifiers are all approved by ``policy``

        Raises:
            ClientInputError: Bad JSON, disallowed field, depth exceeded

        Example:
            >>> plan = translator.translate(
            ...     {"email": "x@y.com", "limit": "999"},
            ...     SecurityPolicy(allowed_filters={"email"}),
            ... )
            >>> plan.take
            50
        """
        try:
            json_filter = self._decode_json_param(raw.get("filter"), "filter")
            if json_filter is not None and not isinstance(json_filter, dict):
                raise InvalidJSONParameterError("filter")

            raw_include = self._decode_json_param(raw.get("include"), "include")

            page = self._parse_page(raw.get("page"))
            take = self._parse_limit(raw.get("limit"), policy)

            where = FilterGroup("and")
            if json_filter:
                where.children.extend(self._parse_filter_object(json_filter))
            where.children.extend(self._parse_simple_filters(raw))

            plan = QueryPlan(
                skip=(page - 1) * take,
                take=take,
                page=page,
                order_by=self._parse_sort(_first(raw.get("sort"))),
                select=self._parse_fields(_first(raw.get("fields"))),
                include=self._normalize_include(raw_include),
                where=where,
            )

            self._check_identifiers(plan, policy)
            self._apply_soft_delete(plan, policy, self._parse_flag(raw.get("withDeleted")))
        except ClientInputError as exc:
            logger.warning(
                "Query parameters rejected",
                extra={"entity": entity, "kind": exc.kind, "reason": exc.message},
            )
            raise

        if plan.where is not None and plan.where.is_empty():
            plan.where = None
        return plan

    def translate_single(
        self,
        raw: Mapping[str, Any],
        policy: SecurityPolicy,
        entity: Optional[str] = None,
    ) -> QueryPlan:
        """
        Translate the parameters accepted when reading one row by id.

        Only ``fields``, ``include`` and ``withDeleted`` are honoured.
        """
        subset = {
            key: raw[key]
            for key in ("fields", "include", "withDeleted")
            if key in raw
        }
        plan = self.translate(subset, policy, entity=entity)
        plan.skip, plan.take, plan.page = 0, 1, 1
        return plan

    def from_search_body(
        self,
        body: Mapping[str, Any],
        policy: SecurityPolicy,
        entity: Optional[str] = None,
    ) -> QueryPlan:
        """
        Build a plan from an explicit structured search body and validate it.

        Body keys: where, orderBy, select, include, skip, take, withDeleted.

        Raises:
            ClientInputError: Any malformed section or disallowed identifier
            LimitExceededError: ``take`` above the policy max
        """
        try:
            if not isinstance(body, Mapping):
                raise MalformedPayloadError("Search body must be a JSON object")

            unknown = set(body) - {"where", "orderBy", "select", "include", "skip", "take", "withDeleted"}
            if unknown:
                raise MalformedPayloadError(
                    f"Unknown search keys: {', '.join(sorted(unknown))}"
                )

            where_raw = body.get("where") or {}
            if not isinstance(where_raw, dict):
                raise MalformedPayloadError("'where' must be an object")

            skip = body.get("skip", 0)
            take = body.get("take", self.default_page_size)
            if not isinstance(skip, int) or isinstance(skip, bool):
                raise MalformedPayloadError("'skip' must be an integer")
            if not isinstance(take, int) or isinstance(take, bool):
                raise MalformedPayloadError("'take' must be an integer")

            select = body.get("select")
            if select is not None:
                if isinstance(select, dict):
                    select = [name for name, wanted in select.items() if wanted]
                if not isinstance(select, list) or not all(isinstance(s, str) for s in select):
                    raise MalformedPayloadError("'select' must be a list of field names")

            plan = QueryPlan(
                skip=skip,
                take=take,
                page=(skip // take) + 1 if take > 0 else 1,
                order_by=self._parse_order_by_body(body.get("orderBy")),
                select=select,
                include=self._normalize_include(body.get("include")),
                where=FilterGroup("and", self._parse_filter_object(where_raw)),
            )
        except ClientInputError as exc:
            logger.warning(
                "Search body rejected",
                extra={"entity": entity, "kind": exc.kind, "reason": exc.message},
            )
            raise

        self.validate_plan(plan, policy, entity=entity)
        self._apply_soft_delete(plan, policy, bool(body.get("withDeleted", False)))
        if plan.where is not None and plan.where.is_empty():
            plan.where = None
        return plan

    def validate_plan(
        self,
        plan: QueryPlan,
        policy: SecurityPolicy,
        entity: Optional[str] = None,
    ) -> QueryPlan:
        """
        Validate an explicitly supplied plan without clamping anything.

        Raises:
            LimitExceededError: ``plan.take`` greater than the policy max
            ClientInputError: Negative skip, non-positive take, or any
                disallowed identifier
        """
        try:
            if plan.take > policy.max_page_size:
                raise LimitExceededError(plan.take, policy.max_page_size)
            if plan.take < 1:
                raise MalformedPayloadError("Page size must be at least 1")
            if plan.skip < 0:
                raise MalformedPayloadError("Offset must not be negative")
            self._check_identifiers(plan, policy)
        except ClientInputError as exc:
            logger.warning(
                "Query plan rejected",
                extra={"entity": entity, "kind": exc.kind, "reason": exc.message},
            )
            raise
        return plan

    # ========================
    # Parsing
    # ========================

    def _decode_json_param(self, value: Any, name: str) -> Any:
        value = _first(value)
        if value is None or value == "":
            return None
        if not isinstance(value, str):
            return value
        if len(value) > self.max_json_length:
            raise InvalidJSONParameterError(name)
        try:
            return json.loads(value)
        except ValueError:
            # JSONDecodeError, or an integer past the interpreter's digit limit
            raise InvalidJSONParameterError(name) from None

    @staticmethod
    def _parse_page(value: Any) -> int:
        value = _first(value)
        try:
            page = int(value) if value is not None else 1
        except (TypeError, ValueError):
            page = 1
        return max(1, page)

    def _parse_limit(self, value: Any, policy: SecurityPolicy) -> int:
        value = _first(value)
        try:
            limit = int(value) if value is not None else self.default_page_size
        except (TypeError, ValueError):
            limit = self.default_page_size
        return min(max(1, limit), policy.max_page_size)

    @staticmethod
    def _parse_flag(value: Any) -> bool:
        value = _first(value)
        if isinstance(value, bool):
            return value
        if value is None:
            return False
        return str(value).strip().lower() in _TRUTHY

    @staticmethod
    def _parse_sort(value: Any) -> List[Tuple[str, Direction]]:
        """
        Parse ``field:direction`` pairs; malformed pairs are dropped.

        A repeated field keeps its first position and takes the last direction.
        """
        if not value:
            return []

        order: Dict[str, Direction] = {}
        for pair in str(value).split(","):
            parts = pair.strip().split(":")
            if len(parts) > 2:
                continue
            name = parts[0].strip()
            direction = parts[1].strip().lower() if len(parts) == 2 else "asc"
            if not name or direction not in ("asc", "desc"):
                continue
            order[name] = Direction(direction)
        return list(order.items())

    @staticmethod
    def _parse_order_by_body(value: Any) -> List[Tuple[str, Direction]]:
        if value is None:
            return []
        entries = value if isinstance(value, list) else [value]

        order: List[Tuple[str, Direction]] = []
        for entry in entries:
            if not isinstance(entry, dict):
                raise MalformedPayloadError("'orderBy' entries must be objects")
            for name, direction in entry.items():
                if not isinstance(direction, str) or direction.lower() not in ("asc", "desc"):
                    raise MalformedPayloadError(
                        f"Invalid sort direction for '{name}'"
                    )
                order.append((name, Direction(direction.lower())))
        return order

    @staticmethod
    def _parse_fields(value: Any) -> Optional[List[str]]:
        if not value:
            return None
        fields: List[str] = []
        for name in str(value).split(","):
            name = name.strip()
            if name and name not in fields:
                fields.append(name)
        return fields or None

    def _parse_filter_object(self, obj: Mapping[str, Any]) -> List[FilterNode]:
        """Parse a JSON filter object into filter nodes (implicitly ANDed)."""
        nodes: List[FilterNode] = []
        for key, value in obj.items():
            if key in _GROUP_KEYS:
                kind = _GROUP_KEYS[key]
                items = value if isinstance(value, list) else [value]
                if not all(isinstance(item, dict) for item in items):
                    raise MalformedPayloadError(f"'{key}' expects filter objects")

                children: List[FilterNode]
                if kind == "or":
                    # Each OR branch is its own conjunction
                    children = [
                        FilterGroup("and", self._parse_filter_object(item))
                        for item in items
                    ]
                elif kind == "not" and isinstance(value, list):
                    # NOT [a, b] matches rows where none of the items match
                    nodes.append(FilterGroup("and", [
                        FilterGroup("not", [FilterGroup("and", self._parse_filter_object(item))])
                        for item in items
                    ]))
                    continue
                else:
                    children = [
                        node
                        for item in items
                        for node in self._parse_filter_object(item)
                    ]
                nodes.append(FilterGroup(kind, children))
            elif isinstance(value, dict):
                unknown = [op for op in value if op not in FILTER_OPERATORS]
                if unknown:
                    raise UnsupportedOperationError(
                        f"Unsupported filter operator '{unknown[0]}' on '{key}'"
                    )
                nodes.append(FieldCondition(key, dict(value)))
            else:
                nodes.append(FieldCondition(key, {"equals": value}))
        return nodes

    def _parse_simple_filters(self, raw: Mapping[str, Any]) -> List[FilterNode]:
        """
        Parse ``field=operator:value`` parameters.

        Values without a recognised operator prefix are equality filters on
        the whole (coerced) value. Repeated parameters for the same field are
        merged into one condition.
        """
        conditions: Dict[str, Dict[str, Any]] = {}
        for key, values in raw.items():
            if key in RESERVED_PARAMS:
                continue
            for value in _as_list(values):
                operators = conditions.setdefault(key, {})
                operator, operand = self._split_operator(value)
                if operator is None:
                    operators["equals"] = coerce_value(value, self.max_json_length)
                elif operator in ("in", "notIn"):
                    operators[operator] = [
                        coerce_value(item, self.max_json_length)
                        for item in operand.split(",")
                    ]
                elif operator in STRING_MATCH_OPERATORS:
                    operators[operator] = operand
                else:
                    operators[operator] = coerce_value(operand, self.max_json_length)
        return [FieldCondition(name, ops) for name, ops in conditions.items() if ops]

    @staticmethod
    def _split_operator(value: Any) -> Tuple[Optional[str], Any]:
        if not isinstance(value, str) or ":" not in value:
            return None, value
        operator, operand = value.split(":", 1)
        if operator not in FILTER_OPERATORS:
            return None, value
        return operator, operand

    def _normalize_include(self, value: Any) -> Optional[IncludeTree]:
        """
        Normalize an inclusion spec to ``{relation: subtree | None}``.

        Accepted leaf values are ``true`` (include) and ``false`` (skip); an
        object value is either ``{"include": {...}}`` or a nested tree.
        """
        if value is None:
            return None
        if not isinstance(value, dict):
            raise MalformedPayloadError("Include must be a JSON object")

        tree: IncludeTree = {}
        for name, sub in value.items():
            if sub is True:
                tree[name] = None
            elif sub is False or sub is None:
                continue
            elif isinstance(sub, dict):
                nested = sub["include"] if "include" in sub else sub
                tree[name] = (
                    self._normalize_include(nested)
                    if isinstance(nested, dict) and nested
                    else None
                )
            else:
                raise MalformedPayloadError(
                    f"Invalid include value for '{name}'"
                )
        return tree or None

    # ========================
    # Allow-list enforcement
    # ========================

    def _check_identifiers(self, plan: QueryPlan, policy: SecurityPolicy) -> None:
        if plan.where is not None:
            for condition in plan.where.iter_conditions():
                if condition.exempt:
                    continue
                if condition.field not in policy.allowed_filters:
                    raise DisallowedFieldError("Filtering", condition.field)

        for name, _direction in plan.order_by:
            if name not in policy.allowed_sort_fields:
                raise DisallowedFieldError("Sorting", name)

        for name in plan.select or ():
            if name not in policy.allowed_select_fields:
                raise DisallowedFieldError("Selecting", name)

        if plan.include:
            self._check_include(plan.include, policy, depth=1, prefix="")

    def _check_include(
        self,
        tree: IncludeTree,
        policy: SecurityPolicy,
        depth: int,
        prefix: str,
    ) -> None:
        # Depth is checked before any name at this level
        if depth > policy.max_include_depth:
            raise IncludeDepthExceededError(policy.max_include_depth)

        for name, subtree in tree.items():
            path = f"{prefix}.{name}" if prefix else name
            if name not in policy.allowed_includes and path not in policy.allowed_includes:
                raise DisallowedFieldError("Including", path)
            if subtree:
                self._check_include(subtree, policy, depth + 1, path)

    @staticmethod
    def _apply_soft_delete(plan: QueryPlan, policy: SecurityPolicy, with_deleted: bool) -> None:
        if not policy.soft_delete or with_deleted:
            return
        if plan.where is None:
            plan.where = FilterGroup("and")
        if plan.where.references(policy.soft_delete_field):
            return
        plan.where.children.append(
            FieldCondition(policy.soft_delete_field, {"equals": None}, exempt=True)
        )


def translate_query_params(
    raw: Mapping[str, Any],
    policy: SecurityPolicy,
    default_page_size: int = 10,
) -> QueryPlan:
    """Translate query parameters with a one-off translator."""
    return QueryParamTranslator(default_page_size=default_page_size).translate(raw, policy)


def query_params_from_pairs(pairs: Iterable[Tuple[str, str]]) -> Dict[str, Any]:
    """
    Collapse (name, value) pairs into a mapping, keeping repeats as lists.

    Example:
        >>> query_params_from_pairs([("a", "1"), ("a", "2"), ("b", "3")])
        {'a': ['1', '2'], 'b': '3'}
    """
    params: Dict[str, Any] = {}
    for name, value in pairs:
        if name in params:
            existing = params[name]
            if isinstance(existing, list):
                existing.append(value)
            else:
                params[name] = [existing, value]
        else:
            params[name] = value
    return params
