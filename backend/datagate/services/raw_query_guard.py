"""
Whitelist enforcement for raw textual queries.

This is pattern-based structural recognition, not a SQL parser. It finds
clause keywords positionally and checks the identifiers that follow them
against a RawQueryWhitelist. It is a best-effort textual whitelist: it
does not prove a query is semantically safe, and anything it cannot
recognise is rejected rather than waved through.

Checks, in order:
1. Feature enabled, non-empty text, length bound
2. Single statement, no comments, no quoted identifiers
3. No inline literals when parameterized_only is set
4. Leading verb allowed, no DDL / privilege / maintenance keywords
5. Every table in FROM / JOIN / INSERT INTO / UPDATE / DELETE FROM allowed
6. JOIN targets, types and co-occurring tables
7. ORDER BY columns and column count
8. Column references per verb (SELECT list and qualified refs,
   INSERT column list, UPDATE SET targets)

After execution the result is truncated to max_result_rows. Store failures
are logged with detail and re-raised as an opaque QueryExecutionError.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError

from datagate.core.errors import QueryExecutionError, RawQueryRejectedError
from datagate.schemas.descriptors import ALL_COLUMNS, RawQueryWhitelist
from datagate.services.transaction_runner import extract_error_code

logger = logging.getLogger(__name__)


QueryParams = Union[Sequence[Any], Dict[str, Any], None]
RawExecutor = Callable[[str, QueryParams], Awaitable["RawQueryResult"]]

_IDENT = r"[a-z_][a-z0-9_]*"

# Keywords that may follow a table name and must not be taken as an alias
_CLAUSE_KEYWORDS = frozenset({
    "where", "join", "inner", "left", "right", "full", "cross", "outer",
    "on", "using", "group", "order", "having", "limit", "offset", "union",
    "intersect", "except", "set", "values", "returning", "select", "natural",
    "window", "fetch", "for",
})

# Statement kinds the guard never lets through, whatever the whitelist says
_FORBIDDEN_KEYWORDS = (
    "drop", "truncate", "alter", "create", "grant", "revoke", "vacuum",
    "reindex", "call", "attach", "detach", "pragma", "copy",
)
_FORBIDDEN_RE = re.compile(r"\b(" + "|".join(_FORBIDDEN_KEYWORDS) + r")\b")

_LITERAL_PATTERNS = (
    re.compile(r"'[^']*'"),
    re.compile(r'"[^"]*"'),
    re.compile(r"\b\d+(\.\d+)?\b"),
    re.compile(r"\bnull\b", re.IGNORECASE),
)
_PLACEHOLDER_RE = re.compile(r"\?|\$\d+|(?<![:\w]):[a-z_][a-z0-9_]*", re.IGNORECASE)

_TABLE_REF_RE = re.compile(
    rf"\s*({_IDENT})(?:\s+(?:as\s+)?({_IDENT}))?"
)
_FROM_RE = re.compile(r"\bfrom\s+")
_JOIN_RE = re.compile(
    rf"\b(?:(inner|left|right|full|cross)\s+(?:outer\s+)?)?join\s+({_IDENT})(?:\s+(?:as\s+)?({_IDENT}))?"
)
_INSERT_RE = re.compile(rf"\binsert\s+(?:or\s+\w+\s+)?into\s+({_IDENT})")
_UPDATE_RE = re.compile(rf"^update\s+(?:or\s+\w+\s+)?({_IDENT})(?:\s+(?:as\s+)?({_IDENT}))?")
_DELETE_RE = re.compile(rf"\bdelete\s+from\s+({_IDENT})")
_QUOTED_IDENT_RE = re.compile(r"[`\"\[]")
_STRING_LITERAL_RE = re.compile(r"'(?:[^']|'')*'")
_LIST_ITEM_START_RE = re.compile(rf"\s*(?:{_IDENT}|\()")
_QUALIFIED_REF_RE = re.compile(rf"\b({_IDENT})\.({_IDENT}|\*)")
_ALIAS_AS_TABLE_RE = re.compile(rf"\b({_IDENT})\s+as\s+({_IDENT})\.")
_ORDER_BY_RE = re.compile(r"\border\s+by\s+(.+?)(?=\blimit\b|\boffset\b|\bfetch\b|\)|$)", re.DOTALL)
_SORT_ITEM_RE = re.compile(
    rf"^({_IDENT})(?:\.({_IDENT}))?(?:\s+(?:asc|desc))?(?:\s+nulls\s+(?:first|last))?$"
)

# Words that may appear bare inside a SELECT list without being columns
_SELECT_WORDS = frozenset({
    "distinct", "all", "as", "case", "when", "then", "else", "end", "and",
    "or", "not", "is", "in", "like", "ilike", "between", "null", "true",
    "false", "asc", "desc", "over", "partition", "by", "filter", "where",
})


@dataclass
class RawQueryResult:
    """
    Rows returned by a raw query.

    Attributes:
        rows: Result rows as dictionaries
        row_count: Rows affected (writes) or returned before truncation
        truncated: True when rows were cut to max_result_rows
    """
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    truncated: bool = False


@dataclass
class QueryShape:
    """What the guard recognised in an accepted query."""
    operation: str
    tables: List[str]
    aliases: Dict[str, str]

    @property
    def is_write(self) -> bool:
        return self.operation != "SELECT"


def _reject(message: str) -> RawQueryRejectedError:
    return RawQueryRejectedError(message)


def _split_top_level(text: str) -> List[str]:
    """Split on commas that are not inside parentheses."""
    parts: List[str] = []
    depth = 0
    current: List[str] = []
    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == "," and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
    parts.append("".join(current))
    return [part.strip() for part in parts if part.strip()]


class RawQueryGuard:
    """
    Checks raw queries against a RawQueryWhitelist and runs accepted ones.

    Example:
        >>> guard = RawQueryGuard(whitelist, entity="product")
        >>> guard.check("SELECT products.id FROM products WHERE products.price > ?")
        QueryShape(operation='SELECT', tables=['products'], aliases={...})
    """

    def __init__(self, whitelist: RawQueryWhitelist, entity: Optional[str] = None):
        self.whitelist = whitelist
        self.entity = entity

    # ========================
    # Public API
    # ========================

    def check(self, query: Any) -> QueryShape:
        """
        Validate a query without executing it.

        Raises:
            RawQueryRejectedError: First rule the query violates
        """
        try:
            return self._check(query)
        except RawQueryRejectedError as exc:
            logger.warning(
                "Raw query rejected",
                extra={"entity": self.entity, "reason": exc.message},
            )
            raise

    async def execute(
        self,
        query: str,
        params: QueryParams,
        executor: RawExecutor,
    ) -> RawQueryResult:
        """
        Check ``query`` and, if accepted, run it through ``executor``.

        Args:
            query: Query text with placeholders
            params: Positional (list) or named (dict) bind values
            executor: Coroutine function running the query against the store

        Returns:
            Result rows, truncated to the whitelist's max_result_rows

        Raises:
            RawQueryRejectedError: Query violates the whitelist
            QueryExecutionError: Store failure (details are only logged)
        """
        if params is not None and not isinstance(params, (list, tuple, dict)):
            raise _reject("Values must be an array or an object")

        shape = self.check(query)

        logger.info(
            "Raw query accepted",
            extra={
                "entity": self.entity,
                "operation": shape.operation,
                "tables": shape.tables,
            },
        )

        try:
            result = await executor(query, params)
        except SQLAlchemyError as exc:
            code = extract_error_code(exc)
            logger.error(
                "Raw query failed",
                extra={
                    "entity": self.entity,
                    "operation": shape.operation,
                    "error": str(exc),
                    "code": code,
                },
            )
            raise QueryExecutionError(code=code) from exc

        limit = self.whitelist.max_result_rows
        if limit is not None and len(result.rows) > limit:
            result.rows = result.rows[:limit]
            result.truncated = True
        return result

    # ========================
    # Checks
    # ========================

    def _check(self, query: Any) -> QueryShape:
        whitelist = self.whitelist

        if not whitelist.enabled:
            raise _reject("Raw queries are not enabled for this entity")

        if not isinstance(query, str) or not query.strip():
            raise _reject("Query must be a non-empty string")

        if len(query) > whitelist.max_query_length:
            raise _reject(
                f"Query exceeds maximum allowed length ({whitelist.max_query_length})"
            )

        text = query.strip().rstrip(";").strip()
        if ";" in text:
            raise _reject("Multiple statements are not allowed")
        if "--" in text or "/*" in text:
            raise _reject("SQL comments are not allowed")

        if whitelist.parameterized_only:
            self._check_parameterized(text)

        lowered = re.sub(r"\s+", " ", text.lower())
        if _QUOTED_IDENT_RE.search(_STRING_LITERAL_RE.sub("''", lowered)):
            raise _reject("Quoted identifiers are not allowed")

        operation = lowered.split(" ", 1)[0].upper()
        if operation not in whitelist.allowed_operations:
            raise _reject(f"Disallowed SQL operation: {operation.lower()}")

        forbidden = _FORBIDDEN_RE.search(lowered)
        if forbidden:
            raise _reject(f"Disallowed SQL keyword: {forbidden.group(1)}")

        tables, aliases = self._extract_tables(lowered)
        if operation != "SELECT" and not self._write_target(operation, lowered):
            raise _reject(f"Could not determine the target table of {operation}")
        for table in tables:
            if table not in whitelist.tables:
                raise _reject(f"Disallowed table: {table}")

        self._check_joins(lowered, tables)
        self._check_sorting(lowered, tables, aliases)

        if operation == "SELECT":
            self._check_select(lowered, tables, aliases)
        elif operation == "INSERT":
            self._check_insert(lowered)
        elif operation == "UPDATE":
            self._check_update(lowered)

        return QueryShape(operation=operation, tables=tables, aliases=aliases)

    @staticmethod
    def _check_parameterized(text: str) -> None:
        stripped = _PLACEHOLDER_RE.sub("", text)
        for pattern in _LITERAL_PATTERNS:
            if pattern.search(stripped):
                raise _reject(
                    "Only parameterized queries are allowed. "
                    "Use placeholders for values."
                )

    @staticmethod
    def _extract_tables(query: str) -> Tuple[List[str], Dict[str, str]]:
        """
        Collect referenced tables and the alias -> table map.

        FROM clauses may list several comma-separated tables.
        """
        tables: List[str] = []
        aliases: Dict[str, str] = {}

        def add(table: str, alias: Optional[str]) -> None:
            if table not in tables:
                tables.append(table)
            aliases[table] = table
            if alias and alias not in _CLAUSE_KEYWORDS:
                aliases[alias] = table

        for match in _FROM_RE.finditer(query):
            position = match.end()
            while True:
                ref = _TABLE_REF_RE.match(query, position)
                if ref is None or ref.group(1) in _CLAUSE_KEYWORDS:
                    break
                alias = ref.group(2)
                if alias in _CLAUSE_KEYWORDS:
                    # Only the table name belongs to the reference
                    add(ref.group(1), None)
                    position = ref.start(2)
                else:
                    add(ref.group(1), alias)
                    position = ref.end()
                comma = re.compile(r"\s*,").match(query, position)
                if comma is None:
                    break
                position = comma.end()
                if _LIST_ITEM_START_RE.match(query, position) is None:
                    raise _reject("Unsupported table reference in FROM list")

        for match in _JOIN_RE.finditer(query):
            add(match.group(2), match.group(3))

        for match in _INSERT_RE.finditer(query):
            add(match.group(1), None)

        update = _UPDATE_RE.match(query)
        if update:
            add(update.group(1), update.group(2))

        for match in _DELETE_RE.finditer(query):
            add(match.group(1), None)

        return tables, aliases

    @staticmethod
    def _write_target(operation: str, query: str) -> Optional[str]:
        """Table an INSERT, UPDATE or DELETE writes to, if recognised."""
        if operation == "INSERT":
            match = _INSERT_RE.search(query)
        elif operation == "UPDATE":
            match = _UPDATE_RE.match(query)
        elif operation == "DELETE":
            match = _DELETE_RE.search(query)
        else:
            match = None
        return match.group(1) if match else None

    def _check_joins(self, query: str, tables: List[str]) -> None:
        joins = list(_JOIN_RE.finditer(query))
        if not joins:
            return
        if not self.whitelist.joins_enabled:
            raise _reject("JOIN is not allowed")

        for match in joins:
            join_type = match.group(1) or "inner"
            target = match.group(2)
            config = self.whitelist.join_config(target)

            if config is None or not config.allowed:
                raise _reject(f"JOIN not allowed with table: {target}")

            if config.types is not None and join_type not in config.types:
                raise _reject(
                    f"JOIN type '{join_type}' not allowed for table: {target}"
                )

            if config.tables:
                partners = [t for t in tables if t != target and t in config.tables]
                if not partners:
                    raise _reject(
                        f"Table {target} cannot be joined with the specified tables"
                    )

    def _check_sorting(self, query: str, tables: List[str], aliases: Dict[str, str]) -> None:
        match = _ORDER_BY_RE.search(query)
        if match is None:
            return
        if not self.whitelist.sorting_enabled:
            raise _reject("ORDER BY is not allowed")

        primary = tables[0] if tables else None
        items = _split_top_level(match.group(1))

        counts: Dict[str, int] = {}
        for item in items:
            parsed = _SORT_ITEM_RE.match(item.strip())
            if parsed is None:
                raise _reject(f"Unsupported ORDER BY expression: {item.strip()}")

            if parsed.group(2):
                table = aliases.get(parsed.group(1))
                column = parsed.group(2)
                if table is None:
                    raise _reject(f"Unknown table reference: {parsed.group(1)}")
            else:
                table = primary
                column = parsed.group(1)

            config = self.whitelist.sort_config(table) if table else None
            if config is None or not config.allowed:
                raise _reject(f"Sorting not allowed for table: {table}")

            counts[table] = counts.get(table, 0) + 1
            if config.max_columns is not None and counts[table] > config.max_columns:
                raise _reject(
                    f"Exceeded maximum sort columns limit: {config.max_columns}"
                )

            if not config.permits(column):
                raise _reject(f"Sorting not allowed on column: {column}")

            if not self.whitelist.permits_column(table, column):
                raise _reject(f"Column not in whitelist: {table}.{column}")

    def _check_select(self, query: str, tables: List[str], aliases: Dict[str, str]) -> None:
        for match in _QUALIFIED_REF_RE.finditer(query):
            qualifier, column = match.group(1), match.group(2)
            table = aliases.get(qualifier)
            if table is None:
                raise _reject(f"Unknown table reference: {qualifier}")
            self._require_column(table, column)

        for match in _ALIAS_AS_TABLE_RE.finditer(query):
            column, qualifier = match.group(1), match.group(2)
            table = aliases.get(qualifier)
            if table is not None:
                self._require_column(table, column)

        select_list = re.match(r"^select\s+(.*?)\s+from\s", query + " ", re.DOTALL)
        if select_list is None:
            return
        for name in self._bare_select_identifiers(select_list.group(1)):
            if name == "*":
                if not any(self.whitelist.columns_for(t) == ALL_COLUMNS for t in tables):
                    raise _reject("Selecting all columns is not allowed")
                continue
            if not any(self.whitelist.permits_column(t, name) for t in tables):
                raise _reject(f"Disallowed column for table {tables[0] if tables else '?'}: {name}")

    @staticmethod
    def _bare_select_identifiers(select_list: str) -> List[str]:
        """Unqualified column names (and bare ``*``) in a SELECT list."""
        names: List[str] = []
        for item in _split_top_level(select_list):
            # Drop a trailing alias
            item = re.sub(rf"\s+as\s+{_IDENT}$", "", item)
            if item == "*":
                names.append("*")
                continue
            # count(*) and friends
            item = re.sub(r"\(\s*\*\s*\)", "()", item)
            for match in re.finditer(rf"(?<![\w.])({_IDENT})(?![\w.(])", item):
                word = match.group(1)
                if word not in _SELECT_WORDS:
                    names.append(word)
        return names

    def _check_insert(self, query: str) -> None:
        match = _INSERT_RE.search(query)
        if match is None:
            return
        table = match.group(1)
        columns = re.match(
            rf"\s*\(([^)]*)\)\s*(values|select)\b", query[match.end():]
        )
        if columns is None:
            if self.whitelist.columns_for(table) != ALL_COLUMNS:
                raise _reject("INSERT must name its columns explicitly")
            return
        for column in (c.strip() for c in columns.group(1).split(",")):
            if not self.whitelist.permits_column(table, column):
                raise _reject(f"Disallowed column for INSERT: {column}")

    def _check_update(self, query: str) -> None:
        match = _UPDATE_RE.match(query)
        if match is None:
            return
        table = match.group(1)
        set_clause = re.search(
            r"\bset\s+(.*?)(?=\bwhere\b|\breturning\b|\bfrom\b|$)", query, re.DOTALL
        )
        if set_clause is None:
            raise _reject("UPDATE without SET clause")
        for assignment in _split_top_level(set_clause.group(1)):
            target = re.match(rf"^(?:{_IDENT}\.)?({_IDENT})\s*=", assignment)
            if target is None:
                raise _reject(f"Unsupported SET assignment: {assignment}")
            column = target.group(1)
            if not self.whitelist.permits_column(table, column):
                raise _reject(f"Disallowed column for UPDATE: {column}")

    def _require_column(self, table: str, column: str) -> None:
        if column == "*":
            if self.whitelist.columns_for(table) != ALL_COLUMNS:
                raise _reject(f"Selecting all columns of {table} is not allowed")
            return
        if not self.whitelist.permits_column(table, column):
            raise _reject(f"Disallowed column for table {table}: {column}")


async def guard_raw_query(
    query: str,
    params: QueryParams,
    whitelist: RawQueryWhitelist,
    executor: RawExecutor,
    entity: Optional[str] = None,
) -> RawQueryResult:
    """Check and execute a raw query with a one-off guard."""
    return await RawQueryGuard(whitelist, entity=entity).execute(query, params, executor)
