"""
Role-aware SQL query builder for Facility Monitor.

This module provides functionality for:
1. Building parameterized SELECT/INSERT/UPDATE/DELETE/aggregate statements
2. Composing joins, where-operators, ordering and paging
3. Executing the statements after an RBAC check (DbUtils)

Values are always sent as bind parameters; only validated, quoted
identifiers are interpolated into the SQL text.
"""
import re
import logging
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Union

from pydantic import ValidationError

from facility_monitor.models import known_tables
from facility_monitor.permissions import ADMIN_ROLE, check_table_permission, normalize_role
from facility_monitor.schemas.queries import JoinSpec, MetricSpec, OrderSpec
from facility_monitor.services.database import execute, fetch_all, fetch_one
from facility_monitor.services.error_handler import InvalidQuery, PermissionDenied

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')

COMPARISON_OPERATORS = {
    "eq": "=",
    "ne": "<>",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "like": "LIKE",
    "ilike": "ILIKE",
}
SET_OPERATORS = {"in", "not_in"}
SPECIAL_OPERATORS = {"is_null", "between"}
OPERATORS = set(COMPARISON_OPERATORS) | SET_OPERATORS | SPECIAL_OPERATORS

JOIN_KINDS = {
    "inner": "INNER JOIN",
    "left": "LEFT JOIN",
    "right": "RIGHT JOIN",
    "full": "FULL OUTER JOIN",
}

AGGREGATE_FUNCTIONS = {"count", "sum", "avg", "min", "max"}


class BuiltQuery(NamedTuple):
    sql: str
    params: Dict[str, Any]


class QueryParams:
    """Collects bind values and hands out sequential placeholder names."""

    def __init__(self):
        self.values: Dict[str, Any] = {}

    def add(self, value: Any) -> str:
        name = f"p{len(self.values) + 1}"
        self.values[name] = value
        return f":{name}"


def _coerce(model, raw):
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise InvalidQuery(f"Invalid {model.__name__}: {e.errors()[0].get('msg')}")


def quote_identifier(name: str) -> str:
    """
    Validate and double-quote a column or table reference.

    Accepts `column`, `table.column`, `table.*` and `*`.

    Raises:
        InvalidQuery: If any part is not a plain identifier
    """
    if name == "*":
        return "*"
    parts = str(name).split(".")
    if len(parts) > 2:
        raise InvalidQuery(f"Invalid identifier: {name}")
    quoted = []
    for index, part in enumerate(parts):
        if part == "*" and index == 1:
            quoted.append("*")
            continue
        if not IDENTIFIER_PATTERN.match(part):
            raise InvalidQuery(f"Invalid identifier: {name}")
        quoted.append(f'"{part}"')
    return ".".join(quoted)


def validate_table_name(table: str, tables: Optional[Iterable[str]] = None) -> str:
    """Check a table name is well-formed and exists in the schema; return it quoted."""
    if not isinstance(table, str) or not IDENTIFIER_PATTERN.match(table):
        raise InvalidQuery(f"Invalid table name: {table}")
    if table not in set(tables if tables is not None else known_tables()):
        raise InvalidQuery(f"Unknown table: {table}")
    return f'"{table}"'


def _check_count(value: Optional[int], label: str) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidQuery(f"{label} must be a non-negative integer")


def _operator_clause(column: str, operator: str, value: Any, params: QueryParams) -> Optional[str]:
    if operator not in OPERATORS:
        raise InvalidQuery(f"Unsupported operator: {operator}")
    if operator in COMPARISON_OPERATORS:
        if value is None:
            return None
        return f"{column} {COMPARISON_OPERATORS[operator]} {params.add(value)}"
    if operator in SET_OPERATORS:
        values = list(value) if isinstance(value, (list, tuple, set)) else [value]
        if not values:
            # An empty IN matches nothing; an empty NOT IN excludes nothing
            return "FALSE" if operator == "in" else None
        placeholders = ", ".join(params.add(v) for v in values)
        keyword = "IN" if operator == "in" else "NOT IN"
        return f"{column} {keyword} ({placeholders})"
    if operator == "is_null":
        return f"{column} IS NULL" if value else f"{column} IS NOT NULL"
    # between
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise InvalidQuery(f"between on {column} needs exactly two values")
    return f"{column} BETWEEN {params.add(value[0])} AND {params.add(value[1])}"


def build_conditions(where: Optional[Dict[str, Any]], params: QueryParams) -> List[str]:
    """
    Translate a where mapping into SQL predicates.

    Scalars compare for equality, sequences become IN lists, and dicts map
    operator names to operands. None values are skipped.
    """
    clauses = []
    for key, value in (where or {}).items():
        if value is None:
            continue
        column = quote_identifier(key)
        if isinstance(value, dict):
            if not value:
                raise InvalidQuery(f"Empty operator set for {key}")
            for operator, operand in value.items():
                clause = _operator_clause(column, operator, operand, params)
                if clause:
                    clauses.append(clause)
        elif isinstance(value, (list, tuple, set)):
            clauses.append(_operator_clause(column, "in", value, params))
        else:
            clauses.append(_operator_clause(column, "eq", value, params))
    return clauses


def where_sql(where: Optional[Dict[str, Any]], params: QueryParams) -> str:
    clauses = build_conditions(where, params)
    return f" WHERE {' AND '.join(clauses)}" if clauses else ""


def _join_sql(base_table: str, joins: Optional[Sequence[Union[JoinSpec, dict]]], tables) -> str:
    parts = []
    for raw in joins or []:
        join = raw if isinstance(raw, JoinSpec) else _coerce(JoinSpec, raw)
        table_sql = validate_table_name(join.table, tables)
        if not join.on:
            raise InvalidQuery(f"Join on {join.table} needs at least one column pair")
        joined_name = join.alias or join.table
        if join.alias:
            table_sql = f"{table_sql} AS {quote_identifier(join.alias)}"
        conditions = []
        for left, right in join.on.items():
            left_ref = left if "." in left else f"{base_table}.{left}"
            right_ref = right if "." in right else f"{joined_name}.{right}"
            conditions.append(f"{quote_identifier(left_ref)} = {quote_identifier(right_ref)}")
        parts.append(f" {JOIN_KINDS[join.kind]} {table_sql} ON {' AND '.join(conditions)}")
    return "".join(parts)


def order_sql(order_by: Optional[Sequence[Union[OrderSpec, str, dict]]]) -> str:
    if not order_by:
        return ""
    terms = []
    for raw in order_by:
        if isinstance(raw, str):
            spec = OrderSpec(column=raw)
        elif isinstance(raw, OrderSpec):
            spec = raw
        else:
            spec = _coerce(OrderSpec, raw)
        terms.append(f"{quote_identifier(spec.column)} {spec.direction.upper()}")
    return f" ORDER BY {', '.join(terms)}"


def _paging_sql(limit: Optional[int], offset: Optional[int], params: QueryParams) -> str:
    _check_count(limit, "limit")
    _check_count(offset, "offset")
    sql = ""
    if limit is not None:
        sql += f" LIMIT {params.add(limit)}"
    if offset is not None:
        sql += f" OFFSET {params.add(offset)}"
    return sql


def joined_tables(joins: Optional[Sequence[Union[JoinSpec, dict]]]) -> List[str]:
    return [
        (j.table if isinstance(j, JoinSpec) else _coerce(JoinSpec, j).table)
        for j in (joins or [])
    ]


def build_select(
    table: str,
    where: Optional[Dict[str, Any]] = None,
    columns: Optional[List[str]] = None,
    joins: Optional[Sequence[Union[JoinSpec, dict]]] = None,
    order_by: Optional[Sequence[Union[OrderSpec, str, dict]]] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
    tables: Optional[Iterable[str]] = None,
) -> BuiltQuery:
    """
    Build a parameterized SELECT.

    Args:
        table: Base table
        where: Column filters (see build_conditions)
        columns: Columns to return; defaults to *
        joins: Joins onto other tables
        order_by: Column names or OrderSpec entries
        limit: Maximum rows
        offset: Rows to skip
        tables: Known table names; defaults to the model metadata

    Returns:
        BuiltQuery with SQL text and bind parameters
    """
    params = QueryParams()
    table_sql = validate_table_name(table, tables)
    column_sql = ", ".join(quote_identifier(c) for c in columns) if columns else "*"
    sql = f"SELECT {column_sql} FROM {table_sql}"
    sql += _join_sql(table, joins, tables)
    sql += where_sql(where, params)
    sql += order_sql(order_by)
    sql += _paging_sql(limit, offset, params)
    return BuiltQuery(sql, params.values)


def build_insert(table: str, data: Dict[str, Any], tables: Optional[Iterable[str]] = None) -> BuiltQuery:
    """Build an INSERT ... RETURNING * for a single row."""
    params = QueryParams()
    table_sql = validate_table_name(table, tables)
    values = {k: v for k, v in (data or {}).items() if v is not None}
    if not values:
        raise InvalidQuery("No data provided for insert")
    columns = ", ".join(quote_identifier(k) for k in values)
    placeholders = ", ".join(params.add(v) for v in values.values())
    sql = f"INSERT INTO {table_sql} ({columns}) VALUES ({placeholders}) RETURNING *"
    return BuiltQuery(sql, params.values)


def build_update(
    table: str,
    data: Dict[str, Any],
    where: Dict[str, Any],
    tables: Optional[Iterable[str]] = None,
) -> BuiltQuery:
    """Build an UPDATE ... RETURNING *; refuses to build without a filter."""
    params = QueryParams()
    table_sql = validate_table_name(table, tables)
    if not data:
        raise InvalidQuery("No update data provided")
    assignments = ", ".join(f"{quote_identifier(k)} = {params.add(v)}" for k, v in data.items())
    filter_sql = where_sql(where, params)
    if not filter_sql:
        raise InvalidQuery("Update requires at least one where condition")
    return BuiltQuery(f"UPDATE {table_sql} SET {assignments}{filter_sql} RETURNING *", params.values)


def build_delete(table: str, where: Dict[str, Any], tables: Optional[Iterable[str]] = None) -> BuiltQuery:
    """Build a DELETE; refuses to build without a filter."""
    params = QueryParams()
    table_sql = validate_table_name(table, tables)
    filter_sql = where_sql(where, params)
    if not filter_sql:
        raise InvalidQuery("Delete requires at least one where condition")
    return BuiltQuery(f"DELETE FROM {table_sql}{filter_sql}", params.values)


def metric_sql(metric: Union[MetricSpec, dict]) -> str:
    """Render one aggregate expression with its alias."""
    spec = metric if isinstance(metric, MetricSpec) else _coerce(MetricSpec, metric)
    if spec.function not in AGGREGATE_FUNCTIONS:
        raise InvalidQuery(f"Unsupported aggregate function: {spec.function}")
    if spec.field == "*":
        if spec.function != "count":
            raise InvalidQuery(f"{spec.function.upper()} needs a column, not *")
        field_sql = "*"
        default_alias = "count_all"
    else:
        field_sql = quote_identifier(spec.field)
        default_alias = f"{spec.function}_{spec.field.split('.')[-1]}"
    alias = spec.alias or default_alias
    if not IDENTIFIER_PATTERN.match(alias):
        raise InvalidQuery(f"Invalid alias: {alias}")
    return f'{spec.function.upper()}({field_sql}) AS "{alias}"'


def build_aggregate(
    table: str,
    metrics: Sequence[Union[MetricSpec, dict]],
    dimensions: Optional[List[str]] = None,
    where: Optional[Dict[str, Any]] = None,
    order_by: Optional[Sequence[Union[OrderSpec, str, dict]]] = None,
    limit: Optional[int] = None,
    tables: Optional[Iterable[str]] = None,
) -> BuiltQuery:
    """Build an aggregate SELECT grouped by the given dimensions."""
    if not metrics:
        raise InvalidQuery("At least one metric is required")
    params = QueryParams()
    table_sql = validate_table_name(table, tables)
    dimension_sql = [quote_identifier(d) for d in dimensions or []]
    select_list = dimension_sql + [metric_sql(m) for m in metrics]
    sql = f"SELECT {', '.join(select_list)} FROM {table_sql}"
    sql += where_sql(where, params)
    if dimension_sql:
        sql += f" GROUP BY {', '.join(dimension_sql)}"
    sql += order_sql(order_by)
    sql += _paging_sql(limit, None, params)
    return BuiltQuery(sql, params.values)


class DbUtils:
    """
    Executes builder output on a connection after checking the caller's role.

    Every method checks table permissions before touching the database;
    joined tables need read permission as well.
    """

    def __init__(self, conn, role: str, tables: Optional[Iterable[str]] = None):
        self.conn = conn
        self.role = role
        self.tables = set(tables) if tables is not None else set(known_tables())

    def list_known_tables(self) -> List[str]:
        return sorted(self.tables)

    async def select(self, table: str, where: Optional[Dict[str, Any]] = None, **options) -> List[Dict[str, Any]]:
        check_table_permission(table, self.role, "read")
        for joined in joined_tables(options.get("joins")):
            check_table_permission(joined, self.role, "read")
        built = build_select(table, where, tables=self.tables, **options)
        return await fetch_all(self.conn, built.sql, built.params)

    async def select_one(self, table: str, where: Optional[Dict[str, Any]] = None, **options) -> Optional[Dict[str, Any]]:
        options["limit"] = 1
        rows = await self.select(table, where, **options)
        return rows[0] if rows else None

    async def insert(self, table: str, data: Dict[str, Any]) -> Dict[str, Any]:
        check_table_permission(table, self.role, "write")
        built = build_insert(table, data, tables=self.tables)
        row = await fetch_one(self.conn, built.sql, built.params)
        logger.info("Inserted row into %s as %s", table, self.role)
        return row

    async def update(self, table: str, data: Dict[str, Any], where: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        check_table_permission(table, self.role, "write")
        built = build_update(table, data, where, tables=self.tables)
        return await fetch_one(self.conn, built.sql, built.params)

    async def delete(self, table: str, where: Dict[str, Any]) -> int:
        check_table_permission(table, self.role, "delete")
        built = build_delete(table, where, tables=self.tables)
        result = await execute(self.conn, built.sql, built.params)
        logger.info("Deleted %s rows from %s as %s", result.rowcount, table, self.role)
        return result.rowcount

    async def aggregate(
        self,
        table: str,
        metrics: Sequence[Union[MetricSpec, dict]],
        dimensions: Optional[List[str]] = None,
        where: Optional[Dict[str, Any]] = None,
        **options,
    ) -> List[Dict[str, Any]]:
        check_table_permission(table, self.role, "read")
        built = build_aggregate(table, metrics, dimensions, where, tables=self.tables, **options)
        return await fetch_all(self.conn, built.sql, built.params)

    async def execute_raw(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Run caller-supplied SQL; admin only."""
        if normalize_role(self.role) != ADMIN_ROLE:
            raise PermissionDenied("Only administrators can execute raw SQL")
        return await fetch_all(self.conn, sql, params)
