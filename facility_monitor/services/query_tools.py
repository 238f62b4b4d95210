"""
Analytical query helpers for Facility Monitor.

This module provides:
1. Builders for aggregate, time-series, correlation, anomaly and statistics queries
2. Async runners that execute them and reshape the rows
3. Schema introspection through information_schema

Identifiers go through the query builder's validator; values are bound.
"""
import itertools
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union

from facility_monitor.schemas.queries import MetricSpec, OrderSpec
from facility_monitor.services.database import fetch_all
from facility_monitor.services.error_handler import InvalidQuery
from facility_monitor.services.query_builder import (
    IDENTIFIER_PATTERN, BuiltQuery, QueryParams, build_aggregate, build_conditions,
    metric_sql, quote_identifier, validate_table_name,
)

logger = logging.getLogger(__name__)

TIME_INTERVALS = ("hour", "day", "week", "month", "year")

QUARTILES = (("q1", 0.25), ("median", 0.5), ("q3", 0.75))


def _where(clauses: List[str]) -> str:
    return f" WHERE {' AND '.join(clauses)}" if clauses else ""


def aggregate_query(
    table: str,
    metrics: Sequence[Union[MetricSpec, dict]],
    dimensions: Optional[List[str]] = None,
    filters: Optional[Dict[str, Any]] = None,
    order_by: Optional[Sequence[Union[OrderSpec, str, dict]]] = None,
    limit: Optional[int] = None,
) -> BuiltQuery:
    return build_aggregate(table, metrics, dimensions, filters, order_by=order_by, limit=limit)


def time_series_query(
    table: str,
    time_field: str,
    interval: str,
    metrics: Sequence[Union[MetricSpec, dict]],
    filters: Optional[Dict[str, Any]] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Optional[int] = None,
    order: str = "asc",
) -> BuiltQuery:
    """
    Bucket a table by DATE_TRUNC(interval, time_field) and aggregate metrics per bucket.

    Args:
        table: Table name
        time_field: Timestamp column
        interval: One of hour, day, week, month, year
        metrics: Aggregates computed per bucket
        filters: Additional where conditions
        start: Inclusive lower bound on time_field
        end: Inclusive upper bound on time_field
        limit: Maximum buckets
        order: asc or desc by bucket

    Returns:
        BuiltQuery whose rows carry time_period plus one column per metric
    """
    if interval not in TIME_INTERVALS:
        raise InvalidQuery(f"Invalid interval: {interval}. Must be one of {', '.join(TIME_INTERVALS)}")
    if order not in ("asc", "desc"):
        raise InvalidQuery(f"Invalid order: {order}")
    if not metrics:
        raise InvalidQuery("At least one metric is required")

    params = QueryParams()
    table_sql = validate_table_name(table)
    time_sql = quote_identifier(time_field)
    clauses = build_conditions(filters, params)
    clauses += build_conditions({time_field: {"gte": start, "lte": end}}, params)

    select_list = [f"DATE_TRUNC('{interval}', {time_sql}) AS time_period"]
    select_list += [metric_sql(m) for m in metrics]
    sql = f"SELECT {', '.join(select_list)} FROM {table_sql}{_where(clauses)}"
    sql += f" GROUP BY time_period ORDER BY time_period {order.upper()}"
    if limit is not None:
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
            raise InvalidQuery("limit must be a non-negative integer")
        sql += f" LIMIT {params.add(limit)}"
    return BuiltQuery(sql, params.values)


def correlation_query(table: str, fields: Sequence[str], filters: Optional[Dict[str, Any]] = None) -> BuiltQuery:
    """One CORR() column per field pair, named "<a>__<b>"."""
    if len(fields) < 2:
        raise InvalidQuery("At least two fields are required to calculate correlations")
    params = QueryParams()
    table_sql = validate_table_name(table)
    pairs = []
    for first, second in itertools.combinations(fields, 2):
        pairs.append(f'CORR({quote_identifier(first)}, {quote_identifier(second)}) AS "{first}__{second}"')
    clauses = build_conditions(filters, params)
    return BuiltQuery(f"SELECT {', '.join(pairs)} FROM {table_sql}{_where(clauses)}", params.values)


def anomaly_query(
    table: str,
    time_field: str,
    value_field: str,
    threshold: float = 2.0,
    filters: Optional[Dict[str, Any]] = None,
    limit: int = 100,
) -> BuiltQuery:
    """Z-score every row of value_field against the filtered population."""
    if threshold <= 0:
        raise InvalidQuery("threshold must be positive")
    params = QueryParams()
    table_sql = validate_table_name(table)
    time_sql = quote_identifier(time_field)
    value_sql = quote_identifier(value_field)
    where = _where(build_conditions(filters, params))
    z_score = f"({value_sql} - stats.mean_value) / NULLIF(stats.stddev_value, 0)"
    threshold_param = params.add(float(threshold))
    sql = (
        f"WITH stats AS (SELECT AVG({value_sql}) AS mean_value, STDDEV({value_sql}) AS stddev_value "
        f"FROM {table_sql}{where}) "
        f"SELECT {time_sql} AS time_value, {value_sql} AS value, stats.mean_value, stats.stddev_value, "
        f"{z_score} AS z_score, COALESCE(ABS({z_score}) > {threshold_param}, FALSE) AS is_anomaly "
        f"FROM {table_sql} CROSS JOIN stats{where} "
        f"ORDER BY ABS({z_score}) DESC NULLS LAST LIMIT {params.add(limit)}"
    )
    return BuiltQuery(sql, params.values)


def statistics_query(table: str, fields: Sequence[str], filters: Optional[Dict[str, Any]] = None) -> BuiltQuery:
    """Descriptive statistics per field, columns named "<field>__<stat>"."""
    if not fields:
        raise InvalidQuery("At least one field is required")
    params = QueryParams()
    table_sql = validate_table_name(table)
    select_list = []
    for field in fields:
        column = quote_identifier(field)
        select_list += [
            f'COUNT({column}) AS "{field}__count"',
            f'AVG({column}) AS "{field}__mean"',
            f'STDDEV({column}) AS "{field}__stddev"',
            f'MIN({column}) AS "{field}__min"',
            f'MAX({column}) AS "{field}__max"',
        ]
        for name, fraction in QUARTILES:
            select_list.append(
                f'PERCENTILE_CONT({fraction}) WITHIN GROUP (ORDER BY {column}) AS "{field}__{name}"'
            )
    clauses = build_conditions(filters, params)
    return BuiltQuery(f"SELECT {', '.join(select_list)} FROM {table_sql}{_where(clauses)}", params.values)


async def aggregate(conn, table: str, metrics, dimensions=None, filters=None, order_by=None, limit=None) -> List[Dict[str, Any]]:
    built = aggregate_query(table, metrics, dimensions, filters, order_by, limit)
    return await fetch_all(conn, built.sql, built.params)


async def time_series(conn, table: str, time_field: str, interval: str, metrics, **options) -> List[Dict[str, Any]]:
    built = time_series_query(table, time_field, interval, metrics, **options)
    return await fetch_all(conn, built.sql, built.params)


async def correlations(conn, table: str, fields: Sequence[str], filters=None) -> List[Dict[str, Any]]:
    """Return [{field1, field2, correlation}] for every pair with a defined coefficient."""
    built = correlation_query(table, fields, filters)
    rows = await fetch_all(conn, built.sql, built.params)
    if not rows:
        return []
    results = []
    for first, second in itertools.combinations(fields, 2):
        value = rows[0].get(f"{first}__{second}")
        if value is None:
            continue
        results.append({"field1": first, "field2": second, "correlation": float(value)})
    return results


async def anomalies(conn, table: str, time_field: str, value_field: str, threshold: float = 2.0,
                    filters=None, limit: int = 100) -> List[Dict[str, Any]]:
    built = anomaly_query(table, time_field, value_field, threshold, filters, limit)
    return await fetch_all(conn, built.sql, built.params)


async def statistics(conn, table: str, fields: Sequence[str], filters=None) -> Dict[str, Dict[str, Optional[float]]]:
    """Return {field: {count, mean, stddev, min, max, q1, median, q3}}."""
    built = statistics_query(table, fields, filters)
    rows = await fetch_all(conn, built.sql, built.params)
    row = rows[0] if rows else {}
    stats = {}
    for field in fields:
        values = {}
        for name in ("count", "mean", "stddev", "min", "max") + tuple(q for q, _ in QUARTILES):
            value = row.get(f"{field}__{name}")
            values[name] = float(value) if value is not None else None
        stats[field] = values
    return stats


def _check_identifier(name: str) -> None:
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
        raise InvalidQuery(f"Invalid table name: {name}")


LIST_TABLES_SQL = (
    "SELECT table_name FROM information_schema.tables "
    "WHERE table_schema = 'public' AND table_type = 'BASE TABLE' ORDER BY table_name"
)

COLUMNS_SQL = (
    "SELECT column_name, data_type, is_nullable, column_default "
    "FROM information_schema.columns "
    "WHERE table_schema = 'public' AND table_name = :table ORDER BY ordinal_position"
)

PRIMARY_KEY_SQL = (
    "SELECT kcu.column_name FROM information_schema.table_constraints tc "
    "JOIN information_schema.key_column_usage kcu "
    "ON tc.constraint_name = kcu.constraint_name AND tc.table_schema = kcu.table_schema "
    "WHERE tc.constraint_type = 'PRIMARY KEY' AND tc.table_schema = 'public' AND tc.table_name = :table"
)

FOREIGN_KEYS_SQL = (
    "SELECT kcu.table_name AS source_table, kcu.column_name AS source_column, "
    "ccu.table_name AS target_table, ccu.column_name AS target_column, tc.constraint_name "
    "FROM information_schema.table_constraints tc "
    "JOIN information_schema.key_column_usage kcu "
    "ON tc.constraint_name = kcu.constraint_name AND tc.table_schema = kcu.table_schema "
    "JOIN information_schema.constraint_column_usage ccu "
    "ON ccu.constraint_name = tc.constraint_name AND ccu.table_schema = tc.table_schema "
    "WHERE tc.constraint_type = 'FOREIGN KEY' AND tc.table_schema = 'public' "
    "AND (kcu.table_name = :table OR ccu.table_name = :table)"
)


async def list_tables(conn) -> List[str]:
    rows = await fetch_all(conn, LIST_TABLES_SQL)
    return [row["table_name"] for row in rows]


async def table_relationships(conn, table: str) -> Dict[str, List[Dict[str, Any]]]:
    """Split foreign keys touching a table into outgoing and incoming references."""
    _check_identifier(table)
    rows = await fetch_all(conn, FOREIGN_KEYS_SQL, {"table": table})
    outgoing = [r for r in rows if r["source_table"] == table]
    incoming = [r for r in rows if r["target_table"] == table and r["source_table"] != table]
    return {"outgoing": outgoing, "incoming": incoming}


async def table_schema(conn, table: str) -> Dict[str, Any]:
    _check_identifier(table)
    columns = await fetch_all(conn, COLUMNS_SQL, {"table": table})
    primary_keys = await fetch_all(conn, PRIMARY_KEY_SQL, {"table": table})
    relationships = await table_relationships(conn, table)
    return {
        "table": table,
        "columns": columns,
        "primary_key": [row["column_name"] for row in primary_keys],
        "foreign_keys": relationships["outgoing"],
    }
