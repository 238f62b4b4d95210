"""
Database operations for Facility Monitor.

This module provides:
1. The async engine and a per-request connection dependency
2. Executing parameterized SQL and mapping rows to dicts
3. Exporting large result sets to CSV
"""
import os
import csv
import uuid
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Result
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, create_async_engine

from facility_monitor.config import DATABASE_URL
from facility_monitor.services.error_handler import ExecutionError

logger = logging.getLogger(__name__)

STATIC_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))), "static")

# Rows returned inline before a result is exported to CSV
INLINE_ROW_LIMIT = 100

engine = create_async_engine(DATABASE_URL, pool_pre_ping=True)


async def get_connection() -> AsyncIterator[AsyncConnection]:
    """FastAPI dependency yielding a connection inside a transaction."""
    async with engine.begin() as conn:
        yield conn


async def execute(conn, sql: str, params: Optional[Dict[str, Any]] = None) -> Result:
    """
    Execute a parameterized statement.

    Args:
        conn: Async database connection
        sql: SQL text using named :param binds
        params: Bind values

    Returns:
        The SQLAlchemy result

    Raises:
        ExecutionError: If the database rejects the statement
    """
    logger.debug("Executing SQL: %s", sql)
    try:
        return await conn.execute(sa.text(sql), params or {})
    except SQLAlchemyError as e:
        logger.error("Query execution failed: %s", e)
        raise ExecutionError(f"Query execution failed: {str(e.__cause__ or e)}", context=sql) from e


async def fetch_all(conn, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    """Execute a query and return every row as a dict."""
    result = await execute(conn, sql, params)
    if not result.returns_rows:
        return []
    return [dict(row) for row in result.mappings()]


async def fetch_one(conn, sql: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """Execute a query and return the first row, or None."""
    result = await execute(conn, sql, params)
    if not result.returns_rows:
        return None
    row = result.mappings().first()
    return dict(row) if row is not None else None


def handle_large_result(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Export large result sets to CSV files and return download URL.

    Args:
        rows: Query result rows

    Returns:
        Dict with download URL and row count
    """
    os.makedirs(STATIC_DIR, exist_ok=True)
    filename = f"{uuid.uuid4()}.csv"
    filepath = os.path.join(STATIC_DIR, filename)

    with open(filepath, 'w', newline='') as f:
        if rows:
            writer = csv.DictWriter(f, fieldnames=rows[0].keys())
            writer.writeheader()
            writer.writerows(rows)
        else:
            writer = csv.writer(f)
            writer.writerow(["No results"])

    logger.info("Exported %d rows to %s", len(rows), filename)
    return {
        "download_url": f"/static/{filename}",
        "row_count": len(rows)
    }
