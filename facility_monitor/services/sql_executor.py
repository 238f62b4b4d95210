"""
Guarded execution of raw SQL for administrators.

Raw statements are only accepted from the admin role; they pass the
guardrails, an optional table allow-list and a row cap before reaching
the database.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from facility_monitor.guardrails import enforce_limit, is_read_only, referenced_tables, validate_sql
from facility_monitor.permissions import ADMIN_ROLE, normalize_role
from facility_monitor.services.database import execute
from facility_monitor.services.error_handler import InvalidQuery, PermissionDenied
from facility_monitor.services import query_tools

logger = logging.getLogger(__name__)


class SqlExecutor:
    def __init__(
        self,
        conn,
        role: str,
        max_rows: int = 100,
        allow_modification: bool = False,
        allow_schema_modification: bool = False,
        allowed_tables: Optional[Iterable[str]] = None,
    ):
        self.conn = conn
        self.role = role
        self.max_rows = max_rows
        self.allow_modification = allow_modification
        self.allow_schema_modification = allow_schema_modification
        self.allowed_tables = set(allowed_tables) if allowed_tables is not None else None

    def is_table_allowed(self, table: str) -> bool:
        return self.allowed_tables is None or table in self.allowed_tables

    def validate(self, sql: str) -> str:
        """
        Check role, guardrails and table allow-list; return the statement to run.

        Raises:
            PermissionDenied: For non-admin callers or tables outside the allow-list
            InvalidQuery: When the guardrails reject the statement
        """
        if normalize_role(self.role) != ADMIN_ROLE:
            raise PermissionDenied("Only administrators can execute SQL queries")

        is_valid, error = validate_sql(
            sql,
            allow_modification=self.allow_modification,
            allow_schema_modification=self.allow_schema_modification,
        )
        if not is_valid:
            raise InvalidQuery(error)

        blocked = [t for t in referenced_tables(sql) if not self.is_table_allowed(t)]
        if blocked:
            raise PermissionDenied(f"Access to table(s) not allowed: {', '.join(blocked)}")

        if is_read_only(sql):
            # One extra row tells a capped result from one that fits exactly
            return enforce_limit(sql, self.max_rows + 1)
        return sql

    async def execute(self, sql: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Execute a statement and return its rows.

        Returns:
            Dict with rows, row_count and whether the cap truncated the result
        """
        statement = self.validate(sql)
        logger.info("Executing SQL for %s: %s", self.role, statement[:200])
        result = await execute(self.conn, statement, params or {})
        if not result.returns_rows:
            return {"rows": [], "row_count": result.rowcount, "truncated": False}
        rows = [dict(row) for row in result.mappings()]
        truncated = is_read_only(sql) and len(rows) > self.max_rows
        if truncated:
            rows = rows[:self.max_rows]
        return {"rows": rows, "row_count": len(rows), "truncated": truncated}

    async def execute_read_only(self, sql: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        read_only = SqlExecutor(
            self.conn,
            self.role,
            max_rows=self.max_rows,
            allowed_tables=self.allowed_tables,
        )
        return await read_only.execute(sql, params)

    async def database_info(self) -> List[Dict[str, Any]]:
        """List visible tables with their column counts."""
        if normalize_role(self.role) != ADMIN_ROLE:
            raise PermissionDenied("Only administrators can inspect the database")
        info = []
        for table in await query_tools.list_tables(self.conn):
            if not self.is_table_allowed(table):
                continue
            schema = await query_tools.table_schema(self.conn, table)
            info.append({"table": table, "column_count": len(schema["columns"])})
        return info
