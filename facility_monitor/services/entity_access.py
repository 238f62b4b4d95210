"""
Entity-level data access for Facility Monitor.

Each operation is checked against the entity permission matrix before the
query builder produces the SQL.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from facility_monitor.permissions import EntityType, PermissionLevel, check_permission
from facility_monitor.services.database import execute, fetch_all, fetch_one
from facility_monitor.services.error_handler import InvalidQuery, NotFound
from facility_monitor.services.query_builder import (
    build_aggregate, build_delete, build_insert, build_select, build_update,
)
from facility_monitor.services.query_tools import time_series_query

logger = logging.getLogger(__name__)

ENTITY_TABLES = {
    EntityType.POWER_DATA: "power_data",
    EntityType.ENVIRONMENTAL_DATA: "environmental_data",
    EntityType.EQUIPMENT: "equipment",
    EntityType.SETTINGS: "settings",
    EntityType.USER: "users",
    EntityType.AGENT_CONVERSATION: "langchain_agent_conversations",
    EntityType.AGENT_MESSAGE: "langchain_agent_messages",
    EntityType.AGENT_TASK: "langchain_agent_tasks",
    EntityType.AGENT_FUNCTION: "agent_functions",
    EntityType.AGENT_SETTING: "langchain_agent_settings",
    EntityType.SIGNAL_NOTIFICATION: "signal_notifications",
    EntityType.ISSUE: "issues",
    EntityType.COMMENT: "issue_comments",
}

# Columns never returned to callers
HIDDEN_COLUMNS = {
    EntityType.USER: {"password"},
}

ENTITY_INTERVALS = ("hour", "day", "week", "month")


def _entity(entity) -> EntityType:
    try:
        return EntityType(entity)
    except ValueError:
        raise InvalidQuery(f"Invalid entity type: {entity}")


def table_for(entity) -> str:
    return ENTITY_TABLES[_entity(entity)]


def _scrub(entity: EntityType, row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    hidden = HIDDEN_COLUMNS.get(entity)
    if row is None or not hidden:
        return row
    return {k: v for k, v in row.items() if k not in hidden}


class EntityAccess:
    """CRUD and analytics over facility entities for one caller."""

    def __init__(self, conn, role: str):
        self.conn = conn
        self.role = role

    async def get_by_id(self, entity, entity_id: int) -> Dict[str, Any]:
        entity = _entity(entity)
        check_permission(self.role, entity, PermissionLevel.READ)
        built = build_select(table_for(entity), {"id": entity_id}, limit=1)
        row = await fetch_one(self.conn, built.sql, built.params)
        if row is None:
            raise NotFound(f"{entity.value} with id {entity_id} not found")
        return _scrub(entity, row)

    async def query(
        self,
        entity,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        entity = _entity(entity)
        check_permission(self.role, entity, PermissionLevel.READ)
        built = build_select(
            table_for(entity), filters,
            order_by=[{"column": "id", "direction": "desc"}],
            limit=limit, offset=offset,
        )
        rows = await fetch_all(self.conn, built.sql, built.params)
        return [_scrub(entity, row) for row in rows]

    async def create(self, entity, data: Dict[str, Any]) -> Dict[str, Any]:
        entity = _entity(entity)
        check_permission(self.role, entity, PermissionLevel.WRITE)
        built = build_insert(table_for(entity), data)
        row = await fetch_one(self.conn, built.sql, built.params)
        logger.info("Created %s as %s", entity.value, self.role)
        return _scrub(entity, row)

    async def update(self, entity, entity_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        entity = _entity(entity)
        check_permission(self.role, entity, PermissionLevel.WRITE)
        if not data:
            raise InvalidQuery("No update data provided")
        built = build_update(table_for(entity), data, {"id": entity_id})
        row = await fetch_one(self.conn, built.sql, built.params)
        if row is None:
            raise NotFound(f"{entity.value} with id {entity_id} not found")
        return _scrub(entity, row)

    async def delete(self, entity, entity_id: int) -> bool:
        entity = _entity(entity)
        check_permission(self.role, entity, PermissionLevel.ADMIN)
        built = build_delete(table_for(entity), {"id": entity_id})
        result = await execute(self.conn, built.sql, built.params)
        if not result.rowcount:
            raise NotFound(f"{entity.value} with id {entity_id} not found")
        logger.info("Deleted %s %s as %s", entity.value, entity_id, self.role)
        return True

    async def aggregate_stats(
        self,
        entity,
        field: str,
        function: str = "avg",
        filters: Optional[Dict[str, Any]] = None,
    ) -> float:
        """Single aggregate over a field; empty or NULL results come back as 0."""
        entity = _entity(entity)
        check_permission(self.role, entity, PermissionLevel.READ)
        built = build_aggregate(
            table_for(entity),
            [{"function": function, "field": field, "alias": "value"}],
            where=filters,
        )
        row = await fetch_one(self.conn, built.sql, built.params)
        value = row.get("value") if row else None
        return float(value) if value is not None else 0.0

    async def time_series(
        self,
        entity,
        field: str,
        interval: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        time_field: str = "timestamp",
    ) -> List[Dict[str, Any]]:
        entity = _entity(entity)
        check_permission(self.role, entity, PermissionLevel.READ)
        if interval not in ENTITY_INTERVALS:
            raise InvalidQuery(f"Invalid interval: {interval}")
        built = time_series_query(
            table_for(entity), time_field, interval,
            [{"function": "avg", "field": field, "alias": "value"}],
            start=start, end=end,
        )
        return await fetch_all(self.conn, built.sql, built.params)
