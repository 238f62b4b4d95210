"""
Tool registry for the AI agent.

Tools are declared in agent_functions.yaml. Each carries an access level;
"user" tools are open to any authenticated role (table RBAC still applies
inside them) and "admin" tools only to administrators.
"""
import logging
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional

from facility_monitor.config import load_yaml_config
from facility_monitor.permissions import ADMIN_ROLE, check_table_permission, normalize_role
from facility_monitor.services import query_tools
from facility_monitor.services.error_handler import InvalidQuery, NotFound, PermissionDenied
from facility_monitor.services.query_builder import DbUtils
from facility_monitor.services.sql_executor import SqlExecutor

logger = logging.getLogger(__name__)

AGENT_FUNCTIONS_YAML = "agent_functions.yaml"

ACCESS_LEVELS = ("user", "admin")


@lru_cache(maxsize=1)
def load_functions() -> List[Dict[str, Any]]:
    """Load and sanity-check the tool catalog."""
    functions = load_yaml_config(AGENT_FUNCTIONS_YAML, "functions")
    for function in functions:
        if function.get("access_level") not in ACCESS_LEVELS:
            raise ValueError(f"Invalid access level for tool {function.get('name')}: {function.get('access_level')}")
    return functions


def _can_use(function: Dict[str, Any], role: str) -> bool:
    return function["access_level"] == "user" or normalize_role(role) == ADMIN_ROLE


def list_functions(role: str) -> List[Dict[str, Any]]:
    return [
        {
            "name": f["name"],
            "description": f["description"],
            "module": f.get("module"),
            "access_level": f["access_level"],
            "parameters": f["parameters"],
        }
        for f in load_functions()
        if _can_use(f, role)
    ]


def openai_tools(role: str) -> List[Dict[str, Any]]:
    """Tools visible to a role in the OpenAI chat completions `tools` shape."""
    return [
        {
            "type": "function",
            "function": {
                "name": f["name"],
                "description": f["description"],
                "parameters": f["parameters"],
            },
        }
        for f in list_functions(role)
    ]


def get_function(name: str) -> Dict[str, Any]:
    for function in load_functions():
        if function["name"] == name:
            return function
    raise NotFound(f"Unknown agent function: {name}")


def _require(args: Dict[str, Any], *names: str) -> None:
    missing = [n for n in names if args.get(n) in (None, "")]
    if missing:
        raise InvalidQuery(f"Missing required parameter(s): {', '.join(missing)}")


def _parse_date(value: Optional[str], label: str) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        raise InvalidQuery(f"Invalid {label}: {value}")


async def _query_table(conn, role: str, args: Dict[str, Any]) -> Dict[str, Any]:
    _require(args, "table")
    db = DbUtils(conn, role)
    rows = await db.select(
        args["table"],
        args.get("filters"),
        columns=args.get("columns"),
        order_by=args.get("order_by"),
        limit=args.get("limit", 100),
        offset=args.get("offset"),
    )
    return {"rows": rows, "count": len(rows)}


async def _aggregate_data(conn, role: str, args: Dict[str, Any]) -> Dict[str, Any]:
    _require(args, "table", "metrics")
    db = DbUtils(conn, role)
    rows = await db.aggregate(args["table"], args["metrics"], args.get("dimensions"), args.get("filters"))
    return {"rows": rows, "count": len(rows)}


async def _time_series_aggregate(conn, role: str, args: Dict[str, Any]) -> Dict[str, Any]:
    _require(args, "table", "time_column", "value_column", "aggregation", "interval")
    check_table_permission(args["table"], role, "read")
    rows = await query_tools.time_series(
        conn,
        args["table"],
        args["time_column"],
        args["interval"],
        [{"function": args["aggregation"], "field": args["value_column"], "alias": "value"}],
        filters=args.get("filters"),
        start=_parse_date(args.get("start_date"), "start_date"),
        end=_parse_date(args.get("end_date"), "end_date"),
    )
    return {"rows": rows, "count": len(rows)}


async def _analyze_correlation(conn, role: str, args: Dict[str, Any]) -> Dict[str, Any]:
    _require(args, "table", "column1", "column2")
    check_table_permission(args["table"], role, "read")
    pairs = await query_tools.correlations(
        conn, args["table"], [args["column1"], args["column2"]], args.get("filters")
    )
    return {
        "column1": args["column1"],
        "column2": args["column2"],
        "correlation": pairs[0]["correlation"] if pairs else None,
    }


async def _get_equipment_list(conn, role: str, args: Dict[str, Any]) -> Dict[str, Any]:
    where = {"status": "operational"} if args.get("active_only") else None
    rows = await DbUtils(conn, role).select("equipment", where, order_by=["name"])
    return {"rows": rows, "count": len(rows)}


async def _get_latest_power_data(conn, role: str, args: Dict[str, Any]) -> Dict[str, Any]:
    rows = await DbUtils(conn, role).select(
        "power_data",
        order_by=[{"column": "timestamp", "direction": "desc"}],
        limit=args.get("limit", 1),
    )
    return {"rows": rows, "count": len(rows)}


async def _execute_sql_query(conn, role: str, args: Dict[str, Any]) -> Dict[str, Any]:
    _require(args, "query")
    executor = SqlExecutor(conn, role, max_rows=args.get("max_rows", 100))
    return await executor.execute_read_only(args["query"], args.get("params"))


HANDLERS: Dict[str, Callable] = {
    "query_table": _query_table,
    "aggregate_data": _aggregate_data,
    "time_series_aggregate": _time_series_aggregate,
    "analyze_correlation": _analyze_correlation,
    "get_equipment_list": _get_equipment_list,
    "get_latest_power_data": _get_latest_power_data,
    "execute_sql_query": _execute_sql_query,
}


async def call_function(name: str, args: Optional[Dict[str, Any]], conn, role: str) -> Dict[str, Any]:
    """
    Run an agent tool on behalf of a caller.

    Args:
        name: Tool name from the catalog
        args: Tool arguments matching its parameter schema
        conn: Database connection
        role: Caller role

    Returns:
        Tool result as a JSON-serializable dict

    Raises:
        NotFound: If the tool does not exist
        PermissionDenied: If the caller's role is below the tool's access level
    """
    function = get_function(name)
    if not _can_use(function, role):
        raise PermissionDenied(f"Role '{role}' cannot use agent function '{name}'")
    handler = HANDLERS.get(name)
    if handler is None:
        raise NotFound(f"No handler registered for agent function: {name}")
    logger.info("Agent function %s called by %s", name, role)
    return await handler(conn, role, args or {})
