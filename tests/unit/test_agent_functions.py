"""
Unit tests for the AI agent tool registry.
"""
from unittest.mock import AsyncMock, patch

import pytest

from facility_monitor.services import agent_functions
from facility_monitor.services.error_handler import InvalidQuery, NotFound, PermissionDenied


def test_catalog_loads():
    """Test that every catalog entry has a handler and a JSON schema."""
    functions = agent_functions.load_functions()
    names = [f["name"] for f in functions]
    assert set(names) == set(agent_functions.HANDLERS)
    for function in functions:
        assert function["parameters"]["type"] == "object"
        assert function["access_level"] in ("user", "admin")


def test_list_functions_by_role():
    """Test that admin-level tools are hidden from other roles."""
    user_names = {f["name"] for f in agent_functions.list_functions("user")}
    admin_names = {f["name"] for f in agent_functions.list_functions("Admin")}
    assert "execute_sql_query" not in user_names
    assert "execute_sql_query" in admin_names
    assert "query_table" in user_names
    assert user_names < admin_names


def test_openai_tools_shape():
    tools = agent_functions.openai_tools("manager")
    assert tools
    for tool in tools:
        assert tool["type"] == "function"
        assert set(tool["function"]) == {"name", "description", "parameters"}


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_unknown_function(conn):
    with pytest.raises(NotFound):
        await agent_functions.call_function("launch_rocket", {}, conn, "admin")


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_admin_tool_denied_for_user(conn):
    """Test that a user cannot reach raw SQL through the agent."""
    with pytest.raises(PermissionDenied):
        await agent_functions.call_function("execute_sql_query", {"query": "SELECT 1"}, conn, "user")
    assert conn.executed == []


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_missing_required_parameter(conn):
    with pytest.raises(InvalidQuery) as exc:
        await agent_functions.call_function("query_table", {}, conn, "user")
    assert "table" in str(exc.value)


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_query_table_runs_through_rbac(conn):
    """Test that query_table uses the caller's role for table checks."""
    conn.queue([{"id": 1, "name": "Big Freezer"}])
    result = await agent_functions.call_function(
        "query_table", {"table": "equipment", "filters": {"type": "freezer"}, "limit": 5}, conn, "user"
    )
    assert result == {"rows": [{"id": 1, "name": "Big Freezer"}], "count": 1}
    assert conn.last_params == {"p1": "freezer", "p2": 5}

    with pytest.raises(PermissionDenied):
        await agent_functions.call_function("query_table", {"table": "users"}, conn, "user")


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_get_equipment_list_active_only(conn):
    await agent_functions.call_function("get_equipment_list", {"active_only": True}, conn, "user")
    assert conn.last_sql == 'SELECT * FROM "equipment" WHERE "status" = :p1 ORDER BY "name" ASC'
    assert conn.last_params == {"p1": "operational"}


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_get_latest_power_data(conn):
    conn.queue([{"id": 3}, {"id": 2}])
    result = await agent_functions.call_function("get_latest_power_data", {"limit": 2}, conn, "user")
    assert result["count"] == 2
    assert 'ORDER BY "timestamp" DESC' in conn.last_sql


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_time_series_aggregate_parses_dates(conn):
    """Test that ISO dates with a Z suffix become datetimes."""
    with patch("facility_monitor.services.agent_functions.query_tools.time_series",
               new_callable=AsyncMock) as mock_series:
        mock_series.return_value = [{"time_period": "2024-06-01", "value": 3.0}]
        result = await agent_functions.call_function("time_series_aggregate", {
            "table": "power_data",
            "time_column": "timestamp",
            "value_column": "total_load",
            "aggregation": "avg",
            "interval": "day",
            "start_date": "2024-06-01T00:00:00Z",
        }, conn, "user")

    assert result["count"] == 1
    kwargs = mock_series.call_args.kwargs
    assert kwargs["start"].tzinfo is not None
    assert kwargs["end"] is None

    with pytest.raises(InvalidQuery):
        await agent_functions.call_function("time_series_aggregate", {
            "table": "power_data", "time_column": "timestamp", "value_column": "total_load",
            "aggregation": "avg", "interval": "day", "start_date": "yesterday",
        }, conn, "user")


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_analyze_correlation(conn):
    conn.queue([{"total_load__solar_output": -0.4}])
    result = await agent_functions.call_function("analyze_correlation", {
        "table": "power_data", "column1": "total_load", "column2": "solar_output",
    }, conn, "user")
    assert result == {"column1": "total_load", "column2": "solar_output", "correlation": -0.4}

    conn.queue([{"total_load__solar_output": None}])
    result = await agent_functions.call_function("analyze_correlation", {
        "table": "power_data", "column1": "total_load", "column2": "solar_output",
    }, conn, "user")
    assert result["correlation"] is None


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_execute_sql_query_is_read_only(conn):
    """Test that the admin SQL tool refuses writes and caps rows."""
    with pytest.raises(InvalidQuery):
        await agent_functions.call_function(
            "execute_sql_query", {"query": "DELETE FROM power_data WHERE id = 1"}, conn, "admin"
        )

    conn.queue([{"n": 1}])
    result = await agent_functions.call_function(
        "execute_sql_query", {"query": "SELECT 1 AS n", "max_rows": 10}, conn, "admin"
    )
    assert result["rows"] == [{"n": 1}]
    assert conn.last_sql.endswith("LIMIT 11")
