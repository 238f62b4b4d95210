"""
Integration tests for the HTTP and WebSocket API.

The database connection and the caller are replaced through FastAPI
dependency overrides, so the full request path (validation, RBAC, SQL
building, error mapping) runs without a database.
"""
import os
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import SQLAlchemyError

from facility_monitor.auth import CurrentUser, get_current_user
from facility_monitor.main import app, get_ai_service, get_solcast_client
from facility_monitor.services.database import STATIC_DIR, get_connection
from facility_monitor.services.error_handler import error_handler
from facility_monitor.services.solcast import SolcastClient
from facility_monitor.services.websocket_hub import hub


@pytest.fixture(autouse=True)
def clear_overrides():
    yield
    app.dependency_overrides.clear()


def _client(conn, role="user"):
    app.dependency_overrides[get_current_user] = lambda: CurrentUser(user_id=1, role=role)
    app.dependency_overrides[get_connection] = lambda: conn
    return TestClient(app)


def test_ping():
    """Test that the health check needs no authentication."""
    client = TestClient(app)
    assert client.get("/ping").json() == {"status": "ok"}
    assert client.head("/ping").status_code == 200


def test_missing_token():
    response = TestClient(app).get("/api/power-data/latest")
    assert response.status_code in (401, 403)


def test_latest_power_data(conn):
    conn.queue([{"id": 7, "total_load": 42.0}])
    response = _client(conn).get("/api/power-data/latest")
    assert response.status_code == 200
    assert response.json() == {"id": 7, "total_load": 42.0}
    assert 'ORDER BY "timestamp" DESC LIMIT' in conn.last_sql


def test_latest_power_data_not_found(conn):
    response = _client(conn).get("/api/power-data/latest")
    assert response.status_code == 404
    assert response.json()["error_type"] == "not_found"


def test_settings_hidden_from_operator(conn):
    """Test that table RBAC maps to 403 with the error type."""
    response = _client(conn, role="operator").get("/api/settings")
    assert response.status_code == 403
    assert response.json()["error_type"] == "permission_denied"
    assert conn.executed == []


def test_select_permission_denied(conn):
    response = _client(conn).post("/api/query/select", json={"table": "users"})
    assert response.status_code == 403


def test_select_invalid_operator(conn):
    response = _client(conn).post(
        "/api/query/select", json={"table": "power_data", "where": {"total_load": {"regex": "4.*"}}}
    )
    assert response.status_code == 400
    assert "Unsupported operator" in response.json()["detail"]


def test_select_small_result_inline(conn):
    conn.queue([{"id": 1}, {"id": 2}])
    response = _client(conn).post("/api/query/select", json={"table": "equipment", "limit": 2})
    body = response.json()
    assert body["rows"] == [{"id": 1}, {"id": 2}]
    assert body["row_count"] == 2
    assert body["download_url"] is None


def test_select_large_result_exported(conn):
    """Test that results over 100 rows are exported to CSV."""
    conn.queue([{"id": i, "total_load": 40.0 + i} for i in range(150)])
    response = _client(conn).post("/api/query/select", json={"table": "power_data", "limit": 150})
    body = response.json()
    assert response.status_code == 200
    assert body["rows"] is None
    assert body["row_count"] == 150
    assert body["download_url"].startswith("/static/")

    path = os.path.join(STATIC_DIR, os.path.basename(body["download_url"]))
    with open(path) as f:
        lines = f.read().splitlines()
    os.remove(path)
    assert lines[0] == "id,total_load"
    assert len(lines) == 151


def test_aggregate(conn):
    conn.queue([{"type": "freezer", "count_all": 2}])
    response = _client(conn).post("/api/query/aggregate", json={
        "table": "equipment",
        "metrics": [{"function": "count", "field": "*"}],
        "dimensions": ["type"],
    })
    assert response.json()["rows"] == [{"type": "freezer", "count_all": 2}]


def test_execute_requires_admin(conn):
    response = _client(conn, role="manager").post("/api/query/execute", json={"sql": "SELECT 1"})
    assert response.status_code == 403

    conn.queue([{"n": 1}])
    response = _client(conn, role="admin").post("/api/query/execute", json={"sql": "SELECT 1 AS n"})
    assert response.status_code == 200
    assert response.json()["rows"] == [{"n": 1}]


def test_execute_rejects_writes(conn):
    response = _client(conn, role="admin").post(
        "/api/query/execute", json={"sql": "DELETE FROM power_data"}
    )
    assert response.status_code == 400
    assert response.json()["error_type"] == "invalid_query"


def test_database_error_is_friendly():
    """Test that database failures return a generic 500 message."""
    class BrokenConnection:
        async def execute(self, statement, params=None):
            raise SQLAlchemyError("connection reset by peer")

    error_handler.reset()
    response = _client(BrokenConnection()).get("/api/equipment")
    assert response.status_code == 500
    body = response.json()
    assert body["error_type"] == "execution_error"
    assert "connection reset" not in body["detail"]

    stats = error_handler.get_error_stats()
    assert stats["error_types"] == {"execution_error": 1}
    assert len(stats["recent_errors"]) == 1
    context = stats["recent_errors"][0]["context"]
    assert context["request"] == "GET /api/equipment"
    assert 'FROM "equipment"' in context["detail"]


def test_query_tables(conn):
    tables = _client(conn).get("/api/query/tables").json()["tables"]
    assert "power_data" in tables
    assert tables == sorted(tables)


def test_agent_function_list(conn):
    user_names = [f["name"] for f in _client(conn).get("/api/agent/functions").json()]
    admin_names = [f["name"] for f in _client(conn, role="admin").get("/api/agent/functions").json()]
    assert "execute_sql_query" not in user_names
    assert "execute_sql_query" in admin_names


def test_agent_function_call(conn):
    conn.queue([{"id": 1, "name": "Big Freezer"}])
    response = _client(conn).post(
        "/api/agent/functions/query_table", json={"arguments": {"table": "equipment", "limit": 1}}
    )
    assert response.status_code == 200
    assert response.json() == {
        "name": "query_table",
        "result": {"rows": [{"id": 1, "name": "Big Freezer"}], "count": 1},
    }


def test_agent_function_errors(conn):
    client = _client(conn)
    assert client.post("/api/agent/functions/launch", json={}).status_code == 404
    response = client.post(
        "/api/agent/functions/execute_sql_query", json={"arguments": {"query": "SELECT 1"}}
    )
    assert response.status_code == 403


def test_create_entity_broadcasts(conn):
    """Test that new power readings are pushed to live subscribers."""
    row = {"id": 1, "total_load": 40.0}
    conn.queue([row])
    with patch.object(hub, "broadcast", new_callable=AsyncMock) as mock_broadcast:
        response = _client(conn, role="admin").post("/api/entities/power_data", json={"total_load": 40.0})

    assert response.status_code == 201
    assert response.json() == row
    mock_broadcast.assert_awaited_once_with("power-data", row)


def test_create_entity_denied(conn):
    response = _client(conn).post("/api/entities/power_data", json={"total_load": 40.0})
    assert response.status_code == 403


def test_unknown_entity(conn):
    assert _client(conn).get("/api/entities/spaceship").status_code == 400


def test_update_entity(conn):
    conn.queue([{"id": 3, "status": "maintenance"}])
    response = _client(conn, role="operator").patch("/api/entities/equipment/3", json={"status": "maintenance"})
    assert response.status_code == 200
    assert response.json()["status"] == "maintenance"


def test_delete_entity(conn):
    assert _client(conn).delete("/api/entities/issue/1").status_code == 403

    conn.queue(rowcount=1)
    response = _client(conn, role="manager").delete("/api/entities/issue/1")
    assert response.json() == {"deleted": True, "id": 1}


def test_entity_stats(conn):
    conn.queue([{"value": 12.5}])
    response = _client(conn).get("/api/entities/power_data/stats", params={"field": "total_load", "function": "max"})
    assert response.json() == {"entity": "power_data", "field": "total_load", "function": "max", "value": 12.5}


def test_schedule_uses_fallback(conn):
    """Test that scheduling still answers when Solcast is unavailable."""
    app.dependency_overrides[get_solcast_client] = lambda: SolcastClient(api_key="")
    conn.queue([{"id": 1, "name": "Blast Freezer", "type": "refrigeration"}])
    response = _client(conn).get("/api/analytics/schedule")
    assert response.status_code == 200
    body = response.json()
    assert body["is_fallback"] is True
    assert isinstance(body["recommendations"], list)


def test_solcast_forecast_fallback(conn):
    app.dependency_overrides[get_solcast_client] = lambda: SolcastClient(api_key="")
    body = _client(conn).get("/api/solcast/forecast").json()
    assert body["is_fallback"] is True
    assert len(body["forecasts"]) == 4
    assert {row["data_source"] for row in body["forecasts"]} == {"fallback"}
    assert all("forecast_p50" in row for row in body["forecasts"])


def test_analytics_statistics_permission(conn):
    response = _client(conn).get("/api/analytics/statistics", params={"table": "users", "fields": ["id"]})
    assert response.status_code == 403


def test_ai_report(conn, power_rows):
    """Test that the report endpoint passes history and report type to the AI service."""
    ai = MagicMock()
    ai.executive_report = AsyncMock(return_value={"title": "Weekly report"})
    app.dependency_overrides[get_ai_service] = lambda: ai
    conn.queue(power_rows)
    conn.queue([])

    client = _client(conn, role="manager")
    response = client.post("/api/ai/report", json={"report_type": "weekly", "hours": 48})
    assert response.status_code == 200
    assert response.json() == {"title": "Weekly report"}
    power, environmental, report_type = ai.executive_report.call_args.args
    assert len(power) == len(power_rows)
    assert environmental == []
    assert report_type == "weekly"

    assert client.post("/api/ai/report", json={"report_type": "hourly"}).status_code == 422


def test_error_stats_admin_only(conn):
    assert _client(conn).get("/api/admin/error-stats").status_code == 403
    body = _client(conn, role="admin").get("/api/admin/error-stats").json()
    assert "total_errors" in body
    assert "error_types" in body


def test_websocket_protocol():
    """Test subscribe, ping and error replies on /ws."""
    client = TestClient(app)
    with client.websocket_connect("/ws") as ws:
        ws.send_text(json.dumps({"type": "subscribe", "channel": "power-data"}))
        assert ws.receive_json() == {"type": "subscribed", "channel": "power-data", "ok": True}

        ws.send_text(json.dumps({"type": "subscribe", "channel": "stock-prices"}))
        assert ws.receive_json()["ok"] is False

        ws.send_text(json.dumps({"type": "ping", "data": {}}))
        pong = ws.receive_json()
        assert pong["type"] == "pong"
        assert "timestamp" in pong["data"]

        ws.send_text("not json")
        assert ws.receive_json() == {"type": "error", "message": "Invalid JSON"}

        ws.send_text(json.dumps({"type": "dance"}))
        assert ws.receive_json()["type"] == "error"

        ws.send_text(json.dumps({"type": "unsubscribe", "channel": "power-data"}))
        assert ws.receive_json() == {"type": "unsubscribed", "channel": "power-data", "ok": True}


def test_websocket_rejects_non_string_channel():
    """Test that a list or object channel gets an error reply and the socket stays open."""
    client = TestClient(app)
    with client.websocket_connect("/ws") as ws:
        ws.send_text(json.dumps({"type": "subscribe", "channel": ["power-data"]}))
        assert ws.receive_json() == {"type": "error", "message": "Channel must be a string"}

        ws.send_text(json.dumps({"type": "unsubscribe", "channel": {"name": "settings"}}))
        assert ws.receive_json()["type"] == "error"

        ws.send_text(json.dumps({"type": "subscribe", "channel": "settings"}))
        assert ws.receive_json() == {"type": "subscribed", "channel": "settings", "ok": True}
