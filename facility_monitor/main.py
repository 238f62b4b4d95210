"""
Main application module for Facility Monitor.

This module defines the FastAPI application, routes, and middleware.
"""
import os
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from facility_monitor.auth import CurrentUser, get_current_user
from facility_monitor.config import configure_logging
from facility_monitor.permissions import ADMIN_ROLE, EntityType, check_table_permission, normalize_role
from facility_monitor.schemas.queries import AggregateRequest, ExecuteRequest, SelectRequest
from facility_monitor.schemas.responses import (
    AgentFunctionCall, AgentFunctionResult, PredictionRequest, QueryResponse, ReportRequest,
)
from facility_monitor.services import agent_functions, forecasting, query_tools, scheduling
from facility_monitor.services.ai_service import AIService
from facility_monitor.services.database import INLINE_ROW_LIMIT, STATIC_DIR, get_connection, handle_large_result
from facility_monitor.services.entity_access import EntityAccess
from facility_monitor.services.error_handler import ApiError, NotFound, PermissionDenied, error_handler
from facility_monitor.services.llm_provider import get_available_llm_providers
from facility_monitor.services.query_builder import DbUtils
from facility_monitor.services.solcast import SolcastClient, enhance_with_pv, map_to_environmental
from facility_monitor.services.sql_executor import SqlExecutor
from facility_monitor.services.websocket_hub import hub

configure_logging()
logger = logging.getLogger(__name__)

# Entity writes that are pushed to live subscribers
ENTITY_CHANNELS = {
    EntityType.POWER_DATA: "power-data",
    EntityType.ENVIRONMENTAL_DATA: "environmental-data",
    EntityType.SETTINGS: "settings",
}

MAX_HISTORY_ROWS = 5000

os.makedirs(STATIC_DIR, exist_ok=True)

# Create FastAPI app
app = FastAPI(
    title="Facility Monitor",
    description="Power and environmental monitoring for a seafood processing facility",
    version="1.0.0"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class HealthCheckFilter(logging.Filter):
    """
    Log filter that silences access logs for health check requests.
    This prevents the frequent health check requests from cluttering the logs.
    """
    def filter(self, record: logging.LogRecord) -> bool:
        return "/ping" not in record.getMessage()


logging.getLogger("uvicorn.access").addFilter(HealthCheckFilter())


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    context = f"{request.method} {request.url.path}"
    error_handler.track(exc, {"request": context, "detail": exc.context} if exc.context else context)
    detail = exc.message if exc.status_code < 500 else error_handler.get_user_friendly_error(exc)
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": detail, "error_type": exc.error_type})


# Mount static files directory (CSV exports)
app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")

logger.info("LLM providers available: %s", ", ".join(get_available_llm_providers()) or "none")


def get_db(conn=Depends(get_connection), user: CurrentUser = Depends(get_current_user)) -> DbUtils:
    return DbUtils(conn, user.role)


def get_solcast_client() -> SolcastClient:
    return SolcastClient()


def get_ai_service() -> AIService:
    return AIService()


def _require_admin(user: CurrentUser) -> None:
    if normalize_role(user.role) != ADMIN_ROLE:
        raise PermissionDenied("Administrator role required")


def _query_response(rows: List[Dict[str, Any]], truncated: bool = False) -> QueryResponse:
    if len(rows) > INLINE_ROW_LIMIT:
        export = handle_large_result(rows)
        return QueryResponse(row_count=export["row_count"], download_url=export["download_url"], truncated=truncated)
    return QueryResponse(rows=rows, row_count=len(rows), truncated=truncated)


async def _history(db: DbUtils, table: str, hours: int) -> List[Dict[str, Any]]:
    since = datetime.now(timezone.utc) - timedelta(hours=hours)
    return await db.select(table, {"timestamp": {"gte": since}}, order_by=["timestamp"], limit=MAX_HISTORY_ROWS)


async def _latest(db: DbUtils, table: str) -> Dict[str, Any]:
    row = await db.select_one(table, order_by=[{"column": "timestamp", "direction": "desc"}])
    if row is None:
        raise NotFound(f"No {table} readings found")
    return row


@app.get("/ping")
@app.head("/ping")
async def ping():
    """Health check endpoint. Supports both GET and HEAD methods."""
    return {"status": "ok"}


@app.get("/api/power-data")
async def power_data(hours: int = Query(24, ge=1, le=24 * 31), db: DbUtils = Depends(get_db)):
    return await _history(db, "power_data", hours)


@app.get("/api/power-data/latest")
async def latest_power_data(db: DbUtils = Depends(get_db)):
    return await _latest(db, "power_data")


@app.get("/api/environmental-data")
async def environmental_data(hours: int = Query(24, ge=1, le=24 * 31), db: DbUtils = Depends(get_db)):
    return await _history(db, "environmental_data", hours)


@app.get("/api/environmental-data/latest")
async def latest_environmental_data(db: DbUtils = Depends(get_db)):
    return await _latest(db, "environmental_data")


@app.get("/api/settings")
async def settings(db: DbUtils = Depends(get_db)):
    row = await db.select_one("settings", order_by=[{"column": "id", "direction": "desc"}])
    if row is None:
        raise NotFound("Settings not found")
    return row


@app.get("/api/equipment")
async def equipment(status: Optional[str] = None, db: DbUtils = Depends(get_db)):
    return await db.select("equipment", {"status": status}, order_by=["name"])


@app.get("/api/entities/{entity}")
async def list_entities(
    entity: str,
    limit: int = Query(100, ge=1, le=5000),
    offset: int = Query(0, ge=0),
    conn=Depends(get_connection),
    user: CurrentUser = Depends(get_current_user),
):
    return await EntityAccess(conn, user.role).query(entity, limit=limit, offset=offset)


@app.get("/api/entities/{entity}/stats")
async def entity_stats(
    entity: str,
    field: str,
    function: str = "avg",
    conn=Depends(get_connection),
    user: CurrentUser = Depends(get_current_user),
):
    value = await EntityAccess(conn, user.role).aggregate_stats(entity, field, function)
    return {"entity": entity, "field": field, "function": function, "value": value}


@app.get("/api/entities/{entity}/time-series")
async def entity_time_series(
    entity: str,
    field: str,
    interval: str = "hour",
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    conn=Depends(get_connection),
    user: CurrentUser = Depends(get_current_user),
):
    return await EntityAccess(conn, user.role).time_series(entity, field, interval, start, end)


@app.get("/api/entities/{entity}/{entity_id}")
async def get_entity(
    entity: str, entity_id: int, conn=Depends(get_connection), user: CurrentUser = Depends(get_current_user)
):
    return await EntityAccess(conn, user.role).get_by_id(entity, entity_id)


async def _publish(entity: str, row: Dict[str, Any]) -> None:
    kind = EntityType(entity)
    if kind in ENTITY_CHANNELS:
        await hub.broadcast(ENTITY_CHANNELS[kind], row)
    elif kind == EntityType.AGENT_MESSAGE:
        await hub.broadcast_agent_message(row)
    elif kind == EntityType.SIGNAL_NOTIFICATION:
        await hub.broadcast_agent_notification(row)


@app.post("/api/entities/{entity}", status_code=201)
async def create_entity(
    entity: str,
    data: Dict[str, Any] = Body(...),
    conn=Depends(get_connection),
    user: CurrentUser = Depends(get_current_user),
):
    row = await EntityAccess(conn, user.role).create(entity, data)
    await _publish(entity, row)
    return row


@app.patch("/api/entities/{entity}/{entity_id}")
async def update_entity(
    entity: str,
    entity_id: int,
    data: Dict[str, Any] = Body(...),
    conn=Depends(get_connection),
    user: CurrentUser = Depends(get_current_user),
):
    row = await EntityAccess(conn, user.role).update(entity, entity_id, data)
    await _publish(entity, row)
    return row


@app.delete("/api/entities/{entity}/{entity_id}")
async def delete_entity(
    entity: str, entity_id: int, conn=Depends(get_connection), user: CurrentUser = Depends(get_current_user)
):
    await EntityAccess(conn, user.role).delete(entity, entity_id)
    return {"deleted": True, "id": entity_id}


@app.get("/api/query/tables")
async def query_tables(db: DbUtils = Depends(get_db)):
    return {"tables": db.list_known_tables()}


@app.post("/api/query/select", response_model=QueryResponse)
async def query_select(request: SelectRequest, db: DbUtils = Depends(get_db)):
    rows = await db.select(
        request.table,
        request.where,
        columns=request.columns,
        joins=request.joins,
        order_by=request.order_by,
        limit=request.limit,
        offset=request.offset,
    )
    return _query_response(rows)


@app.post("/api/query/aggregate", response_model=QueryResponse)
async def query_aggregate(request: AggregateRequest, db: DbUtils = Depends(get_db)):
    rows = await db.aggregate(
        request.table,
        request.metrics,
        request.dimensions,
        request.where,
        order_by=request.order_by,
        limit=request.limit,
    )
    return _query_response(rows)


@app.post("/api/query/execute", response_model=QueryResponse)
async def query_execute(
    request: ExecuteRequest, conn=Depends(get_connection), user: CurrentUser = Depends(get_current_user)
):
    result = await SqlExecutor(conn, user.role, max_rows=request.max_rows).execute(request.sql, request.params)
    return _query_response(result["rows"], truncated=result["truncated"])


@app.get("/api/query/database-info")
async def database_info(conn=Depends(get_connection), user: CurrentUser = Depends(get_current_user)):
    return await SqlExecutor(conn, user.role).database_info()


@app.get("/api/agent/functions")
async def agent_function_list(user: CurrentUser = Depends(get_current_user)):
    return agent_functions.list_functions(user.role)


@app.post("/api/agent/functions/{name}", response_model=AgentFunctionResult)
async def agent_function_call(
    name: str,
    call: AgentFunctionCall,
    conn=Depends(get_connection),
    user: CurrentUser = Depends(get_current_user),
):
    result = await agent_functions.call_function(name, call.arguments, conn, user.role)
    return AgentFunctionResult(name=name, result=result)


@app.get("/api/analytics/anomalies")
async def analytics_anomalies(
    hours: int = Query(24, ge=1, le=24 * 31),
    threshold: float = Query(2.5, gt=0),
    db: DbUtils = Depends(get_db),
):
    power = await _history(db, "power_data", hours)
    environmental = await _history(db, "environmental_data", hours)
    return forecasting.detect_anomalies(power, environmental, threshold)


@app.get("/api/analytics/forecast")
async def analytics_forecast(
    hours: int = Query(168, ge=24, le=24 * 31),
    horizon: int = Query(24, ge=1, le=168),
    db: DbUtils = Depends(get_db),
):
    power = await _history(db, "power_data", hours)
    environmental = await _history(db, "environmental_data", hours)
    return forecasting.generate_power_forecast(power, environmental, horizon)


@app.get("/api/analytics/recommendations")
async def analytics_recommendations(hours: int = Query(168, ge=24, le=24 * 31), db: DbUtils = Depends(get_db)):
    power = await _history(db, "power_data", hours)
    environmental = await _history(db, "environmental_data", hours)
    forecast = forecasting.generate_power_forecast(power, environmental)
    return {"recommendations": forecasting.efficiency_recommendations(power, forecast, environmental)}


@app.get("/api/analytics/schedule")
async def analytics_schedule(
    hours: int = Query(48, ge=1, le=336),
    db: DbUtils = Depends(get_db),
    solcast: SolcastClient = Depends(get_solcast_client),
):
    pv = await solcast.forecast_pv_or_fallback(hours=hours)
    items = await db.select("equipment", {"status": "operational"})
    return {
        "recommendations": scheduling.recommend_schedule(pv.get("forecasts", []), items),
        "is_fallback": bool(pv.get("_fallback")),
    }


@app.get("/api/analytics/statistics")
async def analytics_statistics(
    table: str,
    fields: List[str] = Query(...),
    conn=Depends(get_connection),
    user: CurrentUser = Depends(get_current_user),
):
    check_table_permission(table, user.role, "read")
    return await query_tools.statistics(conn, table, fields)


@app.get("/api/analytics/correlations")
async def analytics_correlations(
    table: str,
    fields: List[str] = Query(...),
    conn=Depends(get_connection),
    user: CurrentUser = Depends(get_current_user),
):
    check_table_permission(table, user.role, "read")
    return await query_tools.correlations(conn, table, fields)


@app.get("/api/solcast/forecast")
async def solcast_forecast(
    hours: int = Query(48, ge=1, le=336),
    user: CurrentUser = Depends(get_current_user),
    solcast: SolcastClient = Depends(get_solcast_client),
):
    radiation = await solcast.forecast_radiation_or_fallback(hours=hours)
    pv = await solcast.forecast_pv_or_fallback(hours=hours)
    rows = enhance_with_pv(map_to_environmental(radiation, is_forecast=True), pv)
    return {"forecasts": rows, "is_fallback": bool(radiation.get("_fallback"))}


@app.get("/api/solcast/pv-forecast")
async def solcast_pv_forecast(
    hours: int = Query(48, ge=1, le=336),
    user: CurrentUser = Depends(get_current_user),
    solcast: SolcastClient = Depends(get_solcast_client),
):
    return await solcast.forecast_pv_or_fallback(hours=hours)


@app.get("/api/solcast/live-radiation")
async def solcast_live_radiation(
    user: CurrentUser = Depends(get_current_user),
    solcast: SolcastClient = Depends(get_solcast_client),
):
    live = await solcast.live_radiation_or_fallback()
    return {"readings": map_to_environmental(live, is_forecast=False), "is_fallback": bool(live.get("_fallback"))}


@app.get("/api/solcast/live-pv")
async def solcast_live_pv(
    user: CurrentUser = Depends(get_current_user),
    solcast: SolcastClient = Depends(get_solcast_client),
):
    return await solcast.live_pv_or_fallback()


@app.post("/api/ai/energy-recommendations")
async def ai_energy_recommendations(
    hours: int = Query(24, ge=1, le=24 * 31),
    db: DbUtils = Depends(get_db),
    ai: AIService = Depends(get_ai_service),
):
    power = await _history(db, "power_data", hours)
    environmental = await _history(db, "environmental_data", hours)
    return await ai.energy_recommendations(power, environmental)


@app.post("/api/ai/analytics")
async def ai_analytics(
    hours: int = Query(24, ge=1, le=24 * 31),
    db: DbUtils = Depends(get_db),
    ai: AIService = Depends(get_ai_service),
):
    power = await _history(db, "power_data", hours)
    environmental = await _history(db, "environmental_data", hours)
    return await ai.data_analytics(power, environmental)


@app.post("/api/ai/report")
async def ai_report(request: ReportRequest, db: DbUtils = Depends(get_db), ai: AIService = Depends(get_ai_service)):
    power = await _history(db, "power_data", request.hours)
    environmental = await _history(db, "environmental_data", request.hours)
    return await ai.executive_report(power, environmental, request.report_type)


@app.post("/api/ai/predictions")
async def ai_predictions(
    request: PredictionRequest, db: DbUtils = Depends(get_db), ai: AIService = Depends(get_ai_service)
):
    power = await _history(db, "power_data", request.hours)
    environmental = await _history(db, "environmental_data", request.hours)
    return await ai.predictions(power, environmental, request.horizon)


@app.get("/api/admin/error-stats")
async def error_stats(user: CurrentUser = Depends(get_current_user)):
    _require_admin(user)
    return error_handler.get_error_stats()


async def _handle_ws_message(websocket: WebSocket, raw: str) -> None:
    try:
        message = json.loads(raw)
    except ValueError:
        await websocket.send_json({"type": "error", "message": "Invalid JSON"})
        return
    if not isinstance(message, dict):
        await websocket.send_json({"type": "error", "message": "Message must be an object"})
        return

    kind = message.get("type")
    channel = message.get("channel")
    if kind in ("subscribe", "unsubscribe") and not isinstance(channel, str):
        await websocket.send_json({"type": "error", "message": "Channel must be a string"})
    elif kind == "subscribe":
        ok = hub.subscribe(websocket, channel)
        await websocket.send_json({"type": "subscribed", "channel": channel, "ok": ok})
    elif kind == "unsubscribe":
        ok = hub.unsubscribe(websocket, channel)
        await websocket.send_json({"type": "unsubscribed", "channel": channel, "ok": ok})
    elif kind == "ping":
        await websocket.send_json({"type": "pong", "data": {"timestamp": datetime.now(timezone.utc).isoformat()}})
    else:
        await websocket.send_json({"type": "error", "message": f"Unknown message type: {kind}"})


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    try:
        while True:
            raw = await websocket.receive_text()
            await _handle_ws_message(websocket, raw)
    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected")
    finally:
        hub.remove_client(websocket)
