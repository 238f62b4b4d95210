"""
Unit tests for the Solcast client and environmental mapping.
"""
from datetime import datetime, timezone

import httpx
import pytest

from facility_monitor.services.error_handler import error_handler
from facility_monitor.services.solcast import (
    SolcastClient, SolcastError, determine_weather, enhance_with_pv, estimate_humidity,
    map_to_environmental, parse_period_end,
)

NOON = datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)


def _client(handler, **kwargs):
    return SolcastClient(api_key="test-key", transport=httpx.MockTransport(handler), **kwargs)


def test_parse_period_end():
    """Test that seven-digit fractions and the Z suffix are accepted."""
    parsed = parse_period_end("2024-06-03T12:30:00.0000000Z")
    assert parsed == datetime(2024, 6, 3, 12, 30, tzinfo=timezone.utc)
    assert parse_period_end(NOON) is NOON


def test_determine_weather():
    assert determine_weather(10, 0) == "Night"
    assert determine_weather(800, 700) == "Sunny"
    assert determine_weather(500, 350) == "Partly Cloudy"
    assert determine_weather(300, 150) == "Mostly Cloudy"
    assert determine_weather(150, 10) == "Cloudy"
    assert determine_weather(80, 10) == "Overcast"


def test_estimate_humidity():
    """Test the humidity model including its clamps and half-up rounding."""
    assert estimate_humidity(10, 500, 12) == 70
    assert estimate_humidity(30, 0, 2) == 65
    assert estimate_humidity(-20, 0, 3) == 95
    assert estimate_humidity(40, 1000, 12) == 40
    assert estimate_humidity(21, 0, 8) == 69


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_forecast_pv_request():
    """Test that the PV forecast sends the site, panel and probabilistic parameters."""
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json={"forecasts": [{"period_end": "2024-06-03T12:30:00.0000000Z", "pv_estimate": 5.0}]})

    data = await _client(handler, capacity=30).forecast_pv(hours=48)
    assert data["forecasts"][0]["pv_estimate"] == 5.0
    assert seen["path"].endswith("/forecast/rooftop_pv_power")
    assert seen["auth"] == "Bearer test-key"
    assert seen["params"]["capacity"] == "30"
    assert seen["params"]["hours"] == "48"
    assert seen["params"]["output_parameters"] == "pv_estimate,pv_estimate10,pv_estimate90"


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_payment_required():
    client = _client(lambda request: httpx.Response(402))
    with pytest.raises(SolcastError) as exc:
        await client.live_pv()
    assert str(exc.value) == "Payment required"
    assert exc.value.status_code == 502


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_missing_api_key():
    client = SolcastClient(api_key="", transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})))
    with pytest.raises(SolcastError):
        await client.live_radiation()


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_transport_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(SolcastError) as exc:
        await _client(handler).forecast_radiation()
    assert "request failed" in str(exc.value)


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_fallback_on_error():
    """Test that API failures fall back to flagged synthetic data and are tracked."""
    error_handler.reset()
    client = _client(lambda request: httpx.Response(500))

    pv = await client.forecast_pv_or_fallback()
    assert pv["_fallback"] is True
    assert len(pv["forecasts"]) == 4

    live = await client.live_radiation_or_fallback()
    assert live["_fallback"] is True
    assert "estimated_actuals" in live

    assert error_handler.get_error_stats()["error_types"]["solcast_error"] == 2


def test_fallback_pv_shape():
    """Test that the midday fallback uses the high output band of capacity."""
    client = SolcastClient(api_key="x", capacity=25)
    data = client.fallback_pv(now=NOON)
    first = data["forecasts"][0]
    assert first["period_end"] == "2024-06-03T12:00:00Z"
    assert first["pv_estimate"] == pytest.approx(17.5)
    assert first["pv_estimate10"] == pytest.approx(12.5)
    assert first["pv_estimate90"] == pytest.approx(20.0)
    assert data["forecasts"][1]["period_end"] == "2024-06-03T12:30:00Z"

    night = client.fallback_live_pv(now=datetime(2024, 6, 3, 23, 0, tzinfo=timezone.utc))
    assert night["estimated_actuals"][0]["pv_estimate"] == 0.0


def test_fallback_pv_without_probabilistic():
    data = SolcastClient(api_key="x", probabilistic=False).fallback_pv(now=NOON)
    assert "pv_estimate10" not in data["forecasts"][0]


def test_map_to_environmental():
    """Test that radiation items become environmental_data rows."""
    rows = map_to_environmental({
        "forecasts": [{
            "period_end": "2024-06-03T12:00:00.0000000Z",
            "ghi": 800, "dni": 700, "dhi": 100, "air_temp": 15, "cloud_opacity": 5,
        }]
    }, forecast_horizon=24)
    assert len(rows) == 1
    row = rows[0]
    assert row["timestamp"] == NOON
    assert row["weather"] == "Sunny"
    assert row["humidity"] == 60
    assert row["wind_speed"] == 15
    assert row["dhi"] == 100
    assert row["forecast_horizon"] == 24
    assert row["data_source"] == "solcast_forecast"
    assert "wind_direction" not in row


def test_map_to_environmental_sources():
    fallback = SolcastClient(api_key="x").fallback_radiation(now=NOON)
    assert {row["data_source"] for row in map_to_environmental(fallback)} == {"fallback"}

    live = {"estimated_actuals": [{"period_end": "2024-06-03T12:00:00Z", "ghi": 0, "dni": 0, "wind_speed_10m": 3}]}
    rows = map_to_environmental(live, is_forecast=False)
    assert rows[0]["data_source"] == "solcast_live"
    assert rows[0]["wind_speed"] == 3
    assert rows[0]["weather"] == "Night"


def test_enhance_with_pv():
    """Test that PV estimates attach to rows with the same timestamp only."""
    rows = map_to_environmental({"forecasts": [
        {"period_end": "2024-06-03T12:00:00Z", "ghi": 500, "dni": 300},
        {"period_end": "2024-06-03T12:30:00Z", "ghi": 500, "dni": 300},
    ]})
    pv = {"forecasts": [{"period_end": "2024-06-03T12:00:00.0000000Z", "pv_estimate": 8.0, "pv_estimate10": 6.0}]}
    enhanced = enhance_with_pv(rows, pv)
    assert enhanced[0]["forecast_p50"] == 8.0
    assert enhanced[0]["forecast_p10"] == 6.0
    assert "forecast_p90" not in enhanced[0]
    assert "forecast_p50" not in enhanced[1]
