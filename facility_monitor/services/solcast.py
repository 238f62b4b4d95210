"""
Solcast API client.

Fetches radiation/weather and rooftop PV forecasts and live estimates, and
maps them onto environmental_data rows. When the API cannot be reached the
*_or_fallback methods return synthetic, time-of-day based data flagged with
"_fallback" so callers can tell it apart.
"""
import re
import math
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from facility_monitor.config import (
    SOLCAST_API_KEY, SOLCAST_CAPACITY, SOLCAST_LATITUDE, SOLCAST_LONGITUDE,
)
from facility_monitor.services.error_handler import ApiError, error_handler

logger = logging.getLogger(__name__)

BASE_URL = "https://api.solcast.com.au/data"
FORECAST_RADIATION_PATH = "/forecast/radiation_and_weather"
FORECAST_PV_PATH = "/forecast/rooftop_pv_power"
LIVE_RADIATION_PATH = "/live/radiation_and_weather"
LIVE_PV_PATH = "/live/rooftop_pv_power"

RADIATION_PARAMETERS = "ghi,dni,dhi,air_temp,cloud_opacity,wind_speed_10m,wind_direction_10m"
PROBABILISTIC_PV_PARAMETERS = "pv_estimate,pv_estimate10,pv_estimate90"

REQUEST_TIMEOUT = 8.0
DEFAULT_WIND_SPEED = 15
FALLBACK_POINTS = 4
FALLBACK_STEP = timedelta(minutes=30)

_FRACTION = re.compile(r"\.(\d{6})\d+")


class SolcastError(ApiError):
    status_code = 502
    error_type = "solcast_error"


def parse_period_end(value) -> datetime:
    """Parse a Solcast period_end; the API sends up to 7 fractional digits and a Z suffix."""
    if isinstance(value, datetime):
        return value
    text = _FRACTION.sub(r".\1", str(value)).replace("Z", "+00:00")
    return datetime.fromisoformat(text)


def determine_weather(ghi: float, dni: float) -> str:
    """Describe sky conditions from global and direct irradiance."""
    ratio = dni / (ghi or 1)
    if ghi < 50:
        return "Night"
    if ratio > 0.8 and ghi > 600:
        return "Sunny"
    if ratio > 0.6 and ghi > 400:
        return "Partly Cloudy"
    if ratio > 0.4 and ghi > 200:
        return "Mostly Cloudy"
    if ghi > 100:
        return "Cloudy"
    return "Overcast"


def estimate_humidity(temperature: float, ghi: float, hour: int) -> int:
    """
    Estimate relative humidity, which Solcast does not provide.

    Args:
        temperature: Air temperature in Celsius
        ghi: Global horizontal irradiance in W/m2
        hour: Hour of day of the reading

    Returns:
        Humidity percentage between 40 and 98
    """
    sun_intensity = min(100.0, max(0.0, ghi / 10))
    temp_effect = max(-15.0, min(15.0, (20 - temperature) * 1.5))
    if hour < 6 or hour > 18:
        diurnal_effect = 10
    elif 10 < hour < 16:
        diurnal_effect = -10
    else:
        diurnal_effect = 0
    humidity = min(98.0, max(40.0, 70 + temp_effect + diurnal_effect - sun_intensity / 10))
    return int(math.floor(humidity + 0.5))


def _pv_fractions(hour: int):
    """(p50, p10, p90) share of capacity for an hour of day."""
    if not 6 <= hour <= 20:
        return 0.0, 0.0, 0.0
    if 11 < hour < 16:
        return 0.7, 0.5, 0.8
    if 8 <= hour <= 11 or 16 <= hour <= 18:
        return 0.4, 0.2, 0.6
    return 0.1, 0.05, 0.2


def _radiation_values(hour: int):
    """(ghi, dni, air_temp) for an hour of day."""
    if not 6 <= hour <= 20:
        return 0, 0, 9
    if 11 < hour < 16:
        return 18, 4, 12
    return 12, 2, 10


def _period_start(moment: datetime) -> datetime:
    """Floor to the enclosing 30 minute period."""
    return moment.replace(minute=moment.minute - moment.minute % 30, second=0, microsecond=0)


def _iso(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


class SolcastClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        latitude: float = SOLCAST_LATITUDE,
        longitude: float = SOLCAST_LONGITUDE,
        capacity: float = SOLCAST_CAPACITY,
        tilt: float = 30,
        azimuth: float = 180,
        probabilistic: bool = True,
        base_url: str = BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else SOLCAST_API_KEY
        self.latitude = latitude
        self.longitude = longitude
        self.capacity = capacity
        self.tilt = tilt
        self.azimuth = azimuth
        self.probabilistic = probabilistic
        self.base_url = base_url
        self.transport = transport

    def _site_params(self, pv: bool = False) -> Dict[str, Any]:
        params = {"latitude": self.latitude, "longitude": self.longitude, "format": "json"}
        if pv:
            params.update({"capacity": self.capacity, "tilt": self.tilt, "azimuth": self.azimuth})
        return params

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        GET a Solcast endpoint.

        Raises:
            SolcastError: On a missing key, a transport failure or any non-2xx status
        """
        if not self.api_key:
            raise SolcastError("Solcast API key is not configured")
        headers = {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=REQUEST_TIMEOUT, transport=self.transport
            ) as client:
                response = await client.get(path, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise SolcastError(f"Solcast request failed: {str(e)}") from e

        if response.status_code == 402:
            logger.warning("Solcast API payment required - subscription may need renewal")
            raise SolcastError("Payment required")
        if response.is_error:
            raise SolcastError(f"Solcast API error: {response.status_code} {response.reason_phrase}")
        return response.json()

    async def forecast_radiation(self, hours: int = 336, period: str = "PT30M") -> Dict[str, Any]:
        params = self._site_params()
        params.update({"hours": hours, "period": period, "output_parameters": RADIATION_PARAMETERS})
        return await self._get(FORECAST_RADIATION_PATH, params)

    async def forecast_pv(self, hours: int = 336, period: str = "PT30M") -> Dict[str, Any]:
        params = self._site_params(pv=True)
        params.update({"hours": hours, "period": period})
        if self.probabilistic:
            params["output_parameters"] = PROBABILISTIC_PV_PARAMETERS
        return await self._get(FORECAST_PV_PATH, params)

    async def live_radiation(self) -> Dict[str, Any]:
        params = self._site_params()
        params["output_parameters"] = RADIATION_PARAMETERS
        return await self._get(LIVE_RADIATION_PATH, params)

    async def live_pv(self) -> Dict[str, Any]:
        return await self._get(LIVE_PV_PATH, self._site_params(pv=True))

    def fallback_radiation(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = _period_start(now or datetime.now(timezone.utc))
        forecasts = []
        for i in range(FALLBACK_POINTS):
            moment = now + i * FALLBACK_STEP
            ghi, dni, air_temp = _radiation_values(moment.hour)
            forecasts.append({
                "period_end": _iso(moment),
                "period": "PT30M",
                "ghi": ghi,
                "dni": dni,
                "air_temp": air_temp,
            })
        return {"forecasts": forecasts, "_fallback": True}

    def fallback_pv(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = _period_start(now or datetime.now(timezone.utc))
        forecasts = []
        for i in range(FALLBACK_POINTS):
            moment = now + i * FALLBACK_STEP
            p50, p10, p90 = _pv_fractions(moment.hour)
            forecast = {"period_end": _iso(moment), "period": "PT30M", "pv_estimate": self.capacity * p50}
            if self.probabilistic:
                forecast["pv_estimate10"] = self.capacity * p10
                forecast["pv_estimate90"] = self.capacity * p90
            forecasts.append(forecast)
        return {"forecasts": forecasts, "_fallback": True}

    def fallback_live_pv(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        p50, _, _ = _pv_fractions(now.hour)
        return {
            "estimated_actuals": [{"period_end": _iso(now), "period": "PT5M", "pv_estimate": self.capacity * p50}],
            "_fallback": True,
        }

    async def forecast_radiation_or_fallback(self, hours: int = 336, period: str = "PT30M") -> Dict[str, Any]:
        try:
            return await self.forecast_radiation(hours, period)
        except SolcastError as e:
            error_handler.track(e, {"endpoint": FORECAST_RADIATION_PATH})
            logger.warning("Using fallback radiation forecast: %s", e)
            return self.fallback_radiation()

    async def forecast_pv_or_fallback(self, hours: int = 336, period: str = "PT30M") -> Dict[str, Any]:
        try:
            return await self.forecast_pv(hours, period)
        except SolcastError as e:
            error_handler.track(e, {"endpoint": FORECAST_PV_PATH})
            logger.warning("Using fallback PV forecast: %s", e)
            return self.fallback_pv()

    async def live_radiation_or_fallback(self) -> Dict[str, Any]:
        try:
            return await self.live_radiation()
        except SolcastError as e:
            error_handler.track(e, {"endpoint": LIVE_RADIATION_PATH})
            logger.warning("Using fallback live radiation: %s", e)
            fallback = self.fallback_radiation()
            return {"estimated_actuals": fallback["forecasts"], "_fallback": True}

    async def live_pv_or_fallback(self) -> Dict[str, Any]:
        try:
            return await self.live_pv()
        except SolcastError as e:
            error_handler.track(e, {"endpoint": LIVE_PV_PATH})
            logger.warning("Using fallback live PV: %s", e)
            return self.fallback_live_pv()


def map_to_environmental(
    solcast_data: Dict[str, Any],
    is_forecast: bool = True,
    forecast_horizon: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """
    Convert a Solcast radiation response into environmental_data rows.

    Args:
        solcast_data: Forecast ("forecasts") or live ("estimated_actuals") payload
        is_forecast: Whether the payload is a forecast
        forecast_horizon: Hours ahead, stored when given

    Returns:
        Rows keyed by environmental_data column names
    """
    items = solcast_data.get("forecasts" if is_forecast else "estimated_actuals") or []
    if solcast_data.get("_fallback"):
        data_source = "fallback"
    else:
        data_source = "solcast_forecast" if is_forecast else "solcast_live"

    rows = []
    for item in items:
        timestamp = parse_period_end(item["period_end"])
        ghi = item.get("ghi") or 0
        dni = item.get("dni") or 0
        air_temp = item.get("air_temp")
        row = {
            "timestamp": timestamp,
            "weather": determine_weather(ghi, dni),
            "air_temp": air_temp,
            "ghi": ghi,
            "dni": dni,
            "humidity": estimate_humidity(air_temp if air_temp is not None else 20, ghi, timestamp.hour),
            "wind_speed": item["wind_speed_10m"] if item.get("wind_speed_10m") is not None else DEFAULT_WIND_SPEED,
            "data_source": data_source,
        }
        optional = {
            "dhi": item.get("dhi"),
            "wind_direction": item.get("wind_direction_10m"),
            "cloud_opacity": item.get("cloud_opacity"),
            "forecast_horizon": forecast_horizon,
        }
        row.update({k: v for k, v in optional.items() if v is not None})
        rows.append(row)
    return rows


def enhance_with_pv(environmental_rows: List[Dict[str, Any]], pv_data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Attach forecast_p50/p10/p90 from PV estimates whose period_end matches a row timestamp."""
    items = pv_data.get("forecasts") or pv_data.get("estimated_actuals") or []
    by_timestamp = {parse_period_end(item["period_end"]): item for item in items}

    enhanced = []
    for row in environmental_rows:
        pv_item = by_timestamp.get(row["timestamp"])
        if pv_item is None:
            enhanced.append(row)
            continue
        row = dict(row, forecast_p50=pv_item.get("pv_estimate"))
        if pv_item.get("pv_estimate10") is not None:
            row["forecast_p10"] = pv_item["pv_estimate10"]
        if pv_item.get("pv_estimate90") is not None:
            row["forecast_p90"] = pv_item["pv_estimate90"]
        enhanced.append(row)
    return enhanced
