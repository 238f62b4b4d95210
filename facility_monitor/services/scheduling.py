"""
Equipment scheduling advice based on the PV forecast.

Recommends when energy-intensive equipment should run (high solar output),
which evening windows to avoid (low solar, high grid prices), and when
flexible equipment can be brought forward.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from facility_monitor.services.forecasting import to_datetime

logger = logging.getLogger(__name__)

GRID_PRICE_PER_KWH = 0.25
OPERATION_HOURS = 3
DEFAULT_POWER_REQUIREMENT = 10.0
TOP_SOLAR_SHARE = 0.2
LOW_SOLAR_KW = 5.0
HIGH_SOLAR_KW = 10.0
HIGH_CONFIDENCE_KW = 15.0
PEAK_PRICE_HOURS = range(16, 21)
MAX_GAP = timedelta(hours=1)

ENERGY_INTENSIVE_TYPES = ("refrigeration", "processing")


def _points(forecast: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Normalize forecast entries (API rows or Solcast payload items) to {timestamp, pv_estimate}."""
    points = []
    for item in forecast:
        timestamp = item.get("timestamp") or item.get("period_end")
        if timestamp is None:
            continue
        pv = item.get("pv_estimate")
        if pv is None:
            pv = item.get("forecast_p50")
        points.append({"timestamp": to_datetime(timestamp), "pv_estimate": float(pv or 0)})
    return points


def power_requirement(equipment: Dict[str, Any]) -> float:
    metadata = equipment.get("equipment_metadata") or equipment.get("metadata") or {}
    value = equipment.get("power_requirement") or metadata.get("power_requirement") or equipment.get("nominal_power")
    return float(value or DEFAULT_POWER_REQUIREMENT)


def operation_flexibility(equipment: Dict[str, Any]) -> Optional[str]:
    metadata = equipment.get("equipment_metadata") or equipment.get("metadata") or {}
    return equipment.get("operation_flexibility") or metadata.get("operation_flexibility")


def potential_savings(solar_output: float, power: float) -> float:
    """Grid cost avoided by covering a 3 hour run with solar."""
    coverage = min(1.0, solar_output / power) if power else 0.0
    return power * OPERATION_HOURS * coverage * GRID_PRICE_PER_KWH


def best_continuous_period(points: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Three consecutive points (at most an hour apart) with the highest average PV."""
    ordered = sorted(points, key=lambda p: p["timestamp"])
    best = None
    for first, second, third in zip(ordered, ordered[1:], ordered[2:]):
        if second["timestamp"] - first["timestamp"] > MAX_GAP or third["timestamp"] - second["timestamp"] > MAX_GAP:
            continue
        average = (first["pv_estimate"] + second["pv_estimate"] + third["pv_estimate"]) / 3
        if average > (best["avg_pv_output"] if best else 0):
            best = {"start": first["timestamp"], "end": third["timestamp"], "avg_pv_output": average}
    return best


def continuous_period(points: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if len(points) < 2:
        return None
    ordered = sorted(points, key=lambda p: p["timestamp"])
    return {"start": ordered[0]["timestamp"], "end": ordered[-1]["timestamp"]}


def _recommendation(equipment, kind, window, savings, confidence, reason, solar_forecast) -> Dict[str, Any]:
    return {
        "equipment_id": equipment.get("id"),
        "equipment_name": equipment.get("name"),
        "recommendation_type": kind,
        "time_window": {"start": window["start"], "end": window["end"]},
        "potential_savings": savings,
        "confidence": confidence,
        "reason": reason,
        "solar_forecast": solar_forecast,
        "load_profile": power_requirement(equipment),
    }


def recommend_schedule(
    forecast: List[Dict[str, Any]],
    equipment: List[Dict[str, Any]],
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """
    Build scheduling recommendations for a list of equipment.

    Args:
        forecast: PV forecast points with timestamp and pv_estimate
        equipment: Equipment rows; power and flexibility may live in metadata
        now: Reference time for "advance" windows; defaults to the current UTC time

    Returns:
        Recommendations sorted by potential savings, highest first
    """
    points = _points(forecast)
    if not points or not equipment:
        return []
    now = now or datetime.now(timezone.utc)
    if points[0]["timestamp"].tzinfo is None and now.tzinfo is not None:
        now = now.astimezone(timezone.utc).replace(tzinfo=None)

    by_output = sorted(points, key=lambda p: p["pv_estimate"], reverse=True)
    high_solar = by_output[:int(len(by_output) * TOP_SOLAR_SHARE)]
    low_solar_evening = [
        p for p in points
        if p["pv_estimate"] < LOW_SOLAR_KW and p["timestamp"].hour in PEAK_PRICE_HOURS
    ]
    upcoming = [p for p in points if p["timestamp"] > now and p["pv_estimate"] > HIGH_SOLAR_KW]

    recommendations = []
    for item in equipment:
        power = power_requirement(item)
        flexibility = operation_flexibility(item)

        if item.get("type") in ENERGY_INTENSIVE_TYPES:
            best = best_continuous_period(high_solar)
            if best:
                recommendations.append(_recommendation(
                    item, "optimal", best,
                    potential_savings(best["avg_pv_output"], power),
                    "high" if best["avg_pv_output"] > HIGH_CONFIDENCE_KW else "medium",
                    f"High solar production period, optimal for {item.get('name')} operation",
                    best["avg_pv_output"],
                ))

            avoid = continuous_period(low_solar_evening)
            if avoid and flexibility != "none":
                recommendations.append(_recommendation(
                    item, "avoid", avoid,
                    potential_savings(LOW_SOLAR_KW, power) * 0.5,
                    "high",
                    "Low solar production and high grid price period, consider postponing operation",
                    0.0,
                ))

        if flexibility == "high":
            advance = best_continuous_period(upcoming)
            if advance:
                recommendations.append(_recommendation(
                    item, "advance", advance,
                    potential_savings(advance["avg_pv_output"], power) * 0.7,
                    "medium",
                    f"Upcoming high solar period, consider scheduling {item.get('name')} during this time",
                    advance["avg_pv_output"],
                ))

    logger.debug("Generated %s scheduling recommendations", len(recommendations))
    return sorted(recommendations, key=lambda r: r["potential_savings"], reverse=True)
