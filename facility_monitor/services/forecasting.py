"""
Anomaly detection, load forecasting and efficiency advice for power data.

Inputs are power_data / environmental_data rows as dicts (database rows or
API payloads); timestamps may be datetimes or ISO strings.
"""
import math
import logging
from datetime import datetime, timedelta
from functools import lru_cache
from statistics import StatisticsError, correlation, fmean, pstdev
from typing import Any, Dict, List, Optional, Sequence

from facility_monitor.config import load_yaml_config

logger = logging.getLogger(__name__)

METRICS = (
    "main_grid_power",
    "solar_output",
    "refrigeration_load",
    "big_cold_room",
    "big_freezer",
    "smoker",
    "total_load",
)

MIN_FORECAST_POINTS = 24
DEFAULT_TEMPERATURE = 20.0
DEFAULT_SUN_INTENSITY = 50.0
Z_95 = 1.96

ANOMALY_RULES_YAML = "anomaly_rules.yaml"


@lru_cache(maxsize=1)
def load_anomaly_rules() -> Dict[str, Any]:
    return load_yaml_config(ANOMALY_RULES_YAML, "rules")


def to_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _num(row: Dict[str, Any], field: str) -> float:
    return float(row.get(field) or 0)


def sun_intensity(env: Dict[str, Any]) -> float:
    """Sun intensity percentage; stored rows carry GHI instead."""
    if env.get("sun_intensity") is not None:
        return float(env["sun_intensity"])
    return min(100.0, max(0.0, _num(env, "ghi") / 10))


def temperature(env: Dict[str, Any]) -> float:
    value = env.get("air_temp", env.get("temperature"))
    return float(value) if value is not None else DEFAULT_TEMPERATURE


def _weekday(moment: datetime) -> int:
    # Sunday = 0
    return moment.isoweekday() % 7


def _correlation(xs: Sequence[float], ys: Sequence[float]) -> float:
    """Pearson correlation; 0 when undefined (constant input or too few points)."""
    try:
        return correlation(xs, ys)
    except StatisticsError:
        return 0.0


def closest_environmental(timestamp, environmental: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not environmental:
        return None
    target = to_datetime(timestamp)
    return min(environmental, key=lambda env: abs((to_datetime(env["timestamp"]) - target).total_seconds()))


def _condition_matches(condition: Dict[str, Any], context: Dict[str, Any]) -> bool:
    value = context.get(condition["field"])
    if value is None:
        return False
    if "below" in condition:
        return value < condition["below"]
    if "above" in condition:
        return value > condition["above"]
    if "not_equal" in condition:
        return value != condition["not_equal"]
    return True


def anomaly_causes_and_actions(metric: str, is_high: bool, env: Optional[Dict[str, Any]]) -> Dict[str, List[str]]:
    """
    Look up causes and actions for an anomaly.

    Args:
        metric: Power metric name
        is_high: Whether the value is above the mean
        env: Closest environmental reading, if any

    Returns:
        Dict with "causes" and "actions" lists
    """
    rule = load_anomaly_rules().get(metric, {}).get("high" if is_high else "low", {})
    causes = list(rule.get("causes", []))
    if env is not None:
        context = {
            "weather": env.get("weather"),
            "temperature": temperature(env),
            "sun_intensity": round(sun_intensity(env)),
        }
        for condition in rule.get("conditions", []):
            if _condition_matches(condition, context):
                causes.append(condition["cause"].format(**context))
    return {"causes": causes, "actions": list(rule.get("actions", []))}


def _severity(z_score: float, threshold: float) -> str:
    if z_score > threshold * 2:
        return "high"
    if z_score > threshold * 1.5:
        return "medium"
    return "low"


def detect_anomalies(
    power: List[Dict[str, Any]],
    environmental: Optional[List[Dict[str, Any]]] = None,
    threshold: float = 2.5,
) -> List[Dict[str, Any]]:
    """
    Flag readings whose z-score against the metric's population exceeds a threshold.

    Args:
        power: Power readings
        environmental: Environmental readings used to explain anomalies
        threshold: Z-score threshold

    Returns:
        One entry per anomalous (reading, metric) pair
    """
    environmental = environmental or []
    anomalies = []
    for metric in METRICS:
        values = [_num(row, metric) for row in power]
        if len(values) < 2:
            continue
        mean = fmean(values)
        std_dev = pstdev(values)
        if std_dev == 0:
            continue

        for row, value in zip(power, values):
            z_score = abs((value - mean) / std_dev)
            if z_score <= threshold:
                continue
            env = closest_environmental(row["timestamp"], environmental)
            explanation = anomaly_causes_and_actions(metric, value > mean, env)
            anomalies.append({
                "timestamp": to_datetime(row["timestamp"]),
                "metric": metric,
                "actual_value": value,
                "expected_value": mean,
                "deviation": (value - mean) / mean * 100 if mean else 0.0,
                "z_score": z_score,
                "is_anomaly": True,
                "severity": _severity(z_score, threshold),
                "possible_causes": explanation["causes"],
                "recommended_actions": explanation["actions"],
                "environment": {
                    "weather": env.get("weather"),
                    "temperature": temperature(env),
                    "sun_intensity": sun_intensity(env),
                } if env else None,
            })
    return anomalies


def _similar_time(env_rows: List[Dict[str, Any]], hour: int, day: int) -> List[Dict[str, Any]]:
    hours = {hour, (hour + 1) % 24, (hour - 1) % 24}
    days = {day, (day + 1) % 7, (day - 1) % 7}
    similar = []
    for env in env_rows:
        moment = to_datetime(env["timestamp"])
        if moment.hour in hours and _weekday(moment) in days:
            similar.append(env)
    return similar


def estimate_temperature(hour: int, day: int, env_rows: List[Dict[str, Any]]) -> float:
    if not env_rows:
        return DEFAULT_TEMPERATURE
    similar = _similar_time(env_rows, hour, day)
    return fmean(temperature(env) for env in (similar or env_rows))


def estimate_sun_intensity(hour: int, day: int, env_rows: List[Dict[str, Any]]) -> float:
    if not env_rows:
        return DEFAULT_SUN_INTENSITY
    if hour < 6 or hour > 19:
        return 0.0
    similar = _similar_time(env_rows, hour, day)
    if similar:
        return fmean(sun_intensity(env) for env in similar)
    # Peak around noon, 80% at most
    return (1 - abs(hour - 12) / 12) * 80


def _features(moment: datetime, env: Optional[Dict[str, Any]]) -> List[float]:
    return [
        moment.hour,
        _weekday(moment),
        temperature(env) if env else DEFAULT_TEMPERATURE,
        sun_intensity(env) if env else DEFAULT_SUN_INTENSITY,
    ]


def forecast_metric(
    power: List[Dict[str, Any]],
    env_rows: List[Dict[str, Any]],
    metric: str,
    hours: int,
) -> List[Dict[str, Any]]:
    """Correlation-weighted projection of one metric over the next hours."""
    values = [_num(row, metric) for row in power]
    timestamps = [to_datetime(row["timestamp"]) for row in power]
    features = [
        _features(moment, env_rows[i] if i < len(env_rows) else None)
        for i, moment in enumerate(timestamps)
    ]
    coefficients = [_correlation([f[i] for f in features], values) for i in range(len(features[0]))]
    mean_value = fmean(values)
    margin = Z_95 * pstdev(values) / math.sqrt(len(values))

    forecast = []
    last = timestamps[-1]
    for step in range(1, hours + 1):
        moment = last + timedelta(hours=step)
        day = _weekday(moment)
        inputs = [
            moment.hour,
            day,
            estimate_temperature(moment.hour, day, env_rows),
            estimate_sun_intensity(moment.hour, day, env_rows),
        ]
        predicted = mean_value + sum(c * x for c, x in zip(coefficients, inputs))
        forecast.append({
            "timestamp": moment,
            "predicted_value": max(0.0, predicted),
            "lower_bound": max(0.0, predicted - margin),
            "upper_bound": predicted + margin,
        })
    return forecast


def generate_power_forecast(
    power: List[Dict[str, Any]],
    environmental: Optional[List[Dict[str, Any]]] = None,
    hours: int = 24,
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Forecast every power metric for the next hours.

    Returns:
        {metric: [{timestamp, predicted_value, lower_bound, upper_bound}]}; the
        lists are empty when fewer than 24 readings are available
    """
    if len(power) < MIN_FORECAST_POINTS:
        logger.warning("Insufficient data for forecasting: %s readings", len(power))
        return {metric: [] for metric in METRICS}
    env_rows = (environmental or [])[-len(power):]
    return {metric: forecast_metric(power, env_rows, metric, hours) for metric in METRICS}


def format_hour_ranges(hours: Sequence[int]) -> str:
    """Group hours into readable ranges, e.g. [8, 9, 10, 14] -> "8:00-11:00, 14:00"."""
    if not hours:
        return ""
    ordered = sorted(hours)
    ranges = []
    start = end = ordered[0]

    def close():
        ranges.append(f"{start}:00" if start == end else f"{start}:00-{end + 1}:00")

    for hour in ordered[1:]:
        if hour == end + 1:
            end = hour
            continue
        close()
        start = end = hour
    close()
    return ", ".join(ranges)


def _hourly(power: List[Dict[str, Any]], field: str) -> Dict[int, List[float]]:
    by_hour: Dict[int, List[float]] = {}
    for row in power:
        by_hour.setdefault(to_datetime(row["timestamp"]).hour, []).append(_num(row, field))
    return by_hour


def efficiency_recommendations(
    power: List[Dict[str, Any]],
    forecast: Dict[str, List[Dict[str, Any]]],
    environmental: List[Dict[str, Any]],
) -> List[str]:
    """Plain-text efficiency advice from history and the load forecast."""
    if not power or not environmental:
        return ["Insufficient data for efficiency recommendations"]

    recommendations = []

    avg_solar = fmean(_num(row, "solar_output") for row in power)
    avg_grid = fmean(_num(row, "main_grid_power") for row in power)
    if avg_solar + avg_grid and avg_solar / (avg_solar + avg_grid) < 0.25:
        recommendations.append("Consider increasing solar capacity to reduce dependency on grid power")

    pairs = [
        (temperature(environmental[i]),
         _num(row, "refrigeration_load") + _num(row, "big_cold_room") + _num(row, "big_freezer"))
        for i, row in enumerate(power)
        if i < len(environmental)
    ]
    if len(pairs) > 10 and _correlation([t for t, _ in pairs], [load for _, load in pairs]) > 0.7:
        recommendations.append(
            "Refrigeration load strongly correlates with temperature. "
            "Consider improving insulation to reduce energy costs."
        )

    usage_by_hour = _hourly(power, "total_load")
    solar_by_hour = _hourly(power, "solar_output")
    hourly = {hour: (fmean(usage), fmean(solar_by_hour[hour])) for hour, usage in usage_by_hour.items()}
    mean_usage = fmean(usage for usage, _ in hourly.values())

    low_usage_hours = sorted(hour for hour, (usage, _) in hourly.items() if usage < mean_usage)
    high_solar_hours = [
        hour for hour, (_, solar) in sorted(hourly.items(), key=lambda item: -item[1][1])
        if 8 <= hour <= 16 and solar > 0
    ]
    if low_usage_hours:
        recommendations.append(
            f"Consider scheduling maintenance during low power usage hours: {format_hour_ranges(low_usage_hours)}"
        )
    if high_solar_hours:
        recommendations.append(
            f"Schedule energy-intensive operations during peak solar hours: {format_hour_ranges(high_solar_hours)}"
        )

    avg_smoker = fmean(_num(row, "smoker") for row in power)
    if avg_smoker > 0.5:
        high_usage_hours = {hour for hour, (usage, _) in hourly.items() if usage > mean_usage}
        smoker_by_hour = _hourly(power, "smoker")
        overlap = [
            hour for hour, usage in smoker_by_hour.items()
            if fmean(usage) > avg_smoker * 1.2 and hour in high_usage_hours
        ]
        if overlap:
            recommendations.append(
                f"Consider shifting smoker operations away from peak energy usage hours: {format_hour_ranges(overlap)}"
            )

    total_forecast = forecast.get("total_load") or []
    if total_forecast:
        high_threshold = fmean(point["predicted_value"] for point in total_forecast) * 1.2
        periods = []
        for point in total_forecast:
            if point["predicted_value"] <= high_threshold:
                continue
            moment = to_datetime(point["timestamp"])
            periods.append(f"{moment.date().isoformat()} {moment.hour}:00-{moment.hour + 1}:00")
        if periods:
            recommendations.append(
                f"Forecast indicates high energy usage during: {', '.join(periods)}. "
                "Consider load balancing if possible."
            )

    return recommendations
