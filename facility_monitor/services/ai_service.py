"""
AI-generated analytics for the facility.

The data summary sent to the model is computed here; the model call itself
goes through the LLM provider chain.
"""
import json
import logging
from datetime import datetime, date
from decimal import Decimal
from statistics import fmean, pstdev
from typing import Any, Dict, List, Optional

from facility_monitor.services.error_handler import InvalidQuery
from facility_monitor.services.llm_provider import complete_json

logger = logging.getLogger(__name__)

REPORT_TYPES = ("daily", "weekly", "monthly", "custom")
FORECAST_HORIZONS = ("day", "week", "month")

FACILITY_CONTEXT = """You are working for "Emporium", a seafood processing facility.
The main energy consumers are refrigeration systems (cold rooms and freezers), smoker equipment
and general facility operations. The facility also generates solar power."""

RECOMMENDATIONS_PROMPT = """You are an advanced energy efficiency advisor.
Analyze the energy consumption data and environmental conditions and generate 3-5 practical,
specific recommendations.

Return a JSON object: {"recommendations": [{"title": "...", "description": "...",
"impact": "high|medium|low", "category": "immediate|scheduled|strategic",
"savings": "X-Y% (estimated range)"}]}"""

ANALYTICS_PROMPT = """You are an advanced energy data analyst.
Identify key performance indicators, cyclical patterns, anomalies, correlations, efficiency metrics
and environmental impact.

Return a JSON object: {"summary": "...",
"keyInsights": [{"title": "...", "description": "...", "significance": "high|medium|low",
"trend": "improving|stable|declining"}],
"patterns": [{"name": "...", "description": "...", "impact": "..."}],
"anomalies": [{"description": "...", "possibleCauses": ["..."], "recommendedActions": ["..."]}],
"efficiencyScore": {"overall": 0-100, "components": {"solar": 0-100, "grid": 0-100,
"refrigeration": 0-100}, "explanation": "..."}}"""

REPORT_FOCUS = {
    "daily": "a daily executive summary: today's key metrics against yesterday, notable events, "
             "the consumption breakdown, weather impact and recommendations for the next 24 hours",
    "weekly": "a weekly executive summary: week-over-week trends, patterns through the week, "
              "daily comparisons, weather patterns, equipment efficiency and recommendations for next week",
    "monthly": "a monthly executive summary: month-over-month trends, seasonal patterns, weekly "
               "comparisons, cost analysis, environmental impact and strategic recommendations",
    "custom": "a comprehensive executive summary: key metrics, trends, consumption breakdown, "
              "efficiency analysis, environmental impact and strategic recommendations",
}

REPORT_PROMPT = """You are an advanced energy reporting system. Generate {focus}.

Return a JSON object: {{"title": "...", "generatedAt": "ISO timestamp", "period": "...",
"executiveSummary": "...",
"keyMetrics": [{{"name": "...", "value": "...", "change": "...", "trend": "improving|stable|declining",
"interpretation": "..."}}],
"sections": [{{"title": "...", "content": "..."}}],
"recommendations": [{{"title": "...", "description": "...", "priority": "high|medium|low",
"impact": "..."}}],
"conclusion": "..."}}"""

PREDICTIONS_PROMPT = """You are an energy prediction model. Using the historical data, predict for the
requested forecast horizon: total consumption with confidence intervals, solar generation, grid
requirements, load distribution across major systems and weather impact.

Return a JSON object: {"forecastPeriod": "...", "generatedAt": "ISO timestamp", "summary": "...",
"predictions": {"totalConsumption": {"expected": "...", "lowRange": "...", "highRange": "...",
"changeFromCurrentPeriod": "...", "confidence": 0-100},
"solarGeneration": {"expected": "...", "factors": ["..."], "confidence": 0-100},
"gridRequirements": {"expected": "...", "peak": "...", "confidence": 0-100},
"loadDistribution": {"refrigeration": "...", "smoker": "...", "other": "..."}},
"weatherImpact": {"description": "...", "significance": "high|medium|low"},
"timeSeriesForecasts": [{"timestamp": "...", "totalLoad": "...", "solarOutput": "...",
"gridPower": "..."}]}"""


def _numbers(rows: List[Dict[str, Any]], field: str) -> List[float]:
    return [float(row.get(field) or 0) for row in rows]


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def calculate_efficiency_metrics(current_power: Optional[Dict[str, Any]]) -> Dict[str, float]:
    """Ratios derived from a single power reading; missing inputs leave metrics out."""
    metrics = {}
    power = current_power or {}
    total_load = power.get("total_load")
    solar_output = power.get("solar_output")

    if solar_output and total_load:
        metrics["solar_utilization_ratio"] = solar_output / total_load

    if power.get("refrigeration_load") and power.get("big_cold_room") and power.get("big_freezer"):
        metrics["refrigeration_total"] = power["refrigeration_load"]
        metrics["cold_room_freezer_ratio"] = power["big_cold_room"] / (power["big_freezer"] or 1)

    if total_load:
        metrics["refrigeration_percentage"] = (power.get("refrigeration_load") or 0) / total_load
        metrics["smoker_percentage"] = (power.get("smoker") or 0) / total_load
        metrics["unaccounted_percentage"] = (power.get("unaccounted_load") or 0) / total_load

    return metrics


def format_data_for_analysis(
    power_trend: List[Dict[str, Any]],
    environmental_trend: Optional[List[Dict[str, Any]]] = None,
    current_power: Optional[Dict[str, Any]] = None,
    current_environment: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Summarize readings into the payload sent to the model.

    Args:
        power_trend: Historical power rows
        environmental_trend: Historical environmental rows
        current_power: Latest power row; defaults to the last trend row
        current_environment: Latest environmental row

    Returns:
        Dict with current_state, trends, efficiency_metrics and a raw data sample
    """
    environmental_trend = environmental_trend or []
    if current_power is None and power_trend:
        current_power = power_trend[-1]

    trends = {}
    if power_trend:
        total_loads = _numbers(power_trend, "total_load")
        grid_usage = _numbers(power_trend, "main_grid_power")
        solar_outputs = _numbers(power_trend, "solar_output")
        avg_total_load = fmean(total_loads)
        avg_solar_output = fmean(solar_outputs)
        load_variation = pstdev(total_loads) if len(total_loads) > 1 else 0.0
        solar_variation = pstdev(solar_outputs) if len(solar_outputs) > 1 else 0.0

        trends = {
            "average_total_load": avg_total_load,
            "average_main_grid_usage": fmean(grid_usage),
            "average_solar_output": avg_solar_output,
            "peak_load": max(total_loads),
            "min_load": min(total_loads),
            "load_variation_index": load_variation / avg_total_load if avg_total_load else 0.0,
            "solar_variation_index": solar_variation / (avg_solar_output or 1),
            "data_points": len(power_trend),
            "environmental_data_points": len(environmental_trend),
        }

    return {
        "current_state": {
            "current_power": current_power or {},
            "environmental_data": current_environment or {},
        },
        "trends": trends,
        "efficiency_metrics": calculate_efficiency_metrics(current_power),
        "raw_data_sample": power_trend[:3],
    }


class AIService:
    """Generates recommendations, analytics, reports and predictions from facility data."""

    def __init__(self, temperature: float = 0.7):
        self.temperature = temperature

    async def _ask(self, system_prompt: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await complete_json(
            f"{FACILITY_CONTEXT}\n\n{system_prompt}",
            json.dumps(payload, default=_json_default),
            temperature=self.temperature,
        )

    async def energy_recommendations(self, power_trend, environmental_trend=None) -> Dict[str, Any]:
        payload = format_data_for_analysis(power_trend, environmental_trend)
        result = await self._ask(RECOMMENDATIONS_PROMPT, payload)
        result.setdefault("recommendations", [])
        return result

    async def data_analytics(self, power_trend, environmental_trend=None) -> Dict[str, Any]:
        payload = format_data_for_analysis(power_trend, environmental_trend)
        return await self._ask(ANALYTICS_PROMPT, payload)

    async def executive_report(self, power_trend, environmental_trend=None, report_type: str = "daily") -> Dict[str, Any]:
        """
        Generate an executive report.

        Raises:
            InvalidQuery: If report_type is not daily, weekly, monthly or custom
        """
        if report_type not in REPORT_TYPES:
            raise InvalidQuery(f"Invalid report type: {report_type}. Must be one of {', '.join(REPORT_TYPES)}")
        payload = format_data_for_analysis(power_trend, environmental_trend)
        payload["report_type"] = report_type
        logger.info("Generating %s executive report from %s power readings", report_type, len(power_trend))
        return await self._ask(REPORT_PROMPT.format(focus=REPORT_FOCUS[report_type]), payload)

    async def predictions(self, power_trend, environmental_trend=None, horizon: str = "day") -> Dict[str, Any]:
        if horizon not in FORECAST_HORIZONS:
            raise InvalidQuery(f"Invalid forecast horizon: {horizon}. Must be one of {', '.join(FORECAST_HORIZONS)}")
        payload = format_data_for_analysis(power_trend, environmental_trend)
        payload["forecast_horizon"] = horizon
        return await self._ask(PREDICTIONS_PROMPT, payload)
