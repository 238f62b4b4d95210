"""
Unit tests for PV-based equipment scheduling.
"""
from datetime import datetime, timedelta, timezone

import pytest

from facility_monitor.services.scheduling import (
    best_continuous_period, potential_savings, power_requirement, recommend_schedule,
)

DAY = datetime(2024, 6, 3, tzinfo=timezone.utc)


def _forecast():
    """Hourly PV for one day, peaking at 20 kW at noon."""
    return [
        {"timestamp": DAY + timedelta(hours=h), "pv_estimate": max(0.0, 20.0 - abs(h - 12) * 3)}
        for h in range(24)
    ]


FREEZER = {"id": 1, "name": "Blast Freezer", "type": "refrigeration", "nominal_power": 12}
SMOKER = {
    "id": 2,
    "name": "Smoker",
    "type": "smoking",
    "equipment_metadata": {"operation_flexibility": "high", "power_requirement": 6},
}


def test_power_requirement():
    """Test the lookup order for an equipment's power draw."""
    assert power_requirement({"power_requirement": 4, "nominal_power": 9}) == 4.0
    assert power_requirement({"metadata": {"power_requirement": 7}, "nominal_power": 9}) == 7.0
    assert power_requirement({"nominal_power": 9}) == 9.0
    assert power_requirement({}) == 10.0


def test_potential_savings():
    assert potential_savings(20.0, 10.0) == pytest.approx(7.5)
    assert potential_savings(5.0, 10.0) == pytest.approx(3.75)
    assert potential_savings(5.0, 0) == 0.0


def test_best_continuous_period_requires_adjacent_points():
    points = [
        {"timestamp": DAY + timedelta(hours=10), "pv_estimate": 15.0},
        {"timestamp": DAY + timedelta(hours=11), "pv_estimate": 15.0},
        {"timestamp": DAY + timedelta(hours=13), "pv_estimate": 15.0},
    ]
    assert best_continuous_period(points) is None
    assert best_continuous_period(points[:2]) is None


def test_recommend_schedule():
    """Test optimal, avoid and advance recommendations ordered by savings."""
    recommendations = recommend_schedule(_forecast(), [FREEZER, SMOKER], now=DAY)
    kinds = [(r["equipment_name"], r["recommendation_type"]) for r in recommendations]
    assert kinds == [
        ("Blast Freezer", "optimal"),
        ("Smoker", "advance"),
        ("Blast Freezer", "avoid"),
    ]

    optimal, advance, avoid = recommendations
    assert optimal["time_window"] == {"start": DAY + timedelta(hours=11), "end": DAY + timedelta(hours=13)}
    assert optimal["solar_forecast"] == pytest.approx(18.0)
    assert optimal["confidence"] == "high"
    assert optimal["potential_savings"] == pytest.approx(9.0)
    assert optimal["load_profile"] == 12.0

    assert advance["potential_savings"] == pytest.approx(3.15)
    assert advance["confidence"] == "medium"

    assert avoid["time_window"] == {"start": DAY + timedelta(hours=18), "end": DAY + timedelta(hours=20)}
    assert avoid["potential_savings"] == pytest.approx(1.875)
    assert avoid["solar_forecast"] == 0.0


def test_no_advance_after_solar_window():
    """Test that flexible equipment gets nothing once the sunny hours have passed."""
    recommendations = recommend_schedule(_forecast(), [SMOKER], now=DAY + timedelta(hours=16))
    assert recommendations == []


def test_inflexible_equipment_not_told_to_avoid():
    rigid = dict(FREEZER, operation_flexibility="none")
    kinds = [r["recommendation_type"] for r in recommend_schedule(_forecast(), [rigid], now=DAY)]
    assert kinds == ["optimal"]


def test_solcast_payload_and_naive_times():
    """Test that Solcast-style items with naive timestamps are accepted."""
    forecast = [
        {"period_end": (DAY + timedelta(hours=h)).replace(tzinfo=None).isoformat(),
         "forecast_p50": max(0.0, 20.0 - abs(h - 12) * 3)}
        for h in range(24)
    ]
    recommendations = recommend_schedule(forecast, [SMOKER], now=DAY)
    assert [r["recommendation_type"] for r in recommendations] == ["advance"]


def test_empty_inputs():
    assert recommend_schedule([], [FREEZER]) == []
    assert recommend_schedule(_forecast(), []) == []
