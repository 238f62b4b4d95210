"""
Test configuration and fixtures for Facility Monitor.

This module provides a fake async connection so both unit and integration
tests run without a database.
"""
from datetime import datetime, timedelta, timezone

import pytest


class FakeMappings:
    def __init__(self, rows):
        self._rows = rows

    def __iter__(self):
        return iter(self._rows)

    def first(self):
        return self._rows[0] if self._rows else None


class FakeResult:
    """Stand-in for a SQLAlchemy result."""

    def __init__(self, rows=None, rowcount=None):
        self.rows = rows
        self.returns_rows = rows is not None
        self.rowcount = rowcount if rowcount is not None else len(rows or [])

    def mappings(self):
        return FakeMappings(self.rows or [])


class FakeConnection:
    """
    Records executed statements and replays queued results.

    Each call to execute() pops the next queued result; when the queue is
    empty an empty row set is returned.
    """

    def __init__(self, results=None):
        self.results = list(results or [])
        self.executed = []

    def queue(self, rows=None, rowcount=None):
        self.results.append(FakeResult(rows, rowcount))
        return self

    async def execute(self, statement, params=None):
        self.executed.append((str(statement), dict(params or {})))
        if self.results:
            return self.results.pop(0)
        return FakeResult([])

    @property
    def last_sql(self):
        return self.executed[-1][0]

    @property
    def last_params(self):
        return self.executed[-1][1]


@pytest.fixture
def conn():
    """A fresh fake connection."""
    return FakeConnection()


def make_power_rows(count, start=None, step=timedelta(hours=1), **overrides):
    """Power readings with a mild daily pattern."""
    start = start or datetime(2024, 6, 3, tzinfo=timezone.utc)
    rows = []
    for i in range(count):
        moment = start + i * step
        solar = max(0.0, 12.0 - abs(moment.hour - 13) * 2.0)
        row = {
            "id": i + 1,
            "timestamp": moment,
            "main_grid_power": 20.0 + (i % 5),
            "solar_output": solar,
            "refrigeration_load": 10.0 + (i % 3),
            "big_cold_room": 4.0 + (i % 2),
            "big_freezer": 5.0,
            "smoker": 1.0 + (i % 4) * 0.5,
            "total_load": 30.0 + (i % 5) + solar,
            "unaccounted_load": 2.0,
        }
        row.update(overrides)
        rows.append(row)
    return rows


def make_environmental_rows(count, start=None, step=timedelta(hours=1)):
    start = start or datetime(2024, 6, 3, tzinfo=timezone.utc)
    rows = []
    for i in range(count):
        moment = start + i * step
        rows.append({
            "id": i + 1,
            "timestamp": moment,
            "weather": "Sunny" if 9 <= moment.hour <= 17 else "Night",
            "air_temp": 12.0 + (moment.hour % 12) * 0.5,
            "ghi": max(0.0, 800.0 - abs(moment.hour - 13) * 120.0),
            "dni": 300.0,
        })
    return rows


@pytest.fixture
def power_rows():
    return make_power_rows(48)


@pytest.fixture
def environmental_rows():
    return make_environmental_rows(48)


@pytest.fixture
def make_power():
    """Factory for power readings, see make_power_rows."""
    return make_power_rows


@pytest.fixture
def make_environmental():
    return make_environmental_rows
