"""
CSV import and schema bootstrap for the facility database.

Readings exported from the plant (power_data.csv, environmental_data.csv,
equipment.csv, ...) are coerced to the column types declared in models.py
and inserted in batches.
"""
import os
import csv
import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List

from sqlalchemy import Boolean, DateTime, Float, Integer
from sqlalchemy.dialects.postgresql import ARRAY, JSONB

from facility_monitor.models import Base, Settings

logger = logging.getLogger(__name__)

BATCH_SIZE = 500

# Import order respects foreign keys
CSV_TABLES = [table.name for table in Base.metadata.sorted_tables]

_TRUE = {"true", "t", "1", "yes", "y"}


def _coerce(column, raw: str) -> Any:
    if raw is None or raw.strip() == "":
        return None
    value = raw.strip()
    column_type = column.type
    if isinstance(column_type, Boolean):
        return value.lower() in _TRUE
    if isinstance(column_type, Integer):
        return int(value)
    if isinstance(column_type, Float):
        return float(value)
    if isinstance(column_type, DateTime):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    if isinstance(column_type, (JSONB, ARRAY)):
        return json.loads(value)
    return value


def parse_csv_rows(table_name: str, lines: Iterable[str]) -> List[Dict[str, Any]]:
    """
    Parse CSV lines into records typed for the given table.

    Header names are matched against column names; unknown headers are
    skipped with a warning.

    Raises:
        ValueError: If the table is unknown or a value cannot be coerced
    """
    table = Base.metadata.tables.get(table_name)
    if table is None:
        raise ValueError(f"Unknown table: {table_name}")

    reader = csv.DictReader(lines)
    headers = reader.fieldnames or []
    unknown = [h for h in headers if h not in table.columns]
    if unknown:
        logger.warning("Skipping unknown columns for %s: %s", table_name, ", ".join(unknown))

    records = []
    for line_number, row in enumerate(reader, start=2):
        record = {}
        for name in headers:
            if name in unknown:
                continue
            try:
                record[name] = _coerce(table.columns[name], row.get(name))
            except (TypeError, ValueError) as e:
                raise ValueError(f"{table_name} line {line_number}, column {name}: {str(e)}") from e
        records.append(record)
    return records


async def import_csv(conn, table_name: str, path: str) -> int:
    """Insert every row of a CSV file into table_name, returning the row count."""
    with open(path, "r", encoding="utf-8", newline="") as f:
        records = parse_csv_rows(table_name, f)

    table = Base.metadata.tables[table_name]
    for start in range(0, len(records), BATCH_SIZE):
        await conn.execute(table.insert(), records[start:start + BATCH_SIZE])
    logger.info("Imported %d rows into %s", len(records), table_name)
    return len(records)


async def create_schema(conn) -> None:
    await conn.run_sync(Base.metadata.create_all)


async def ensure_default_settings(conn) -> bool:
    """Insert the default settings row when the table is empty."""
    result = await conn.execute(Settings.__table__.select().limit(1))
    if result.first() is not None:
        return False
    await conn.execute(Settings.__table__.insert())
    logger.info("Inserted default settings row")
    return True


async def import_directory(conn, csv_dir: str) -> Dict[str, int]:
    """Import every known CSV file found in csv_dir."""
    counts = {}
    for table_name in CSV_TABLES:
        path = os.path.join(csv_dir, f"{table_name}.csv")
        if not os.path.exists(path):
            logger.info("No CSV for %s in %s", table_name, csv_dir)
            continue
        counts[table_name] = await import_csv(conn, table_name, path)
    return counts
