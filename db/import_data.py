"""
Database bootstrap script for Facility Monitor.

Creates the facility tables, inserts the default settings row and imports
any CSV exports found in the upload directory.

Database connection is configured through the same environment variables as
the application (DATABASE_URL, or DB_USER/DB_PASSWORD/DB_HOST/DB_PORT/DB_NAME).
"""
import os
import asyncio
import argparse
import logging

from facility_monitor.config import configure_logging
from facility_monitor.services.data_import import create_schema, ensure_default_settings, import_directory
from facility_monitor.services.database import engine

logger = logging.getLogger("import_data")

# Check if running in Docker container
DEFAULT_CSV_DIR = "/app/upload" if os.path.exists("/app/upload") else "upload"


def parse_args():
    parser = argparse.ArgumentParser(description="Create the facility schema and import CSV data")
    parser.add_argument("--csv-dir", default=DEFAULT_CSV_DIR, help=f"Directory holding <table>.csv files (default: {DEFAULT_CSV_DIR})")
    parser.add_argument("--schema-only", action="store_true", help="Create tables without importing data")
    return parser.parse_args()


async def main(args):
    async with engine.begin() as conn:
        await create_schema(conn)
        logger.info("Schema ready")
        if not args.schema_only and os.path.isdir(args.csv_dir):
            counts = await import_directory(conn, args.csv_dir)
            logger.info("Imported %d rows across %d tables", sum(counts.values()), len(counts))
        await ensure_default_settings(conn)
    await engine.dispose()


if __name__ == "__main__":
    configure_logging()
    asyncio.run(main(parse_args()))
