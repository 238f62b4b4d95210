"""
Configuration module for Facility Monitor.

Environment variables are read once at import time (after loading any .env file).
YAML configuration files shipped next to the services are loaded on demand.
"""
import os
import logging
from typing import Optional

import yaml
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

SERVICES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "services")

# Database connection
DB_USER = os.getenv("DB_USER", "postgres")
DB_PASSWORD = os.getenv("DB_PASSWORD", "postgres")
DB_HOST = os.getenv("DB_HOST", "db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "facility_monitor")
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+asyncpg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
)

# LLM providers (API keys are read per call, see services/llm_provider.py)
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o")
ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-20241022")

# Solcast
SOLCAST_API_KEY = os.getenv("SOLCAST_API_KEY")
SOLCAST_LATITUDE = float(os.getenv("SOLCAST_LATITUDE", "52.059937"))
SOLCAST_LONGITUDE = float(os.getenv("SOLCAST_LONGITUDE", "-9.507269"))
SOLCAST_CAPACITY = float(os.getenv("SOLCAST_CAPACITY", "25"))

# Auth
JWT_PUBLIC_KEY_PATH = os.getenv("JWT_PUBLIC_KEY_PATH", "/app/public.pem")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for the application process."""
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def load_yaml_config(filename: str, required_key: str = None) -> dict:
    """
    Load a YAML configuration file from the services directory.

    Args:
        filename: File name relative to the services directory
        required_key: Top-level key that must be present; its value is returned

    Returns:
        The parsed configuration, or the value under required_key

    Raises:
        ValueError: If the file is missing, empty, invalid, or lacks required_key
    """
    filepath = os.path.join(SERVICES_DIR, filename)
    try:
        with open(filepath, 'r', encoding='utf-8') as file:
            config = yaml.safe_load(file)
    except FileNotFoundError:
        raise ValueError(f"Configuration file not found: {filename}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {filename}: {str(e)}")

    if config is None:
        raise ValueError(f"Empty configuration file: {filename}")
    if required_key and required_key not in config:
        raise ValueError(f"Missing required key '{required_key}' in {filename}")
    return config[required_key] if required_key else config
