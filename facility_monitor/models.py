"""
SQLAlchemy table definitions for Facility Monitor.

The declarative models describe the facility database: power and environmental
readings, equipment records, settings, issue tracking and AI agent state.
Their metadata doubles as the catalogue of known tables for the query builder.
"""
from datetime import datetime, timezone
from typing import Dict, List

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(Text, nullable=False, unique=True)
    password = Column(Text, nullable=False)
    role = Column(Text, nullable=False, default="Viewer")


class PowerData(Base):
    """Power readings for the facility, all values in kW."""

    __tablename__ = "power_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    main_grid_power = Column(Float, nullable=False)
    solar_output = Column(Float, nullable=False)
    refrigeration_load = Column(Float, nullable=False)
    big_cold_room = Column(Float, nullable=False)
    big_freezer = Column(Float, nullable=False)
    smoker = Column(Float, nullable=False)
    total_load = Column(Float, nullable=False)
    unaccounted_load = Column(Float, nullable=False)

    __table_args__ = (
        Index("idx_power_data_timestamp", "timestamp"),
    )


class Settings(Base):
    __tablename__ = "settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    data_source = Column(Text, nullable=False, default="live")
    scenario_profile = Column(Text, nullable=False, default="sunny")
    grid_import_threshold = Column(Float, nullable=False, default=5)
    solar_output_minimum = Column(Float, nullable=False, default=1.5)
    unaccounted_power_threshold = Column(Float, nullable=False, default=15)
    enable_email_notifications = Column(Boolean, nullable=False, default=True)
    data_refresh_rate = Column(Integer, nullable=False, default=10)
    historical_data_storage = Column(Integer, nullable=False, default=90)
    grid_power_cost = Column(Float, nullable=False, default=0.28)
    feed_in_tariff = Column(Float, nullable=False, default=0.09)
    solcast_api_key = Column(Text)
    location_latitude = Column(Float, default=52.059937)
    location_longitude = Column(Float, default=-9.507269)
    use_solcast_data = Column(Boolean, default=False)
    solcast_forecast_horizon = Column(Integer, default=168)
    solcast_refresh_rate = Column(Integer, default=30)
    solcast_panel_capacity = Column(Float, default=25)
    solcast_panel_tilt = Column(Float, default=30)
    solcast_panel_azimuth = Column(Float, default=180)
    solcast_show_probabilistic = Column(Boolean, default=True)


class EnvironmentalData(Base):
    """Weather and irradiance observations or forecasts (temperatures in °C, wind in km/h)."""

    __tablename__ = "environmental_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    weather = Column(Text, nullable=False)
    air_temp = Column(Float, nullable=False)
    ghi = Column(Float, nullable=False)
    dni = Column(Float, nullable=False)
    dhi = Column(Float)
    humidity = Column(Float)
    wind_speed = Column(Float)
    wind_direction = Column(Float)
    cloud_opacity = Column(Float)
    forecast_p10 = Column(Float)
    forecast_p50 = Column(Float)
    forecast_p90 = Column(Float)
    data_source = Column(Text)
    forecast_horizon = Column(Integer)

    __table_args__ = (
        Index("idx_environmental_data_timestamp", "timestamp"),
    )


class Equipment(Base):
    __tablename__ = "equipment"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False, unique=True)
    type = Column(Text, nullable=False)
    model = Column(Text)
    manufacturer = Column(Text)
    installed_date = Column(DateTime(timezone=True))
    nominal_power = Column(Float)
    nominal_efficiency = Column(Float)
    current_efficiency = Column(Float)
    maintenance_interval = Column(Integer)
    last_maintenance = Column(DateTime(timezone=True))
    next_maintenance = Column(DateTime(timezone=True))
    status = Column(Text, nullable=False, default="operational")
    # "metadata" is reserved on declarative classes
    equipment_metadata = Column("metadata", JSONB)


class EquipmentEfficiency(Base):
    __tablename__ = "equipment_efficiency"

    id = Column(Integer, primary_key=True, autoincrement=True)
    equipment_id = Column(Integer, ForeignKey("equipment.id"), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    power_usage = Column(Float, nullable=False)
    efficiency_rating = Column(Float, nullable=False)
    temperature_conditions = Column(Float)
    production_volume = Column(Float)
    anomaly_detected = Column(Boolean, nullable=False, default=False)
    anomaly_score = Column(Float)
    notes = Column(Text)


class MaintenanceLog(Base):
    __tablename__ = "maintenance_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    equipment_id = Column(Integer, ForeignKey("equipment.id"), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    maintenance_type = Column(Text, nullable=False)
    description = Column(Text, nullable=False)
    technician = Column(Text)
    cost = Column(Float)
    parts_replaced = Column(Text)
    efficiency_before = Column(Float)
    efficiency_after = Column(Float)
    next_scheduled_date = Column(DateTime(timezone=True))


class Issue(Base):
    __tablename__ = "issues"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=False)
    type = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="open")
    priority = Column(Text, nullable=False, default="medium")
    submitter_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    assignee_id = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    closed_at = Column(DateTime(timezone=True))
    milestone = Column(Text)
    labels = Column(ARRAY(Text))
    votes = Column(Integer, nullable=False, default=0)


class IssueComment(Base):
    __tablename__ = "issue_comments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    issue_id = Column(Integer, ForeignKey("issues.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    is_edited = Column(Boolean, default=False)


class AgentFunction(Base):
    __tablename__ = "agent_functions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False, unique=True)
    description = Column(Text, nullable=False)
    module = Column(Text, nullable=False)
    parameters = Column(JSONB, nullable=False)
    return_type = Column(Text, nullable=False)
    access_level = Column(String(32), nullable=False, default="restricted")
    tags = Column(ARRAY(Text))


class AgentConversation(Base):
    __tablename__ = "langchain_agent_conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    title = Column(Text, nullable=False)
    agent_id = Column(Integer)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    context = Column(JSONB)
    status = Column(Text, nullable=False, default="active")


class AgentMessage(Base):
    __tablename__ = "langchain_agent_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("langchain_agent_conversations.id"), nullable=False)
    role = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)
    tokens = Column(Integer)
    function_call = Column(JSONB)
    function_response = Column(JSONB)
    message_metadata = Column("metadata", JSONB)


class AgentTask(Base):
    __tablename__ = "langchain_agent_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent_id = Column(Integer, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    task = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="pending")
    data = Column(JSONB)
    result = Column(JSONB)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class AgentSetting(Base):
    __tablename__ = "langchain_agent_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False, unique=True)
    value = Column(Text)
    description = Column(Text, nullable=False)
    type = Column(Text, nullable=False, default="string")
    category = Column(Text, nullable=False, default="general")
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_by = Column(Integer)


class AgentNotification(Base):
    __tablename__ = "langchain_agent_notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    title = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    type = Column(Text, nullable=False)
    source = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    read_at = Column(DateTime(timezone=True))
    data = Column(JSONB, nullable=False, default=dict)


class SignalNotification(Base):
    __tablename__ = "signal_notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    recipient_number = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    type = Column(Text, nullable=False, default="alert")
    status = Column(Text, nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    sent_at = Column(DateTime(timezone=True))
    scheduled_for = Column(DateTime(timezone=True))
    error_message = Column(Text)
    notification_metadata = Column("metadata", JSONB)
    triggered_by = Column(Integer)


def known_tables() -> List[str]:
    """Names of every table declared on the facility schema."""
    return sorted(Base.metadata.tables.keys())


def table_columns() -> Dict[str, List[str]]:
    """Map of table name to its column names, in declaration order."""
    return {
        name: [column.name for column in table.columns]
        for name, table in Base.metadata.tables.items()
    }
