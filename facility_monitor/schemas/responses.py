"""
API request and response schemas for Facility Monitor.

This module defines the Pydantic models used by the HTTP layer beyond the
structured query models in queries.py.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class QueryResponse(BaseModel):
    """Response model for the /api/query endpoints."""
    rows: Optional[List[Dict[str, Any]]] = Field(
        None,
        description="Result rows (up to 100). Omitted for large result sets."
    )
    row_count: int = Field(..., description="Number of rows produced by the query")
    download_url: Optional[str] = Field(
        None,
        description="URL to download CSV for result sets larger than 100 rows"
    )
    truncated: bool = Field(
        False,
        description="Whether the row cap cut the result short"
    )


class AgentFunctionCall(BaseModel):
    arguments: Dict[str, Any] = Field(default_factory=dict, description="Tool arguments")


class AgentFunctionResult(BaseModel):
    name: str
    result: Dict[str, Any]


class ReportRequest(BaseModel):
    report_type: Literal["daily", "weekly", "monthly", "custom"] = "daily"
    hours: int = Field(24, ge=1, le=24 * 31, description="History window in hours")


class PredictionRequest(BaseModel):
    horizon: Literal["day", "week", "month"] = "day"
    hours: int = Field(24, ge=1, le=24 * 31, description="History window in hours")


class ErrorResponse(BaseModel):
    detail: str
    error_type: str
