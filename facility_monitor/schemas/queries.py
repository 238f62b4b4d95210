"""
Query request schemas for Facility Monitor.

These models describe the pieces of a structured query. They are accepted
both by the HTTP layer and directly by the query builder.
"""
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

WhereClause = Dict[str, Any]


class JoinSpec(BaseModel):
    """A join onto another table."""
    table: str = Field(..., description="Table to join")
    on: Dict[str, str] = Field(
        ...,
        description="Column pairs; unqualified keys refer to the base table, unqualified values to the joined table"
    )
    kind: Literal["inner", "left", "right", "full"] = "inner"
    alias: Optional[str] = Field(
        None,
        pattern=r"^[A-Za-z_][A-Za-z0-9_]*$",
        description="Name the joined table is referred to by; needed for self-joins"
    )


class OrderSpec(BaseModel):
    column: str
    direction: Literal["asc", "desc"] = "asc"


class MetricSpec(BaseModel):
    """An aggregate expression such as AVG(total_load)."""
    function: Literal["count", "sum", "avg", "min", "max"]
    field: str
    alias: Optional[str] = None


class SelectRequest(BaseModel):
    table: str
    where: Optional[WhereClause] = None
    columns: Optional[List[str]] = None
    joins: Optional[List[JoinSpec]] = None
    order_by: Optional[List[Union[OrderSpec, str]]] = None
    limit: Optional[int] = Field(100, ge=0, le=5000)
    offset: Optional[int] = Field(None, ge=0)


class AggregateRequest(BaseModel):
    table: str
    metrics: List[MetricSpec] = Field(..., min_length=1)
    dimensions: Optional[List[str]] = None
    where: Optional[WhereClause] = None
    order_by: Optional[List[Union[OrderSpec, str]]] = None
    limit: Optional[int] = Field(None, ge=0, le=5000)


class ExecuteRequest(BaseModel):
    sql: str = Field(..., description="Read-only SQL statement")
    params: Dict[str, Any] = Field(default_factory=dict)
    max_rows: int = Field(100, ge=1, le=5000)
