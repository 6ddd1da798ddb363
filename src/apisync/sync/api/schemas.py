"""Response schemas for the queue endpoints."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Queue engine health."""
    status: str
    mode: str
    queues: dict[str, int] = Field(default_factory=dict)
    database: Optional[dict[str, Any]] = None
    circuit: Optional[dict[str, Any]] = None
