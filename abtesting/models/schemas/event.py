from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventCreateModel(BaseModel):
    """Schema for recording an outcome event (API input)."""

    test_id: str
    variant_id: str
    user_id: str
    event_type: str = Field(..., description="generation, feedback, error or latency")
    metrics: Dict[str, float] = Field(
        default_factory=dict, description="e.g. latencyMs, qualityScore, rating"
    )


class EventResponseModel(BaseModel):
    test_id: str
    # None when the event was skipped (flag off or test not running)
    event_id: Optional[str] = None
    recorded: bool


class EventModel(BaseModel):
    """Data model for a persisted event record."""

    event_id: str
    test_id: str
    variant_id: str
    user_id: str
    event_type: str
    metrics: Dict[str, float] = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
