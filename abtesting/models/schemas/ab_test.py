from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from abtesting.models.orm.ab_test import ABTestStatus, ABTestType

from .analysis import AnalysisModel

DEFAULT_TRACKED_METRICS = ["qualityScore", "latencyMs", "errorRate"]


class VariantConfig(BaseModel):
    """Configuration for a single variant in a new test."""

    name: Optional[str] = None
    weight: int = Field(
        0,
        ge=0,
        description="Percentage of traffic allocated to this variant.",
    )
    # Prompt / model settings the caller applies when serving this variant
    config: Optional[Dict] = None


class TargetAudience(BaseModel):
    """Who is eligible for the test. Empty means everyone."""

    user_ids: Optional[List[str]] = Field(
        None, description="Explicit allow-list of user ids."
    )

    model_config = ConfigDict(extra="allow")


class ABTestCreateModel(BaseModel):
    name: str
    description: Optional[str] = None
    test_type: ABTestType = ABTestType.MODEL
    operation: str = Field(..., description="e.g., 'narrativeGeneration', 'validation'")
    # Length is checked by the registry so it can raise InvalidConfiguration
    variants: List[VariantConfig]
    target_audience: TargetAudience = Field(default_factory=TargetAudience)
    metrics: List[str] = Field(default_factory=lambda: list(DEFAULT_TRACKED_METRICS))


class VariantModel(BaseModel):
    variant_id: str
    name: Optional[str] = None
    weight: int
    is_control: bool
    config: Optional[Dict] = None

    model_config = ConfigDict(from_attributes=True)


class VariantStatsModel(BaseModel):
    assignments: int = 0
    generations: int = 0
    errors: int = 0
    total_latency_ms: float = 0.0
    total_quality_score: float = 0.0
    feedback_count: int = 0
    total_feedback_score: float = 0.0

    model_config = ConfigDict(from_attributes=True)


class ABTestResultsModel(BaseModel):
    total_assignments: int = 0
    variant_stats: Dict[str, VariantStatsModel] = Field(default_factory=dict)
    analysis: Optional[AnalysisModel] = None


class ABTestModel(BaseModel):
    """Read model for a persisted test, results included."""

    test_id: str
    name: str
    description: str = ""
    test_type: ABTestType
    operation: str
    status: ABTestStatus
    variants: List[VariantModel]
    target_audience: Dict = Field(default_factory=dict)
    metrics: List[str] = Field(default_factory=list)
    results: ABTestResultsModel = Field(default_factory=ABTestResultsModel)
    created_at: datetime
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ABTestResultsResponseModel(BaseModel):
    test_id: str
    name: str
    status: ABTestStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_assignments: int
    analysis: AnalysisModel
