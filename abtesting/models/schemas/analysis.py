from typing import Dict, Optional

from pydantic import BaseModel, Field


class VariantAnalysis(BaseModel):
    """Summary statistics for one variant, derived from its counters."""

    name: str
    is_control: bool
    sample_size: int = Field(..., description="Number of generation events.")
    error_rate: float = Field(..., description="Errors per generation, in percent.")
    avg_latency_ms: int
    avg_quality_score: float
    avg_feedback_score: float


class AnalysisModel(BaseModel):
    variants: Dict[str, VariantAnalysis] = Field(default_factory=dict)
    winner: Optional[str] = None
    is_significant: bool = False
    confidence_level: int = 0
    z_score: Optional[float] = None
    quality_diff: Optional[float] = None
    quality_diff_percent: Optional[float] = None
    recommendation: str = ""
