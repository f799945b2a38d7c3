"""
Significance analysis for a single A/B test.

``analyze_results`` is a pure function over a test's variants and aggregate
counters. It compares exactly one control against the first non-control
variant on average quality score, using a z-test approximation that treats
the 0-100 quality scores as pseudo-proportions.
"""

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from abtesting.models.schemas.ab_test import ABTestModel, VariantStatsModel
from abtesting.models.schemas.analysis import AnalysisModel, VariantAnalysis

MIN_SAMPLE_SIZE = 100

# (z threshold, confidence level, significant)
CONFIDENCE_THRESHOLDS = (
    (2.58, 99, True),
    (1.96, 95, True),
    (1.65, 90, False),
)


def round_half_up(value: float, places: int = 0):
    """Rounds halves away from zero. Returns an int when ``places`` is 0."""
    rounded = Decimal(value).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
    return int(rounded) if places == 0 else float(rounded)


def summarize_variant(
    name: str, is_control: bool, stats: Optional[VariantStatsModel]
) -> VariantAnalysis:
    """Derived averages for one variant. Ratios are 0 when the denominator is 0."""
    stats = stats or VariantStatsModel()
    generations = stats.generations
    feedback_count = stats.feedback_count

    return VariantAnalysis(
        name=name,
        is_control=is_control,
        sample_size=generations,
        error_rate=(
            round_half_up(stats.errors / generations * 100, 2) if generations else 0.0
        ),
        avg_latency_ms=(
            round_half_up(stats.total_latency_ms / generations) if generations else 0
        ),
        avg_quality_score=(
            round_half_up(stats.total_quality_score / generations, 2) if generations else 0.0
        ),
        avg_feedback_score=(
            round_half_up(stats.total_feedback_score / feedback_count, 2)
            if feedback_count
            else 0.0
        ),
    )


def z_score_for(
    control_quality: float, control_n: int, treatment_quality: float, treatment_n: int
) -> float:
    variance = (
        control_quality * (100 - control_quality) / control_n
        + treatment_quality * (100 - treatment_quality) / treatment_n
    )
    # Scores outside 0-100 have no pseudo-proportion variance
    if variance <= 0:
        return 0.0
    return abs(treatment_quality - control_quality) / math.sqrt(variance)


def confidence_for(z_score: float) -> tuple[int, bool]:
    """Maps a z-score to (confidence level in percent, is significant)."""
    for threshold, level, significant in CONFIDENCE_THRESHOLDS:
        if z_score >= threshold:
            return level, significant
    return round_half_up(z_score / 1.96 * 95), False


def analyze_results(test: ABTestModel) -> AnalysisModel:
    analysis = AnalysisModel()
    variant_stats = test.results.variant_stats

    for variant in test.variants:
        analysis.variants[variant.variant_id] = summarize_variant(
            variant.name or variant.variant_id,
            variant.is_control,
            variant_stats.get(variant.variant_id),
        )

    control = next((v for v in test.variants if v.is_control), None)
    treatment = next((v for v in test.variants if not v.is_control), None)

    if control is None or treatment is None:
        analysis.recommendation = "Insufficient data for analysis"
        return analysis

    control_stats = analysis.variants[control.variant_id]
    treatment_stats = analysis.variants[treatment.variant_id]

    if (
        control_stats.sample_size < MIN_SAMPLE_SIZE
        or treatment_stats.sample_size < MIN_SAMPLE_SIZE
    ):
        analysis.recommendation = (
            f"Insufficient sample size: need at least {MIN_SAMPLE_SIZE} samples per "
            f"variant (current: control={control_stats.sample_size}, "
            f"treatment={treatment_stats.sample_size})"
        )
        return analysis

    control_quality = control_stats.avg_quality_score
    treatment_quality = treatment_stats.avg_quality_score
    quality_diff = round_half_up(treatment_quality - control_quality, 2)
    quality_diff_percent = (
        round_half_up(quality_diff / control_quality * 100, 2) if control_quality > 0 else 0.0
    )

    z_score = z_score_for(
        control_quality,
        control_stats.sample_size,
        treatment_quality,
        treatment_stats.sample_size,
    )
    confidence_level, is_significant = confidence_for(z_score)

    analysis.z_score = round_half_up(z_score, 4)
    analysis.quality_diff = quality_diff
    analysis.quality_diff_percent = quality_diff_percent
    analysis.confidence_level = confidence_level
    analysis.is_significant = is_significant

    if not is_significant:
        analysis.recommendation = (
            f"Results not statistically significant ({confidence_level}% confidence). "
            f"Quality difference: {quality_diff_percent}%. Continue collecting data."
        )
    elif treatment_quality > control_quality:
        analysis.winner = treatment.variant_id
        analysis.recommendation = (
            f"Treatment ({treatment.name or treatment.variant_id}) wins with "
            f"{quality_diff_percent}% improvement in quality score at "
            f"{confidence_level}% confidence. Consider rolling out."
        )
    else:
        analysis.winner = control.variant_id
        analysis.recommendation = (
            f"Control performs better. Treatment shows {abs(quality_diff_percent)}% "
            f"degradation. Recommend keeping control."
        )

    return analysis
