"""Shared scoring for detections: impact, severity, confidence and speedup estimates."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Iterable

from render_analyzer.models import Confidence, DetectionType, RiskAssessment, Severity, StallType

DEFAULT_TRACE_DURATION_MS = 1000.0
DEFAULT_FRAME_BUDGET_MS = 1000.0 / 60

# Realistic fraction of the measured cost that a typical fix removes.
EFFICIENCY_FACTORS = {
    "batch_dom_writes": 0.7,
    "reduce_layer_count": 0.6,
    "use_raf": 0.65,
    "css_containment": 0.75,
    "default": 0.5,
}

FIX_TYPES = {
    DetectionType.LAYOUT_THRASHING: "batch_dom_writes",
    DetectionType.GPU_STALL: "reduce_layer_count",
    DetectionType.LONG_TASK: "use_raf",
    DetectionType.HEAVY_PAINT: "css_containment",
    DetectionType.FORCED_REFLOW: "batch_dom_writes",
}

FIX_DESCRIPTIONS = {
    DetectionType.LAYOUT_THRASHING: "batching DOM reads/writes",
    DetectionType.GPU_STALL: "optimizing GPU operations",
    DetectionType.LONG_TASK: "breaking up long tasks",
    DetectionType.HEAVY_PAINT: "applying CSS containment",
    DetectionType.FORCED_REFLOW: "eliminating forced synchronous layouts",
}

TYPE_MODIFIERS = {
    DetectionType.LAYOUT_THRASHING: 1.2,
    DetectionType.GPU_STALL: 1.1,
    DetectionType.LONG_TASK: 1.0,
    DetectionType.HEAVY_PAINT: 0.9,
    DetectionType.FORCED_REFLOW: 1.15,
}

STALL_TYPE_IMPACT = {
    StallType.SYNC: 25,
    StallType.TEXTURE_UPLOAD: 15,
    StallType.RASTER: 10,
}


@dataclass(frozen=True)
class ScoringWeights:
    duration: float = 0.45
    frequency: float = 0.30
    impact: float = 0.25


@dataclass(frozen=True)
class SeverityThresholds:
    critical: float = 80
    high: float = 60
    warning: float = 35


@dataclass(frozen=True)
class ScoringConfig:
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    severity_thresholds: SeverityThresholds = field(default_factory=SeverityThresholds)
    max_speedup_pct: float = 80
    high_confidence_threshold_ms: float = 10
    medium_confidence_threshold_ms: float = 5

    def with_overrides(self, **overrides) -> "ScoringConfig":
        return replace(self, **overrides)


DEFAULT_SCORING_CONFIG = ScoringConfig()


@dataclass(frozen=True)
class ScoringInput:
    detection_type: DetectionType
    duration_ms: float
    occurrences: int
    frame_budget_ms: float
    trace_duration_ms: float
    affected_nodes: int | None = None
    correlated_frame_drops: int | None = None
    layer_count: int | None = None
    stall_type: StallType | None = None


@dataclass(frozen=True)
class ScoreBreakdown:
    duration_score: int
    frequency_score: int
    impact_score: int
    type_modifier: float
    weights: ScoringWeights


@dataclass(frozen=True)
class ScoringResult:
    impact_score: int
    severity: Severity
    confidence: Confidence
    estimated_speedup_pct: int
    speedup_explanation: str
    frame_budget_impact_pct: float
    score_breakdown: ScoreBreakdown
    risk_assessment: RiskAssessment


def _round_half_up(value: float, digits: int = 0) -> float:
    if not math.isfinite(value):
        return value
    scale = 10 ** digits
    return math.floor(value * scale + 0.5) / scale


def _positive_or(value: float, default: float) -> float:
    if not math.isfinite(value) or value <= 0:
        return default
    return value


def _duration_score(duration_ms: float, frame_budget_ms: float, trace_duration_ms: float) -> float:
    trace_pct = duration_ms / trace_duration_ms * 100
    frame_budgets_consumed = duration_ms / frame_budget_ms
    log_score = math.log10(frame_budgets_consumed + 1) * 30
    linear_score = min(trace_pct * 5, 40)
    return min(100.0, log_score + linear_score)


def _frequency_score(occurrences: int, frame_budget_ms: float, trace_duration_ms: float) -> float:
    expected_frames = trace_duration_ms / frame_budget_ms
    occurrence_rate = occurrences / max(expected_frames, 1)
    log_occurrences = math.log10(occurrences + 1) * 25
    rate_score = min(occurrence_rate * 100, 50)
    return min(100.0, log_occurrences + rate_score)


def _impact_component_score(scoring_input: ScoringInput) -> float:
    score = 50.0
    detection_type = scoring_input.detection_type

    if detection_type is DetectionType.LAYOUT_THRASHING:
        if scoring_input.affected_nodes is not None:
            score += min(math.log10(max(scoring_input.affected_nodes, 0) + 1) * 20, 30)
    elif detection_type is DetectionType.LONG_TASK:
        if scoring_input.correlated_frame_drops is not None:
            score += min(max(scoring_input.correlated_frame_drops, 0) * 5, 40)
    elif detection_type is DetectionType.HEAVY_PAINT:
        if scoring_input.layer_count is not None:
            score += min(math.log10(max(scoring_input.layer_count, 0) + 1) * 15, 25)
    elif detection_type is DetectionType.GPU_STALL:
        if scoring_input.stall_type is not None:
            score += STALL_TYPE_IMPACT[scoring_input.stall_type]
    elif detection_type is DetectionType.FORCED_REFLOW:
        score += 20
        if scoring_input.affected_nodes is not None:
            score += min(math.log10(max(scoring_input.affected_nodes, 0) + 1) * 15, 20)

    return min(100.0, score)


def _severity(score: int, per_occurrence_budget_pct: float, thresholds: SeverityThresholds) -> Severity:
    if score >= thresholds.critical or per_occurrence_budget_pct > 100:
        return Severity.CRITICAL
    if score >= thresholds.high or per_occurrence_budget_pct > 50:
        return Severity.HIGH
    if score >= thresholds.warning or per_occurrence_budget_pct > 25:
        return Severity.WARNING
    return Severity.INFO


def _confidence(duration_ms: float, occurrences: int, config: ScoringConfig) -> Confidence:
    avg_duration = duration_ms / max(occurrences, 1)
    if avg_duration >= config.high_confidence_threshold_ms and occurrences >= 3:
        return Confidence.HIGH
    if avg_duration >= config.medium_confidence_threshold_ms or occurrences >= 2:
        return Confidence.MEDIUM
    return Confidence.LOW


def _speedup_explanation(
    detection_type: DetectionType,
    duration_ms: float,
    frame_budget_ms: float,
    efficiency: float,
    speedup_pct: int,
    max_speedup_pct: float
) -> str:
    frame_budgets = duration_ms / frame_budget_ms
    return (
        f"This issue consumes {frame_budgets:.1f} frame budgets ({duration_ms:.1f}ms). "
        f"By {FIX_DESCRIPTIONS[detection_type]}, we estimate a {speedup_pct}% improvement "
        f"(based on {round(efficiency * 100)}% typical efficiency for this fix type, "
        f"capped at {round(max_speedup_pct)}% for conservative estimation)."
    )


def _assess_risk(
    duration_ms: float,
    occurrences: int,
    score: int,
    per_occurrence_budget_pct: float
) -> RiskAssessment:
    factors = []

    if per_occurrence_budget_pct > 100 or score >= 80:
        ux_impact = "critical"
        factors.append("Causes visible frame drops and jank")
    elif per_occurrence_budget_pct > 50 or score >= 60:
        ux_impact = "significant"
        factors.append("May cause noticeable stuttering")
    elif per_occurrence_budget_pct > 25 or score >= 35:
        ux_impact = "moderate"
        factors.append("Could affect smooth scrolling")
    else:
        ux_impact = "minimal"
        factors.append("Unlikely to be user-visible")

    if occurrences >= 10 or duration_ms > 500:
        regression_risk = "high"
        factors.append("Frequent occurrence suggests systemic issue")
    elif occurrences >= 5 or duration_ms > 200:
        regression_risk = "medium"
        factors.append("Multiple occurrences detected")
    else:
        regression_risk = "low"
        factors.append("Isolated occurrence")

    fix_priority = max(1, math.ceil(score / 10))
    if ux_impact == "critical":
        fix_priority = min(10, fix_priority + 2)
        factors.append("Priority boosted due to critical UX impact")
    if regression_risk == "high":
        fix_priority = min(10, fix_priority + 1)
        factors.append("Priority boosted due to regression risk")

    return RiskAssessment(
        user_experience_impact=ux_impact,
        regression_risk=regression_risk,
        fix_priority=fix_priority,
        factors=tuple(factors)
    )


def calculate_score(
    scoring_input: ScoringInput,
    config: ScoringConfig = DEFAULT_SCORING_CONFIG
) -> ScoringResult:
    """
    Score one detection.

    Identical inputs always produce identical results. Trace durations and
    frame budgets that are not positive finite numbers fall back to the
    defaults, and a non-finite duration counts as zero.

    Args:
        scoring_input: Aggregated measurements for the detection
        config: Weights, thresholds and caps

    Returns:
        ScoringResult with impact score, severity, confidence and speedup
    """
    duration_ms = float(scoring_input.duration_ms)
    if not math.isfinite(duration_ms) or duration_ms < 0:
        duration_ms = 0.0
    occurrences = max(int(scoring_input.occurrences), 0)
    frame_budget_ms = _positive_or(scoring_input.frame_budget_ms, DEFAULT_FRAME_BUDGET_MS)
    trace_duration_ms = _positive_or(scoring_input.trace_duration_ms, DEFAULT_TRACE_DURATION_MS)

    duration_score = _duration_score(duration_ms, frame_budget_ms, trace_duration_ms)
    frequency_score = _frequency_score(occurrences, frame_budget_ms, trace_duration_ms)
    impact_component = _impact_component_score(scoring_input)
    type_modifier = TYPE_MODIFIERS[scoring_input.detection_type]

    weights = config.weights
    raw_score = (
        duration_score * weights.duration
        + frequency_score * weights.frequency
        + impact_component * weights.impact
    )
    impact_score = int(min(100, max(0, _round_half_up(raw_score * type_modifier))))

    per_occurrence_budget_pct = (duration_ms / max(occurrences, 1)) / frame_budget_ms * 100
    frame_budget_impact_pct = duration_ms / trace_duration_ms * 100

    efficiency = EFFICIENCY_FACTORS.get(
        FIX_TYPES[scoring_input.detection_type],
        EFFICIENCY_FACTORS["default"]
    )
    max_speedup_pct = min(max(config.max_speedup_pct, 0), 80)
    speedup_pct = int(_round_half_up(min(max(frame_budget_impact_pct * efficiency, 0), max_speedup_pct)))

    return ScoringResult(
        impact_score=impact_score,
        severity=_severity(impact_score, per_occurrence_budget_pct, config.severity_thresholds),
        confidence=_confidence(duration_ms, occurrences, config),
        estimated_speedup_pct=speedup_pct,
        speedup_explanation=_speedup_explanation(
            scoring_input.detection_type,
            duration_ms,
            frame_budget_ms,
            efficiency,
            speedup_pct,
            max_speedup_pct
        ),
        frame_budget_impact_pct=_round_half_up(frame_budget_impact_pct, 1),
        score_breakdown=ScoreBreakdown(
            duration_score=int(_round_half_up(duration_score)),
            frequency_score=int(_round_half_up(frequency_score)),
            impact_score=int(_round_half_up(impact_component)),
            type_modifier=type_modifier,
            weights=weights
        ),
        risk_assessment=_assess_risk(duration_ms, occurrences, impact_score, per_occurrence_budget_pct)
    )


def batch_score(
    inputs: Iterable[ScoringInput],
    config: ScoringConfig = DEFAULT_SCORING_CONFIG
) -> list[tuple[int, ScoringResult]]:
    """
    Score several detections and rank them by impact score (rank 1 is worst).

    Returns:
        List of (rank, result) pairs; ties keep input order
    """
    results = [calculate_score(item, config) for item in inputs]
    ranked = sorted(results, key=lambda result: -result.impact_score)
    return [(rank, result) for rank, result in enumerate(ranked, start=1)]
