"""Detector contract and helpers shared by every detector."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Protocol, runtime_checkable

from render_analyzer.capabilities import Capability
from render_analyzer.models import Detection, DetectionContext, DetectionMetrics, StackFrame
from render_analyzer.scoring import DEFAULT_TRACE_DURATION_MS, ScoringResult
from render_analyzer.trace import TraceData, TraceEvent

EVIDENCE_LIMIT = 5


@runtime_checkable
class Detector(Protocol):
    """
    A detector scans an immutable trace and returns typed detections.

    Detectors must not mutate the trace or context, so the analyzer may run
    them in any order or in parallel.
    """

    name: str
    priority: int
    required_capabilities: frozenset[Capability]

    def detect(self, trace: TraceData, context: DetectionContext) -> list[Detection]:
        ...


def mapping_field(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, Mapping) else {}


def str_field(payload: Mapping[str, Any], key: str) -> str | None:
    value = payload.get(key)
    return value if isinstance(value, str) else None


def number_field(payload: Mapping[str, Any], key: str) -> float | None:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def int_field(payload: Mapping[str, Any], key: str) -> int | None:
    value = number_field(payload, key)
    return int(value) if value is not None else None


def stack_field(payload: Mapping[str, Any], key: str = "stackTrace") -> list[Mapping[str, Any]]:
    value = payload.get(key)
    if not isinstance(value, list):
        return []
    return [frame for frame in value if isinstance(frame, Mapping)]


def parse_stack_frame(frame: Mapping[str, Any]) -> StackFrame:
    return StackFrame(
        function_name=str_field(frame, "functionName") or "anonymous",
        file=str_field(frame, "url") or "unknown",
        line=int_field(frame, "lineNumber") or 0,
        column=int_field(frame, "columnNumber") or 0,
    )


def trace_duration_ms(context: DetectionContext) -> float:
    """Trace duration for scoring; falls back to one second for empty or degenerate traces."""
    duration = context.trace_duration_ms
    return duration if duration > 0 else DEFAULT_TRACE_DURATION_MS


def build_metrics(duration_ms: float, occurrences: int, result: ScoringResult) -> DetectionMetrics:
    return DetectionMetrics(
        duration_ms=duration_ms,
        occurrences=occurrences,
        impact_score=result.impact_score,
        confidence=result.confidence,
        estimated_speedup_pct=result.estimated_speedup_pct,
        speedup_explanation=result.speedup_explanation,
        frame_budget_impact_pct=result.frame_budget_impact_pct,
        risk_assessment=result.risk_assessment,
    )


def build_evidence(events: Iterable[TraceEvent], limit: int = EVIDENCE_LIMIT) -> tuple[dict, ...]:
    evidence = []
    for event in events:
        if len(evidence) >= limit:
            break
        evidence.append(event.to_dict())
    return tuple(evidence)

