"""Detection, warning and analysis-result models."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from render_analyzer.capabilities import Capability


def _plain_dict(items: list[tuple[str, Any]]) -> dict:
    """asdict factory that stores enum members as their values."""
    return {key: value.value if isinstance(value, Enum) else value for key, value in items}


class DetectionType(str, Enum):
    LAYOUT_THRASHING = "layout_thrashing"
    GPU_STALL = "gpu_stall"
    LONG_TASK = "long_task"
    HEAVY_PAINT = "heavy_paint"
    FORCED_REFLOW = "forced_reflow"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class StallType(str, Enum):
    SYNC = "sync"
    TEXTURE_UPLOAD = "texture_upload"
    RASTER = "raster"


class WarningCode(str, Enum):
    DEGRADED_ANALYSIS = "DEGRADED_ANALYSIS"
    DETECTOR_FAILED = "DETECTOR_FAILED"


@dataclass(frozen=True)
class RiskAssessment:
    user_experience_impact: str
    regression_risk: str
    fix_priority: int
    factors: tuple[str, ...]


@dataclass(frozen=True)
class DetectionLocation:
    selector: str | None = None
    element: str | None = None
    file: str | None = None
    line: int | None = None
    column: int | None = None


@dataclass(frozen=True)
class DetectionMetrics:
    duration_ms: float
    occurrences: int
    impact_score: int
    confidence: Confidence
    estimated_speedup_pct: int
    speedup_explanation: str
    frame_budget_impact_pct: float
    risk_assessment: RiskAssessment


@dataclass(frozen=True)
class Detection:
    type: DetectionType
    severity: Severity
    description: str
    location: DetectionLocation
    metrics: DetectionMetrics
    evidence: tuple[dict, ...]

    def to_dict(self) -> dict:
        return asdict(self, dict_factory=_plain_dict)


@dataclass(frozen=True)
class DOMPropertyAccess:
    property: str
    timestamp: float
    type: str


@dataclass(frozen=True)
class ReadWritePattern:
    frame_id: int
    reads: tuple[DOMPropertyAccess, ...]
    writes: tuple[DOMPropertyAccess, ...]
    forced_reflows: int


@dataclass(frozen=True)
class LayoutThrashDetection(Detection):
    selector: str
    reflow_cost_ms: float
    occurrences: int
    affected_nodes: int
    read_write_pattern: tuple[ReadWritePattern, ...]


@dataclass(frozen=True)
class LayerBounds:
    x: float = 0
    y: float = 0
    width: float = 0
    height: float = 0


@dataclass(frozen=True)
class LayerInfo:
    layer_id: int
    bounds: LayerBounds
    compositing_reasons: tuple[str, ...]


@dataclass(frozen=True)
class GPUStallDetection(Detection):
    element: str
    stall_ms: float
    occurrences: int
    stall_type: StallType
    layer_info: LayerInfo | None = None


@dataclass(frozen=True)
class StackFrame:
    function_name: str
    file: str
    line: int
    column: int
    is_source_mapped: bool = False


@dataclass(frozen=True)
class LongTaskDetection(Detection):
    function_name: str
    file: str
    line: int
    column: int
    cpu_ms: float
    occurrences: int
    correlated_frame_drops: int
    call_stack: tuple[StackFrame, ...]


@dataclass(frozen=True)
class HeavyPaintDetection(Detection):
    paint_time_ms: float
    raster_time_ms: float
    layer_count: int


@dataclass(frozen=True)
class AnalysisWarning:
    code: WarningCode
    message: str
    affected_detectors: tuple[str, ...] = ()
    suggestions: tuple[str, ...] = ()


@dataclass(frozen=True)
class FrameMetrics:
    total: int
    dropped: int
    avg_fps: float
    frame_budget_ms: float


@dataclass(frozen=True)
class DetectionContext:
    """Per-call analysis context shared read-only by every detector."""

    fps_target: float
    frame_budget_ms: float
    frame_metrics: FrameMetrics
    trace_start_time: float
    trace_end_time: float
    capabilities: frozenset[Capability]
    degraded_mode: bool = False

    @property
    def trace_duration_ms(self) -> float:
        return (self.trace_end_time - self.trace_start_time) / 1000


@dataclass(frozen=True)
class PhaseBreakdown:
    style_recalc_ms: float
    layout_ms: float
    paint_ms: float
    composite_ms: float
    gpu_ms: float


@dataclass(frozen=True)
class TraceSummary:
    name: str
    duration_ms: float
    frames: FrameMetrics
    phase_breakdown: PhaseBreakdown
    hotspots: dict[str, list[dict]]
    metadata: dict[str, Any]


@dataclass(frozen=True)
class AnalysisResult:
    summary: TraceSummary
    detections: list[Detection]
    warnings: list[AnalysisWarning] = field(default_factory=list)
    assumptions: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "summary": asdict(self.summary, dict_factory=_plain_dict),
            "detections": [detection.to_dict() for detection in self.detections],
            "warnings": [asdict(warning, dict_factory=_plain_dict) for warning in self.warnings],
            "assumptions": dict(self.assumptions),
        }
