"""Detector orchestration, frame metrics and the analysis entry point."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from pathlib import Path
from typing import Iterable

from render_analyzer.capabilities import (
    CAPABILITY_EFFECTS,
    FULL_CAPABILITIES,
    Capability,
    adapter_capabilities,
)
from render_analyzer.config import AnalysisConfig
from render_analyzer.detectors import Detector, default_detectors
from render_analyzer.models import (
    AnalysisResult,
    AnalysisWarning,
    Detection,
    DetectionContext,
    FrameMetrics,
    GPUStallDetection,
    LayoutThrashDetection,
    LongTaskDetection,
    PhaseBreakdown,
    TraceSummary,
    WarningCode,
)
from render_analyzer.snapshot import (
    TraceSnapshot,
    infer_capabilities,
    load_snapshot,
    snapshot_metadata,
    snapshot_phase_breakdown,
    snapshot_to_trace_data,
)
from render_analyzer.trace import TraceData, find_main_thread, frame_markers, load_trace, trace_time_range

logger = logging.getLogger(__name__)

STYLE_RECALC_EVENTS = ("UpdateLayoutTree", "RecalculateStyles")
LAYOUT_PHASE_EVENTS = ("Layout",)
PAINT_PHASE_EVENTS = ("Paint", "PaintImage")
COMPOSITE_PHASE_EVENTS = ("CompositeLayers", "UpdateLayer")
GPU_PHASE_EVENTS = ("GPUTask", "RasterTask")

JSON_SUFFIXES = (".json", ".gz")


def _set_assumption(assumptions: dict, key: str, note: str) -> None:
    if key not in assumptions:
        assumptions[key] = note


def _check_fps_target(fps_target: float) -> None:
    if fps_target is None or fps_target <= 0:
        raise ValueError(f"fps_target must be positive, got {fps_target}")


def _make_context(
    fps_target: float,
    frame_metrics: FrameMetrics,
    start: float,
    end: float,
    capabilities: frozenset[Capability]
) -> DetectionContext:
    return DetectionContext(
        fps_target=fps_target,
        frame_budget_ms=1000 / fps_target,
        frame_metrics=frame_metrics,
        trace_start_time=start,
        trace_end_time=end,
        capabilities=capabilities,
        degraded_mode=Capability.FULL_CDP not in capabilities,
    )


def calculate_frame_metrics(trace: TraceData, fps_target: float) -> FrameMetrics:
    """
    Frame count, drops and average FPS from frame-marker intervals.

    Returns:
        FrameMetrics; all zero except the budget when the trace has no markers
    """
    frame_budget_ms = 1000 / fps_target
    markers = frame_markers(trace)
    if not markers:
        return FrameMetrics(total=0, dropped=0, avg_fps=0, frame_budget_ms=frame_budget_ms)

    durations = [(current.ts - prev.ts) / 1000 for prev, current in zip(markers, markers[1:])]
    dropped = sum(1 for duration in durations if duration > frame_budget_ms)
    avg_frame_ms = sum(durations) / len(durations) if durations else frame_budget_ms
    avg_fps = 1000 / avg_frame_ms if avg_frame_ms > 0 else fps_target

    return FrameMetrics(
        total=max(len(durations), 1),
        dropped=dropped,
        avg_fps=round(avg_fps, 1),
        frame_budget_ms=frame_budget_ms,
    )


def calculate_phase_breakdown(trace: TraceData) -> PhaseBreakdown:
    totals = {"style": 0.0, "layout": 0.0, "paint": 0.0, "composite": 0.0, "gpu": 0.0}
    phases = (
        ("style", STYLE_RECALC_EVENTS),
        ("layout", LAYOUT_PHASE_EVENTS),
        ("paint", PAINT_PHASE_EVENTS),
        ("composite", COMPOSITE_PHASE_EVENTS),
        ("gpu", GPU_PHASE_EVENTS),
    )
    for event in trace.trace_events:
        for phase, names in phases:
            if event.name in names:
                totals[phase] += event.dur / 1000
                break

    return PhaseBreakdown(
        style_recalc_ms=round(totals["style"], 2),
        layout_ms=round(totals["layout"], 2),
        paint_ms=round(totals["paint"], 2),
        composite_ms=round(totals["composite"], 2),
        gpu_ms=round(totals["gpu"], 2),
    )


def build_hotspots(detections: Iterable[Detection]) -> dict[str, list[dict]]:
    hotspots: dict[str, list[dict]] = {"layout_thrashing": [], "gpu_stalls": [], "long_tasks": []}
    for detection in detections:
        if isinstance(detection, LayoutThrashDetection):
            hotspots["layout_thrashing"].append({
                "selector": detection.selector,
                "reflow_cost_ms": detection.reflow_cost_ms,
                "occurrences": detection.occurrences,
                "affected_nodes": detection.affected_nodes,
            })
        elif isinstance(detection, GPUStallDetection):
            hotspots["gpu_stalls"].append({
                "element": detection.element,
                "stall_ms": detection.stall_ms,
                "occurrences": detection.occurrences,
            })
        elif isinstance(detection, LongTaskDetection):
            hotspots["long_tasks"].append({
                "function": detection.function_name,
                "file": detection.file,
                "line": detection.line,
                "cpu_ms": detection.cpu_ms,
                "occurrences": detection.occurrences,
            })
    return hotspots


def rank_detections(detections: Iterable[Detection]) -> list[Detection]:
    """Order detections by impact score, highest first; ties keep their order."""
    return sorted(detections, key=lambda detection: -detection.metrics.impact_score)


def _degraded_warning(skipped: list[Detector], capabilities: frozenset[Capability]) -> AnalysisWarning:
    missing = set()
    for detector in skipped:
        missing.update(detector.required_capabilities - capabilities)
    effects = "; ".join(
        f"{capability.value}: {CAPABILITY_EFFECTS[capability]}"
        for capability in Capability
        if capability in missing
    )

    suggestions = []
    if Capability.FULL_CDP not in capabilities:
        suggestions.append("Use the chromium-cdp adapter with a staging/dev browser build for full analysis")
    if any(detector.name == "GPUStallDetector" for detector in skipped):
        suggestions.append("GPU stall detection requires CDP access - native adapters have limited GPU visibility")

    return AnalysisWarning(
        code=WarningCode.DEGRADED_ANALYSIS,
        message=(
            f"Analysis running in degraded mode. {len(skipped)} detector(s) skipped due to "
            f"limited adapter capabilities. Missing {effects}."
        ),
        affected_detectors=tuple(detector.name for detector in skipped),
        suggestions=tuple(suggestions),
    )


class TraceAnalyzer:
    """Runs registered detectors over a trace and assembles the analysis result."""

    def __init__(self, max_workers: int = 1):
        """
        Args:
            max_workers: Detectors run on a thread pool of this size when above 1
        """
        self.max_workers = max(int(max_workers), 1)
        self._detectors: list[Detector] = []

    def register_detector(self, detector: Detector) -> None:
        if not isinstance(detector, Detector):
            raise TypeError(f"{detector!r} does not implement the detector interface")
        self._detectors.append(detector)
        self._detectors.sort(key=lambda registered: registered.priority)

    def get_detectors(self) -> list[Detector]:
        return list(self._detectors)

    def analyze(
        self,
        trace: TraceData,
        fps_target: float = 60,
        capabilities: Iterable[Capability] | None = None,
        name: str = "trace"
    ) -> AnalysisResult:
        """
        Analyze a trace with every detector the capabilities allow.

        Args:
            trace: Parsed trace
            fps_target: Target frame rate; sets the frame budget
            capabilities: What the capturing adapter could observe; all when None
            name: Run name recorded in the summary

        Returns:
            AnalysisResult with summary, detections, warnings and assumptions

        Raises:
            ValueError: if trace is None or fps_target is not positive
        """
        if trace is None:
            raise ValueError("trace is required")
        _check_fps_target(fps_target)

        assumptions: dict = {}
        if capabilities is None:
            available = FULL_CAPABILITIES
            _set_assumption(assumptions, "capabilities", "No adapter capabilities supplied; full capabilities assumed")
        else:
            available = frozenset(capabilities)

        frame_metrics = calculate_frame_metrics(trace, fps_target)
        start, end = trace_time_range(trace)
        context = _make_context(fps_target, frame_metrics, start, end, available)
        detections, warnings = self._gate_and_run(trace, context)

        _, main_thread_note = find_main_thread(trace)
        _set_assumption(assumptions, "main_thread", main_thread_note)
        if frame_metrics.total == 0:
            _set_assumption(assumptions, "frames", "No BeginFrame/DrawFrame/BeginMainThreadFrame markers; frame metrics are empty")
        else:
            _set_assumption(assumptions, "frames", "Frame metrics computed from intervals between frame markers")
        if end <= start:
            _set_assumption(assumptions, "trace_duration", "Trace has no measurable duration; scoring assumed 1000ms")

        summary = TraceSummary(
            name=name,
            duration_ms=(end - start) / 1000,
            frames=frame_metrics,
            phase_breakdown=calculate_phase_breakdown(trace),
            hotspots=build_hotspots(detections),
            metadata=self._summary_metadata(trace, name, fps_target),
        )
        return AnalysisResult(summary=summary, detections=detections, warnings=warnings, assumptions=assumptions)

    def analyze_snapshot(
        self,
        snapshot: TraceSnapshot,
        fps_target: float = 60,
        capabilities: Iterable[Capability] | None = None,
        name: str | None = None
    ) -> AnalysisResult:
        """
        Analyze a normalized snapshot from an adapter without raw trace access.

        Frame metrics, duration and phase breakdown come from the snapshot
        itself; detectors run over the trace events rebuilt from it. When no
        capabilities are given they are inferred from which snapshot sections
        carry data, so a sparse snapshot runs in degraded mode.

        Raises:
            ValueError: if snapshot is None or fps_target is not positive
        """
        if snapshot is None:
            raise ValueError("snapshot is required")
        _check_fps_target(fps_target)
        name = name or snapshot.name

        assumptions: dict = {}
        if capabilities is None:
            available = infer_capabilities(snapshot)
            _set_assumption(
                assumptions, "capabilities",
                "Capabilities inferred from snapshot contents: "
                + (", ".join(sorted(capability.value for capability in available)) or "none"),
            )
        else:
            available = frozenset(capabilities)

        frames = snapshot.frame_timings
        start = frames[0].start_time if frames else 0
        end = frames[-1].end_time if frames else start + snapshot.duration_ms * 1000
        frame_metrics = FrameMetrics(
            total=snapshot.frame_metrics.total_frames,
            dropped=snapshot.frame_metrics.dropped_frames,
            avg_fps=snapshot.frame_metrics.avg_fps,
            frame_budget_ms=1000 / fps_target,
        )
        context = _make_context(fps_target, frame_metrics, start, end, available)

        trace = snapshot_to_trace_data(snapshot)
        detections, warnings = self._gate_and_run(trace, context)

        _set_assumption(assumptions, "source", f"Normalized snapshot {snapshot.id} from {snapshot.adapter_type or 'unknown adapter'}")
        _set_assumption(assumptions, "frames", "Frame metrics taken from the snapshot summary")
        if end <= start:
            _set_assumption(assumptions, "trace_duration", "Snapshot has no measurable duration; scoring assumed 1000ms")

        summary = TraceSummary(
            name=name,
            duration_ms=snapshot.duration_ms,
            frames=frame_metrics,
            phase_breakdown=snapshot_phase_breakdown(snapshot),
            hotspots=build_hotspots(detections),
            metadata=snapshot_metadata(snapshot, fps_target),
        )
        return AnalysisResult(summary=summary, detections=detections, warnings=warnings, assumptions=assumptions)

    def _gate_and_run(
        self,
        trace: TraceData,
        context: DetectionContext
    ) -> tuple[list[Detection], list[AnalysisWarning]]:
        eligible = []
        skipped = []
        for detector in self._detectors:
            missing = detector.required_capabilities - context.capabilities
            if missing:
                logger.warning("Skipping %s: missing required capabilities: %s",
                               detector.name, ", ".join(sorted(capability.value for capability in missing)))
                skipped.append(detector)
            else:
                eligible.append(detector)

        detections, warnings = self._run_detectors(eligible, trace, context)
        if skipped:
            warnings.append(_degraded_warning(skipped, context.capabilities))
        return detections, warnings

    def _run_detectors(
        self,
        detectors: list[Detector],
        trace: TraceData,
        context: DetectionContext
    ) -> tuple[list[Detection], list[AnalysisWarning]]:
        if self.max_workers > 1 and len(detectors) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                futures = [pool.submit(detector.detect, trace, context) for detector in detectors]
                outcomes = [self._collect(detector, future.result) for detector, future in zip(detectors, futures)]
        else:
            outcomes = [self._collect(detector, partial(detector.detect, trace, context)) for detector in detectors]

        detections: list[Detection] = []
        warnings: list[AnalysisWarning] = []
        for found, warning in outcomes:
            detections.extend(found)
            if warning is not None:
                warnings.append(warning)
        return detections, warnings

    @staticmethod
    def _collect(detector: Detector, run) -> tuple[list[Detection], AnalysisWarning | None]:
        try:
            found = list(run())
        except Exception as exc:
            logger.exception("Detector %s failed", detector.name)
            return [], AnalysisWarning(
                code=WarningCode.DETECTOR_FAILED,
                message=f"Detector {detector.name} failed: {exc}",
                affected_detectors=(detector.name,),
            )
        logger.debug("%s produced %d detections", detector.name, len(found))
        return found, None

    @staticmethod
    def _summary_metadata(trace: TraceData, name: str, fps_target: float) -> dict:
        metadata = {
            "browser_version": "unknown",
            "user_agent": "unknown",
            "viewport": {"width": 0, "height": 0},
            "device_pixel_ratio": 1,
            "scenario": name,
            "fps_target": fps_target,
        }
        metadata.update(trace.metadata)
        return metadata


def create_default_analyzer(config: AnalysisConfig | None = None) -> TraceAnalyzer:
    config = config or AnalysisConfig()
    analyzer = TraceAnalyzer(max_workers=config.max_workers)
    for detector in default_detectors(config):
        analyzer.register_detector(detector)
    return analyzer


def load_any_trace(trace_path: str | Path, trace_format: str = "auto") -> TraceData:
    """
    Load a trace as Chrome JSON or through Perfetto's TraceProcessor.

    ``auto`` picks JSON for ``.json``/``.gz`` files and Perfetto otherwise.
    """
    if trace_format not in ("auto", "json", "perfetto"):
        raise ValueError(f"Unknown trace format: {trace_format}")
    if trace_format == "auto":
        trace_format = "json" if Path(trace_path).suffix.lower() in JSON_SUFFIXES else "perfetto"
    if trace_format == "json":
        return load_trace(trace_path)

    from render_analyzer.perfetto_source import load_perfetto_trace
    return load_perfetto_trace(trace_path)


def analyze_trace(
    trace_path: str,
    fps_target: float | None = None,
    capabilities: Iterable[Capability] | None = None,
    adapter: str | None = None,
    name: str | None = None,
    config: AnalysisConfig | None = None,
    trace_format: str = "auto"
) -> dict:
    """
    Analyze a trace file.

    Args:
        trace_path: Path to a Chrome JSON, Perfetto trace or snapshot JSON
        fps_target: Overrides the configured FPS target
        capabilities: Explicit adapter capabilities; win over ``adapter``
        adapter: Named adapter whose capability preset applies
        name: Run name; defaults to the file stem, or the snapshot name
        config: Analysis settings
        trace_format: ``auto``, ``json``, ``perfetto`` or ``snapshot``

    Returns:
        Dictionary with summary, detections, warnings and assumptions
    """
    config = config or AnalysisConfig()
    if capabilities is None and adapter is not None:
        capabilities = adapter_capabilities(adapter)
    analyzer = create_default_analyzer(config)

    if trace_format == "snapshot":
        result = analyzer.analyze_snapshot(
            load_snapshot(trace_path),
            fps_target=fps_target or config.fps_target,
            capabilities=capabilities,
            name=name,
        )
    else:
        result = analyzer.analyze(
            load_any_trace(trace_path, trace_format),
            fps_target=fps_target or config.fps_target,
            capabilities=capabilities,
            name=name or Path(trace_path).stem,
        )
    output = result.to_dict()
    _set_assumption(output["assumptions"], "trace_path", str(trace_path))
    return output
