"""Normalized trace snapshots from adapters without raw trace-event access.

Adapters such as the WebKit native SDK hand over a platform-agnostic
summary instead of Chrome trace events: frame timings, long tasks, DOM
signals, GPU and paint events. Snapshots are converted into ``TraceData``
so the same detectors run over them. Times are in microseconds, durations
in milliseconds.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

from render_analyzer.capabilities import Capability
from render_analyzer.errors import InvalidTraceFormatError, TraceNotFoundError, TraceParseError
from render_analyzer.models import PhaseBreakdown, StackFrame
from render_analyzer.trace import TraceData, TraceEvent, _as_int, _as_number

logger = logging.getLogger(__name__)

SNAPSHOT_PID = 1
SNAPSHOT_TID = 1
TIMELINE_CATEGORY = "devtools.timeline"

DOM_SIGNAL_EVENT_NAMES = {
    "forced_reflow": "Layout",
    "layout": "Layout",
    "style_recalc": "RecalculateStyles",
    "layout_invalidation": "InvalidateLayout",
    "dom_mutation": "UpdateLayoutTree",
}

GPU_EVENT_NAMES = {
    "sync": "GPUTask",
    "texture_upload": "UploadTexture",
    "raster": "RasterTask",
    "composite": "CompositeLayers",
}


def dom_signal_event_name(signal_type: str) -> str:
    return DOM_SIGNAL_EVENT_NAMES.get(signal_type, "Layout")


def gpu_event_name(event_type: str) -> str:
    return GPU_EVENT_NAMES.get(event_type, "GPUTask")


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _optional_str(value: Any) -> str | None:
    return str(value) if value is not None else None


def _optional_number(value: Any) -> float | None:
    return _as_number(value) if value is not None else None


def _optional_int(value: Any) -> int | None:
    return _as_int(value) if value is not None else None


def _records(raw: Mapping[str, Any], *keys: str) -> list[Mapping[str, Any]]:
    items = _first(raw, *keys)
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, Mapping)]


@dataclass(frozen=True)
class SnapshotFrame:
    frame_id: int
    start_time: float
    end_time: float
    duration_ms: float = 0
    dropped: bool = False
    style_recalc_ms: float = 0
    layout_ms: float = 0
    paint_ms: float = 0
    composite_ms: float = 0
    gpu_ms: float = 0

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "SnapshotFrame":
        start = _as_number(_first(raw, "startTime", "startTimestamp"))
        end = _as_number(_first(raw, "endTime", "endTimestamp"), start)
        duration = _first(raw, "durationMs")
        return cls(
            frame_id=_as_int(raw.get("frameId")),
            start_time=start,
            end_time=end,
            duration_ms=_as_number(duration) if duration is not None else max(end - start, 0) / 1000,
            dropped=bool(raw.get("dropped", False)),
            style_recalc_ms=_as_number(raw.get("styleRecalcMs")),
            layout_ms=_as_number(raw.get("layoutMs")),
            paint_ms=_as_number(raw.get("paintMs")),
            composite_ms=_as_number(raw.get("compositeMs")),
            gpu_ms=_as_number(raw.get("gpuMs")),
        )


@dataclass(frozen=True)
class SnapshotLongTask:
    start_time: float
    duration_ms: float
    function_name: str | None = None
    file: str | None = None
    line: int | None = None
    column: int | None = None
    call_stack: tuple[StackFrame, ...] = ()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "SnapshotLongTask":
        stack = raw.get("callStack")
        frames = []
        if isinstance(stack, list):
            for frame in stack:
                if not isinstance(frame, Mapping):
                    continue
                frames.append(StackFrame(
                    function_name=str(frame.get("functionName") or "anonymous"),
                    file=str(frame.get("file") or "unknown"),
                    line=_as_int(frame.get("line")),
                    column=_as_int(frame.get("column")),
                ))
        return cls(
            start_time=_as_number(_first(raw, "startTime", "startTimestamp")),
            duration_ms=max(_as_number(raw.get("durationMs")), 0),
            function_name=_optional_str(_first(raw, "functionName", "name")),
            file=_optional_str(raw.get("file")),
            line=_optional_int(raw.get("line")),
            column=_optional_int(raw.get("column")),
            call_stack=tuple(frames),
        )


@dataclass(frozen=True)
class DOMSignal:
    type: str
    timestamp: float
    duration_ms: float | None = None
    affected_nodes: int | None = None
    selector: str | None = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "DOMSignal":
        return cls(
            type=str(raw.get("type") or "layout"),
            timestamp=_as_number(raw.get("timestamp")),
            duration_ms=_optional_number(raw.get("durationMs")),
            affected_nodes=_optional_int(raw.get("affectedNodes")),
            selector=_optional_str(raw.get("selector")),
        )


@dataclass(frozen=True)
class GPUEvent:
    type: str
    timestamp: float
    duration_ms: float
    element: str | None = None
    layer_id: int | None = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "GPUEvent":
        return cls(
            type=str(raw.get("type") or "sync"),
            timestamp=_as_number(raw.get("timestamp")),
            duration_ms=max(_as_number(raw.get("durationMs")), 0),
            element=_optional_str(raw.get("element")),
            layer_id=_optional_int(raw.get("layerId")),
        )


@dataclass(frozen=True)
class PaintEvent:
    timestamp: float
    paint_duration_ms: float
    raster_duration_ms: float | None = None
    layer_count: int | None = None
    bounds: Mapping[str, Any] | None = field(default=None, hash=False)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "PaintEvent":
        bounds = raw.get("bounds")
        return cls(
            timestamp=_as_number(raw.get("timestamp")),
            paint_duration_ms=max(_as_number(raw.get("paintDurationMs")), 0),
            raster_duration_ms=_optional_number(raw.get("rasterDurationMs")),
            layer_count=_optional_int(raw.get("layerCount")),
            bounds=bounds if isinstance(bounds, Mapping) else None,
        )


@dataclass(frozen=True)
class SnapshotFrameMetrics:
    total_frames: int
    dropped_frames: int
    avg_fps: float

    @classmethod
    def from_frames(cls, frames: Iterable[SnapshotFrame]) -> "SnapshotFrameMetrics":
        frames = list(frames)
        if not frames:
            return cls(total_frames=0, dropped_frames=0, avg_fps=0)
        avg_frame_ms = sum(frame.duration_ms for frame in frames) / len(frames)
        return cls(
            total_frames=len(frames),
            dropped_frames=sum(1 for frame in frames if frame.dropped),
            avg_fps=round(1000 / avg_frame_ms, 1) if avg_frame_ms > 0 else 0,
        )


@dataclass(frozen=True)
class TraceSnapshot:
    id: str
    name: str
    duration_ms: float
    frame_timings: tuple[SnapshotFrame, ...]
    frame_metrics: SnapshotFrameMetrics
    long_tasks: tuple[SnapshotLongTask, ...] = ()
    dom_signals: tuple[DOMSignal, ...] = ()
    gpu_events: tuple[GPUEvent, ...] = ()
    paint_events: tuple[PaintEvent, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict, hash=False)

    @property
    def adapter_type(self) -> str | None:
        return _optional_str(self.metadata.get("adapterType"))

    @classmethod
    def from_dict(cls, payload: Any) -> "TraceSnapshot":
        """
        Build a snapshot from its JSON form.

        Accepts the normalized snapshot keys (``frameTimings``, ``startTime``)
        and the native SDK keys (``frames``, ``startTimestamp``).

        Raises:
            InvalidTraceFormatError: if the payload has no frame list
        """
        if not isinstance(payload, Mapping):
            raise InvalidTraceFormatError("Expected a snapshot object")
        if not isinstance(_first(payload, "frameTimings", "frames"), list):
            raise InvalidTraceFormatError("Snapshot is missing its frameTimings array")

        frames = tuple(SnapshotFrame.from_dict(raw) for raw in _records(payload, "frameTimings", "frames"))
        metrics = payload.get("frameMetrics")
        if isinstance(metrics, Mapping):
            frame_metrics = SnapshotFrameMetrics(
                total_frames=_as_int(metrics.get("totalFrames")),
                dropped_frames=_as_int(metrics.get("droppedFrames")),
                avg_fps=_as_number(metrics.get("avgFps")),
            )
        else:
            frame_metrics = SnapshotFrameMetrics.from_frames(frames)

        metadata = payload.get("metadata")
        name = str(payload.get("name") or "snapshot")
        return cls(
            id=str(_first(payload, "id", "traceId") or name),
            name=name,
            duration_ms=max(_as_number(payload.get("durationMs")), 0),
            frame_timings=frames,
            frame_metrics=frame_metrics,
            long_tasks=tuple(SnapshotLongTask.from_dict(raw) for raw in _records(payload, "longTasks")),
            dom_signals=tuple(DOMSignal.from_dict(raw) for raw in _records(payload, "domSignals")),
            gpu_events=tuple(GPUEvent.from_dict(raw) for raw in _records(payload, "gpuEvents")),
            paint_events=tuple(PaintEvent.from_dict(raw) for raw in _records(payload, "paintEvents")),
            metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
        )


def load_snapshot(path: str | Path) -> TraceSnapshot:
    snapshot_path = Path(path)
    if not snapshot_path.is_file():
        raise TraceNotFoundError(str(snapshot_path))
    try:
        with open(snapshot_path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TraceParseError(str(snapshot_path), str(exc)) from exc
    return TraceSnapshot.from_dict(payload)


def infer_capabilities(snapshot: TraceSnapshot) -> frozenset[Capability]:
    """Capabilities implied by which sections of the snapshot carry data."""
    capabilities = set()
    if snapshot.frame_timings:
        capabilities.add(Capability.FRAME_TIMING)
    if snapshot.long_tasks:
        capabilities.add(Capability.LONG_TASKS)
    if snapshot.dom_signals:
        capabilities.add(Capability.DOM_SIGNALS)
    if snapshot.gpu_events:
        capabilities.add(Capability.GPU_EVENTS)
    if snapshot.paint_events:
        capabilities.add(Capability.PAINT_EVENTS)
    if snapshot.adapter_type == "chromium-cdp":
        capabilities.add(Capability.FULL_CDP)
    return frozenset(capabilities)


def _event(name: str, ts: float, duration_ms: float = 0, cat: str = TIMELINE_CATEGORY,
           ph: str = "X", args: Mapping[str, Any] | None = None) -> TraceEvent:
    return TraceEvent(
        pid=SNAPSHOT_PID,
        tid=SNAPSHOT_TID,
        ts=ts,
        ph=ph,
        cat=cat,
        name=name,
        dur=duration_ms * 1000,
        args=args or {},
    )


def _data(**fields: Any) -> dict:
    return {"data": {key: value for key, value in fields.items() if value is not None}}


def snapshot_to_trace_data(snapshot: TraceSnapshot) -> TraceData:
    """
    Rebuild main-thread trace events from a snapshot, sorted by timestamp.

    Frames become ``BeginFrame`` markers plus Layout/Paint slices, long tasks
    become ``FunctionCall`` slices with their call site, DOM signals and GPU
    events map onto the trace-event names the detectors look for.
    """
    events = []
    for frame in snapshot.frame_timings:
        events.append(_event("BeginFrame", frame.start_time, ph="B", args={"frameId": frame.frame_id}))
        if frame.layout_ms > 0:
            events.append(_event("Layout", frame.start_time, frame.layout_ms))
        if frame.paint_ms > 0:
            events.append(_event("Paint", frame.start_time, frame.paint_ms))

    for task in snapshot.long_tasks:
        stack = [
            {"functionName": f.function_name, "url": f.file, "lineNumber": f.line, "columnNumber": f.column}
            for f in task.call_stack
        ]
        args = _data(
            functionName=task.function_name or "anonymous",
            scriptName=task.file,
            lineNumber=task.line,
            columnNumber=task.column,
            stackTrace=stack or None,
        )
        events.append(_event("FunctionCall", task.start_time, task.duration_ms, args=args))

    for signal in snapshot.dom_signals:
        args = _data(selector=signal.selector, nodeCount=signal.affected_nodes)
        events.append(_event(dom_signal_event_name(signal.type), signal.timestamp, signal.duration_ms or 0, args=args))

    for gpu in snapshot.gpu_events:
        args = _data(elementId=gpu.element, layerId=gpu.layer_id)
        events.append(_event(gpu_event_name(gpu.type), gpu.timestamp, gpu.duration_ms, cat="gpu", args=args))

    for paint in snapshot.paint_events:
        args = _data(clip=paint.bounds, layerCount=paint.layer_count)
        events.append(_event("Paint", paint.timestamp, paint.paint_duration_ms, args=args))
        if paint.raster_duration_ms:
            events.append(_event("RasterTask", paint.timestamp, paint.raster_duration_ms))

    events.sort(key=lambda event: event.ts)
    logger.debug("Converted snapshot %s into %d trace events", snapshot.id, len(events))
    return TraceData.from_events(events, snapshot_metadata(snapshot))


def snapshot_metadata(snapshot: TraceSnapshot, fps_target: float | None = None) -> dict:
    metadata = snapshot.metadata
    return {
        "browser_version": metadata.get("browserVersion") or "unknown",
        "user_agent": metadata.get("userAgent") or "unknown",
        "viewport": metadata.get("viewport") or {"width": 0, "height": 0},
        "device_pixel_ratio": metadata.get("devicePixelRatio") or 1,
        "timestamp": metadata.get("timestamp"),
        "scenario": metadata.get("scenario") or snapshot.name,
        "fps_target": fps_target if fps_target is not None else metadata.get("fpsTarget"),
    }


def snapshot_phase_breakdown(snapshot: TraceSnapshot) -> PhaseBreakdown:
    style = layout = paint = composite = gpu = 0.0
    for frame in snapshot.frame_timings:
        style += frame.style_recalc_ms
        layout += frame.layout_ms
        paint += frame.paint_ms
        composite += frame.composite_ms
        gpu += frame.gpu_ms
    for event in snapshot.gpu_events:
        if event.type == "composite":
            composite += event.duration_ms
        else:
            gpu += event.duration_ms
    for event in snapshot.paint_events:
        paint += event.paint_duration_ms
        gpu += event.raster_duration_ms or 0

    return PhaseBreakdown(
        style_recalc_ms=round(style, 2),
        layout_ms=round(layout, 2),
        paint_ms=round(paint, 2),
        composite_ms=round(composite, 2),
        gpu_ms=round(gpu, 2),
    )
