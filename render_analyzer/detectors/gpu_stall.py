"""GPU stall detection: sync primitives, texture uploads and raster work that block the main thread."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping

from render_analyzer.capabilities import Capability
from render_analyzer.detectors.base import (
    build_evidence,
    build_metrics,
    mapping_field,
    number_field,
    str_field,
    trace_duration_ms,
)
from render_analyzer.models import (
    DetectionContext,
    DetectionLocation,
    DetectionType,
    GPUStallDetection,
    LayerBounds,
    LayerInfo,
    StallType,
)
from render_analyzer.scoring import DEFAULT_SCORING_CONFIG, ScoringConfig, ScoringInput, calculate_score
from render_analyzer.trace import MainThreadIndex, TraceData, TraceEvent, find_main_thread_id

logger = logging.getLogger(__name__)

GPU_SYNC_EVENTS = frozenset({
    "GPUTask",
    "Gpu::SwapBuffers",
    "CommandBufferHelper::Finish",
    "GLES2DecoderImpl::DoFinish",
    "WaitForSwap",
})

TEXTURE_UPLOAD_EVENTS = frozenset({
    "UploadTexture",
    "TextureManager::Upload",
    "AsyncTexImage2D",
    "TexImage2D",
    "TexSubImage2D",
    "CompressedTexImage2D",
})

RASTER_EVENTS = frozenset({
    "RasterTask",
    "RasterSource::PlaybackToCanvas",
    "TileManager::ScheduleTasks",
    "RasterBufferProvider::PlaybackToMemory",
    "GpuRasterization",
    "SoftwareRasterization",
})

GPU_CATEGORY_MARKER = "gpu"
BLOCKING_NAME_TOKENS = ("Wait", "Sync", "Idle")

MIN_STALL_MS = 1.0
MIN_CLUSTER_STALL_MS = 5.0
MIN_CLUSTER_OCCURRENCES = 3

STALL_DESCRIPTIONS = {
    StallType.SYNC: "GPU sync",
    StallType.TEXTURE_UPLOAD: "texture upload",
    StallType.RASTER: "rasterization",
}


@dataclass(frozen=True)
class StallTarget:
    element: str
    layer_info: LayerInfo | None = None


@dataclass
class _StallPattern:
    element: str
    stall_type: StallType
    events: list[TraceEvent] = field(default_factory=list)
    total_stall_ms: float = 0.0
    layer_info: LayerInfo | None = None


def classify_stall(event: TraceEvent) -> StallType | None:
    """
    Classify a GPU event, or return None for non-GPU work.

    Unknown work in a GPU category defaults to SYNC: it is assumed blocking.
    """
    if event.name in GPU_SYNC_EVENTS:
        return StallType.SYNC
    if event.name in TEXTURE_UPLOAD_EVENTS:
        return StallType.TEXTURE_UPLOAD
    if event.name in RASTER_EVENTS:
        return StallType.RASTER

    if GPU_CATEGORY_MARKER in event.cat:
        lower_name = event.name.lower()
        if "sync" in lower_name:
            return StallType.SYNC
        if "texture" in lower_name:
            return StallType.TEXTURE_UPLOAD
        if "raster" in lower_name:
            return StallType.RASTER
        return StallType.SYNC

    return None


def _format_id(value: float | str) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _element_identity(args: Mapping) -> str:
    data = mapping_field(args, "data")

    for key in ("elementId", "nodeId"):
        value = str_field(data, key)
        if value:
            return value
    node_id = number_field(data, "nodeId")
    if node_id is not None:
        return _format_id(node_id)

    layer_id = number_field(data, "layerId")
    if layer_id is not None:
        return f"layer-{_format_id(layer_id)}"

    url = str_field(data, "url")
    if url:
        return url.split("/")[-1] or url

    layer_id = number_field(args, "layerId")
    if layer_id is not None:
        return f"layer-{_format_id(layer_id)}"

    tile_id = str_field(args, "tileId")
    if tile_id is not None:
        return f"tile-{tile_id}"

    texture_id = args.get("textureId")
    if isinstance(texture_id, str) or number_field(args, "textureId") is not None:
        return f"texture-{_format_id(texture_id)}"

    return "unknown"


def _layer_info(args: Mapping) -> LayerInfo | None:
    data = args.get("data")
    if not isinstance(data, Mapping):
        data = args

    layer_id = number_field(data, "layerId")
    if layer_id is None:
        return None

    bounds = mapping_field(data, "bounds")
    reasons = data.get("compositingReasons")
    if not isinstance(reasons, list):
        reasons = []

    return LayerInfo(
        layer_id=int(layer_id),
        bounds=LayerBounds(
            x=number_field(bounds, "x") or 0,
            y=number_field(bounds, "y") or 0,
            width=number_field(bounds, "width") or 0,
            height=number_field(bounds, "height") or 0,
        ),
        compositing_reasons=tuple(str(reason) for reason in reasons),
    )


def extract_stall_target(event: TraceEvent) -> StallTarget:
    """
    Derive the affected element and optional layer geometry from an event payload.

    Probe order: element/node id, ``layer-<id>``, resource filename,
    ``tile-<id>``, ``texture-<id>``, then ``"unknown"``.
    """
    if not event.args:
        return StallTarget(element="unknown")
    return StallTarget(
        element=_element_identity(event.args),
        layer_info=_layer_info(event.args),
    )


class GPUStallDetector:
    name = "GPUStallDetector"
    priority = 2
    required_capabilities = frozenset({Capability.GPU_EVENTS})

    def __init__(
        self,
        scoring_config: ScoringConfig = DEFAULT_SCORING_CONFIG,
        min_stall_ms: float = MIN_STALL_MS,
        min_cluster_stall_ms: float = MIN_CLUSTER_STALL_MS,
        min_cluster_occurrences: int = MIN_CLUSTER_OCCURRENCES
    ):
        self.scoring_config = scoring_config
        self.min_stall_ms = min_stall_ms
        self.min_cluster_stall_ms = min_cluster_stall_ms
        self.min_cluster_occurrences = min_cluster_occurrences

    def detect(self, trace: TraceData, context: DetectionContext) -> list[GPUStallDetection]:
        patterns = self.find_stall_patterns(trace)
        logger.debug("%s found %d stall clusters", self.name, len(patterns))
        return [self._create_detection(pattern, context) for pattern in patterns]

    def find_stall_patterns(self, trace: TraceData) -> list[_StallPattern]:
        candidates = []
        for event in trace.trace_events:
            stall_type = classify_stall(event)
            if stall_type is not None:
                candidates.append((event, stall_type))
        candidates.sort(key=lambda pair: pair[0].ts)

        main_tid = find_main_thread_id(trace)
        main_index = MainThreadIndex(trace, main_tid) if main_tid is not None else None

        patterns: dict[tuple[str, StallType], _StallPattern] = {}
        for event, stall_type in candidates:
            if event.dur / 1000 < self.min_stall_ms:
                continue
            if not self._blocks_main_thread(event, stall_type, main_index):
                continue

            target = extract_stall_target(event)
            key = (target.element, stall_type)
            pattern = patterns.get(key)
            if pattern is None:
                pattern = _StallPattern(element=target.element, stall_type=stall_type)
                patterns[key] = pattern
            pattern.events.append(event)
            pattern.total_stall_ms += event.dur / 1000
            if pattern.layer_info is None and target.layer_info is not None:
                pattern.layer_info = target.layer_info

        return [
            pattern
            for pattern in patterns.values()
            if pattern.total_stall_ms >= self.min_cluster_stall_ms
            or len(pattern.events) >= self.min_cluster_occurrences
        ]

    @staticmethod
    def _blocks_main_thread(
        event: TraceEvent,
        stall_type: StallType,
        main_index: MainThreadIndex | None
    ) -> bool:
        if main_index is None:
            return True
        if main_index.any_name_contains(event.ts, event.end, BLOCKING_NAME_TOKENS):
            return True
        return stall_type is StallType.SYNC

    def _create_detection(self, pattern: _StallPattern, context: DetectionContext) -> GPUStallDetection:
        occurrences = len(pattern.events)
        result = calculate_score(
            ScoringInput(
                detection_type=DetectionType.GPU_STALL,
                duration_ms=pattern.total_stall_ms,
                occurrences=occurrences,
                frame_budget_ms=context.frame_budget_ms,
                trace_duration_ms=trace_duration_ms(context),
                stall_type=pattern.stall_type,
            ),
            self.scoring_config,
        )
        description = (
            f"GPU stall ({STALL_DESCRIPTIONS[pattern.stall_type]}) on \"{pattern.element}\" "
            f"causing {pattern.total_stall_ms:.2f}ms of blocking"
        )
        return GPUStallDetection(
            type=DetectionType.GPU_STALL,
            severity=result.severity,
            description=description,
            location=DetectionLocation(element=pattern.element),
            metrics=build_metrics(pattern.total_stall_ms, occurrences, result),
            evidence=build_evidence(pattern.events),
            element=pattern.element,
            stall_ms=pattern.total_stall_ms,
            occurrences=occurrences,
            stall_type=pattern.stall_type,
            layer_info=pattern.layer_info,
        )
