"""Expensive paint and rasterization work, bucketed per frame window."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field

from render_analyzer.capabilities import Capability
from render_analyzer.detectors.base import (
    build_evidence,
    build_metrics,
    mapping_field,
    number_field,
    trace_duration_ms,
)
from render_analyzer.models import (
    DetectionContext,
    DetectionLocation,
    DetectionType,
    HeavyPaintDetection,
)
from render_analyzer.scoring import DEFAULT_SCORING_CONFIG, ScoringConfig, ScoringInput, calculate_score
from render_analyzer.trace import TraceData, TraceEvent

logger = logging.getLogger(__name__)

PAINT_EVENTS = frozenset({
    "Paint",
    "PaintImage",
    "PaintSetup",
    "PaintNonDefaultBackgroundColor",
    "Layerize",
    "UpdateLayer",
    "UpdateLayerTree",
})

RASTER_EVENTS = frozenset({
    "RasterTask",
    "Rasterize",
    "RasterSource::PlaybackToCanvas",
    "TileManager::ScheduleTasks",
    "RasterBufferProvider::PlaybackToMemory",
    "ImageDecodeTask",
    "DecodeImage",
    "DecodeLazyPixelRef",
})

MIN_EVENT_MS = 0.1
# 2ms of a 60 FPS frame.
BUDGET_FRACTION = 0.12
MAX_LAYER_COUNT = 10
MAX_SEPARATE_WINDOWS = 5


@dataclass
class _PaintWindow:
    events: list[TraceEvent] = field(default_factory=list)
    paint_ms: float = 0.0
    raster_ms: float = 0.0
    max_layer_count: int = 1

    @property
    def total_ms(self) -> float:
        return self.paint_ms + self.raster_ms


def layer_count(event: TraceEvent) -> int:
    data = mapping_field(event.args, "data")
    for value in (
        number_field(data, "layerCount"),
        number_field(data, "numLayers"),
        number_field(event.args, "layerCount"),
    ):
        if value is not None:
            return int(value)
    return 1


class HeavyPaintDetector:
    name = "HeavyPaintDetector"
    priority = 4
    required_capabilities = frozenset({Capability.PAINT_EVENTS})

    def __init__(
        self,
        scoring_config: ScoringConfig = DEFAULT_SCORING_CONFIG,
        budget_fraction: float = BUDGET_FRACTION,
        min_event_ms: float = MIN_EVENT_MS
    ):
        self.scoring_config = scoring_config
        self.budget_fraction = budget_fraction
        self.min_event_ms = min_event_ms

    def detect(self, trace: TraceData, context: DetectionContext) -> list[HeavyPaintDetection]:
        windows = self.find_heavy_windows(trace, context)
        logger.debug("%s found %d heavy paint windows", self.name, len(windows))
        if len(windows) > MAX_SEPARATE_WINDOWS:
            windows = [self._aggregate(windows)]
        return [self._create_detection(window, context) for window in windows]

    def find_heavy_windows(self, trace: TraceData, context: DetectionContext) -> list[_PaintWindow]:
        """
        Bucket paint and raster events into frame-budget windows from trace start.

        A window is heavy when its paint plus raster time reaches the budget
        fraction or it touches more than ten layers.
        """
        window_us = context.frame_budget_ms * 1000
        events = [
            event for event in trace.trace_events
            if (event.name in PAINT_EVENTS or event.name in RASTER_EVENTS)
            and event.dur / 1000 >= self.min_event_ms
        ]
        events.sort(key=lambda event: event.ts)

        windows: dict[int, _PaintWindow] = {}
        for event in events:
            window_id = math.floor((event.ts - context.trace_start_time) / window_us)
            window = windows.setdefault(window_id, _PaintWindow())
            window.events.append(event)
            if event.name in PAINT_EVENTS:
                window.paint_ms += event.dur / 1000
            else:
                window.raster_ms += event.dur / 1000
            window.max_layer_count = max(window.max_layer_count, layer_count(event))

        threshold_ms = context.frame_budget_ms * self.budget_fraction
        return [
            window
            for window in windows.values()
            if window.total_ms >= threshold_ms or window.max_layer_count > MAX_LAYER_COUNT
        ]

    @staticmethod
    def _aggregate(windows: list[_PaintWindow]) -> _PaintWindow:
        merged = _PaintWindow()
        for window in windows:
            merged.events.extend(window.events)
            merged.paint_ms += window.paint_ms
            merged.raster_ms += window.raster_ms
            merged.max_layer_count = max(merged.max_layer_count, window.max_layer_count)
        return merged

    def _create_detection(self, window: _PaintWindow, context: DetectionContext) -> HeavyPaintDetection:
        occurrences = len(window.events)
        result = calculate_score(
            ScoringInput(
                detection_type=DetectionType.HEAVY_PAINT,
                duration_ms=window.total_ms,
                occurrences=occurrences,
                frame_budget_ms=context.frame_budget_ms,
                trace_duration_ms=trace_duration_ms(context),
                layer_count=window.max_layer_count,
            ),
            self.scoring_config,
        )
        return HeavyPaintDetection(
            type=DetectionType.HEAVY_PAINT,
            severity=result.severity,
            description=(
                f"Heavy paint operations: {window.paint_ms:.1f}ms paint, "
                f"{window.raster_ms:.1f}ms raster across {window.max_layer_count} layers"
            ),
            location=DetectionLocation(),
            metrics=build_metrics(window.total_ms, occurrences, result),
            evidence=build_evidence(window.events),
            paint_time_ms=window.paint_ms,
            raster_time_ms=window.raster_ms,
            layer_count=window.max_layer_count,
        )
