"""Layout thrashing: rapid successive layouts on the main thread within one frame."""

from __future__ import annotations

import bisect
import logging
import math
from dataclasses import dataclass, field
from typing import Mapping

from render_analyzer.capabilities import Capability
from render_analyzer.detectors.base import (
    build_evidence,
    build_metrics,
    mapping_field,
    number_field,
    stack_field,
    str_field,
    trace_duration_ms,
)
from render_analyzer.models import (
    DetectionContext,
    DetectionLocation,
    DetectionType,
    DOMPropertyAccess,
    LayoutThrashDetection,
    ReadWritePattern,
)
from render_analyzer.scoring import DEFAULT_SCORING_CONFIG, ScoringConfig, ScoringInput, calculate_score
from render_analyzer.trace import TraceData, TraceEvent, find_main_thread_id, frame_markers

logger = logging.getLogger(__name__)

LAYOUT_EVENTS = frozenset({
    "Layout",
    "UpdateLayoutTree",
    "RecalculateStyles",
    "InvalidateLayout",
    "ScheduleStyleRecalculation",
})

LAYOUT_FRAME_MARKERS = ("BeginFrame", "BeginMainThreadFrame")

# Matched as case-sensitive substrings of stack-frame labels, in this order.
LAYOUT_TRIGGERING_READS = (
    "offsetTop",
    "offsetLeft",
    "offsetWidth",
    "offsetHeight",
    "offsetParent",
    "clientTop",
    "clientLeft",
    "clientWidth",
    "clientHeight",
    "scrollTop",
    "scrollLeft",
    "scrollWidth",
    "scrollHeight",
    "getComputedStyle",
    "getBoundingClientRect",
    "getClientRects",
    "innerText",
    "focus",
)

LAYOUT_TRIGGERING_WRITES = (
    "width",
    "height",
    "top",
    "left",
    "right",
    "bottom",
    "margin",
    "padding",
    "border",
    "font",
    "display",
    "position",
    "float",
    "clear",
    "overflow",
    "transform",
    "className",
    "classList",
    "innerHTML",
    "textContent",
    "style",
)

DEFAULT_READ_PROPERTY = "offsetWidth"
DEFAULT_WRITE_PROPERTY = "style"

MIN_EVENT_MS = 0.1
MIN_PATTERN_REFLOWS = 2
MIN_PATTERN_COST_MS = 1.0


@dataclass(frozen=True)
class _LayoutEvent:
    event: TraceEvent
    selector: str
    node_count: int
    stack: tuple[str, ...]

    @property
    def ts(self) -> float:
        return self.event.ts

    @property
    def end(self) -> float:
        return self.event.end


@dataclass
class _ThrashPattern:
    selector: str
    events: list[TraceEvent] = field(default_factory=list)
    total_cost_ms: float = 0.0
    affected_nodes: int = 1
    read_write_patterns: list[ReadWritePattern] = field(default_factory=list)


def extract_selector(event: TraceEvent) -> str:
    """CSS selector, node name or first stack function responsible for a layout."""
    data = mapping_field(event.args, "data")
    for key in ("selectorStats", "selector", "nodeName"):
        value = str_field(data, key)
        if value is not None:
            return value

    begin_stack = stack_field(mapping_field(event.args, "beginData"))
    if begin_stack:
        function_name = str_field(begin_stack[0], "functionName")
        if function_name:
            return function_name

    return "unknown"


def _node_count(event: TraceEvent) -> int:
    data = mapping_field(event.args, "data")
    for value in (
        number_field(data, "elementCount"),
        number_field(data, "nodeCount"),
        number_field(event.args, "elementCount"),
    ):
        if value is not None:
            return int(value)
    return 1


def _stack_labels(event: TraceEvent) -> tuple[str, ...]:
    begin_data = event.args.get("beginData")
    if isinstance(begin_data, Mapping):
        labels = []
        for frame in stack_field(begin_data):
            function_name = str_field(frame, "functionName")
            url = str_field(frame, "url")
            if function_name and url:
                line = number_field(frame, "lineNumber")
                labels.append(f"{function_name} ({url}:{int(line or 0)})")
            else:
                labels.append(function_name or "anonymous")
        return tuple(labels)

    data = mapping_field(event.args, "data")
    return tuple(
        str_field(frame, "functionName") or "anonymous"
        for frame in stack_field(data)
    )


def infer_read_write_pattern(frame_id: int, layout: _LayoutEvent) -> ReadWritePattern:
    """
    Infer which DOM reads and writes forced a reflow from its stack labels.

    Falls back to an ``offsetWidth`` read and a ``style`` write when no known
    property shows up in the stack.
    """
    reads = []
    writes = []
    for label in layout.stack:
        for prop in LAYOUT_TRIGGERING_READS:
            if prop in label:
                reads.append(DOMPropertyAccess(property=prop, timestamp=layout.ts, type="read"))
        for prop in LAYOUT_TRIGGERING_WRITES:
            if prop in label:
                writes.append(DOMPropertyAccess(property=prop, timestamp=layout.ts, type="write"))

    if not reads:
        reads.append(DOMPropertyAccess(property=DEFAULT_READ_PROPERTY, timestamp=layout.ts, type="read"))
    if not writes:
        writes.append(DOMPropertyAccess(property=DEFAULT_WRITE_PROPERTY, timestamp=layout.ts, type="write"))

    return ReadWritePattern(
        frame_id=frame_id,
        reads=tuple(reads),
        writes=tuple(writes),
        forced_reflows=1,
    )


class LayoutThrashDetector:
    name = "LayoutThrashDetector"
    priority = 1
    required_capabilities = frozenset({Capability.DOM_SIGNALS})

    def __init__(
        self,
        scoring_config: ScoringConfig = DEFAULT_SCORING_CONFIG,
        min_event_ms: float = MIN_EVENT_MS
    ):
        self.scoring_config = scoring_config
        self.min_event_ms = min_event_ms

    def detect(self, trace: TraceData, context: DetectionContext) -> list[LayoutThrashDetection]:
        layouts = self._extract_layout_events(trace)
        patterns = self._find_thrash_patterns(layouts, trace, context)
        logger.debug("%s kept %d of %d layout events in %d patterns",
                     self.name, sum(len(p.events) for p in patterns), len(layouts), len(patterns))
        return [self._create_detection(pattern, context) for pattern in patterns]

    def _extract_layout_events(self, trace: TraceData) -> list[_LayoutEvent]:
        main_tid = find_main_thread_id(trace)
        layouts = []
        for event in trace.trace_events:
            if event.name not in LAYOUT_EVENTS:
                continue
            if main_tid is not None and event.tid != main_tid:
                continue
            if event.dur / 1000 < self.min_event_ms:
                continue
            layouts.append(_LayoutEvent(
                event=event,
                selector=extract_selector(event),
                node_count=_node_count(event),
                stack=_stack_labels(event),
            ))
        layouts.sort(key=lambda layout: layout.ts)
        return layouts

    @staticmethod
    def _group_by_frame(
        layouts: list[_LayoutEvent],
        trace: TraceData,
        context: DetectionContext
    ) -> dict[int, list[_LayoutEvent]]:
        """
        Group layouts by frame.

        Uses BeginFrame/BeginMainThreadFrame boundaries when present; layouts
        before the first boundary belong to no frame. Without boundaries,
        frames are fixed windows of one frame budget from trace start.
        """
        groups: dict[int, list[_LayoutEvent]] = {}
        starts = [marker.ts for marker in frame_markers(trace, LAYOUT_FRAME_MARKERS)]

        if not starts:
            window_us = context.frame_budget_ms * 1000
            for layout in layouts:
                frame_id = math.floor((layout.ts - context.trace_start_time) / window_us)
                groups.setdefault(frame_id, []).append(layout)
            return groups

        for layout in layouts:
            frame_id = bisect.bisect_right(starts, layout.ts) - 1
            if frame_id < 0:
                continue
            groups.setdefault(frame_id, []).append(layout)
        return groups

    @staticmethod
    def _rapid_layouts(layouts: list[_LayoutEvent], context: DetectionContext) -> list[_LayoutEvent]:
        """Layouts separated from their predecessor by less than a quarter frame budget."""
        threshold_us = context.frame_budget_ms * 1000 / 4
        chained = []
        for prev, current in zip(layouts, layouts[1:]):
            if current.ts - prev.end < threshold_us:
                if not chained or chained[-1] is not prev:
                    chained.append(prev)
                chained.append(current)
        return chained

    def _find_thrash_patterns(
        self,
        layouts: list[_LayoutEvent],
        trace: TraceData,
        context: DetectionContext
    ) -> list[_ThrashPattern]:
        patterns: dict[str, _ThrashPattern] = {}

        for frame_id, frame_layouts in self._group_by_frame(layouts, trace, context).items():
            if len(frame_layouts) < 2:
                continue
            for layout in self._rapid_layouts(frame_layouts, context):
                pattern = patterns.get(layout.selector)
                if pattern is None:
                    pattern = _ThrashPattern(selector=layout.selector, affected_nodes=layout.node_count)
                    patterns[layout.selector] = pattern
                pattern.events.append(layout.event)
                pattern.total_cost_ms += layout.event.dur / 1000
                pattern.affected_nodes = max(pattern.affected_nodes, layout.node_count)
                pattern.read_write_patterns.append(infer_read_write_pattern(frame_id, layout))

        return [
            pattern
            for pattern in patterns.values()
            if len(pattern.events) >= MIN_PATTERN_REFLOWS and pattern.total_cost_ms >= MIN_PATTERN_COST_MS
        ]

    def _create_detection(self, pattern: _ThrashPattern, context: DetectionContext) -> LayoutThrashDetection:
        occurrences = len(pattern.events)
        result = calculate_score(
            ScoringInput(
                detection_type=DetectionType.LAYOUT_THRASHING,
                duration_ms=pattern.total_cost_ms,
                occurrences=occurrences,
                frame_budget_ms=context.frame_budget_ms,
                trace_duration_ms=trace_duration_ms(context),
                affected_nodes=pattern.affected_nodes,
            ),
            self.scoring_config,
        )
        return LayoutThrashDetection(
            type=DetectionType.LAYOUT_THRASHING,
            severity=result.severity,
            description=(
                f"Layout thrashing detected on \"{pattern.selector}\" with {occurrences} "
                f"forced reflows costing {pattern.total_cost_ms:.2f}ms"
            ),
            location=DetectionLocation(selector=pattern.selector),
            metrics=build_metrics(pattern.total_cost_ms, occurrences, result),
            evidence=build_evidence(pattern.events),
            selector=pattern.selector,
            reflow_cost_ms=pattern.total_cost_ms,
            occurrences=occurrences,
            affected_nodes=pattern.affected_nodes,
            read_write_pattern=tuple(pattern.read_write_patterns),
        )
