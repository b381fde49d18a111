"""Long JavaScript tasks correlated with dropped frames."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from render_analyzer.capabilities import Capability
from render_analyzer.detectors.base import (
    build_evidence,
    build_metrics,
    int_field,
    mapping_field,
    parse_stack_frame,
    stack_field,
    str_field,
    trace_duration_ms,
)
from render_analyzer.models import (
    DetectionContext,
    DetectionLocation,
    DetectionType,
    LongTaskDetection,
    StackFrame,
)
from render_analyzer.scoring import DEFAULT_SCORING_CONFIG, ScoringConfig, ScoringInput, calculate_score
from render_analyzer.trace import TraceData, TraceEvent, frame_markers

logger = logging.getLogger(__name__)

LONG_TASK_THRESHOLD_MS = 50.0

JS_EXECUTION_EVENTS = frozenset({
    "FunctionCall",
    "EvaluateScript",
    "v8.compile",
    "v8.run",
    "V8.Execute",
    "RunMicrotasks",
    "TimerFire",
    "EventDispatch",
    "XHRReadyStateChange",
    "RequestAnimationFrame",
    "FireAnimationFrame",
    "ParseHTML",
    "ParseAuthorStyleSheet",
})

TIMELINE_CATEGORY = "devtools.timeline"
TIMELINE_NAME_TOKENS = ("Function", "Script", "Timer", "Event")


@dataclass(frozen=True)
class CallInfo:
    function_name: str
    file: str
    line: int
    column: int
    call_stack: tuple[StackFrame, ...] = ()


@dataclass(frozen=True)
class FrameDrop:
    ts: float
    duration: float

    @property
    def end(self) -> float:
        return self.ts + self.duration


@dataclass
class _TaskPattern:
    call: CallInfo
    events: list[TraceEvent] = field(default_factory=list)
    total_cpu_ms: float = 0.0
    correlated_frame_drops: int = 0
    call_stack: tuple[StackFrame, ...] = ()


def is_js_execution(event: TraceEvent) -> bool:
    if event.name in JS_EXECUTION_EVENTS:
        return True
    if TIMELINE_CATEGORY in event.cat:
        return any(token in event.name for token in TIMELINE_NAME_TOKENS)
    return False


def extract_call_info(event: TraceEvent) -> CallInfo:
    """
    Resolve the call site of a JS task.

    ``args.data`` supplies function, script and position; the first named
    ``beginData.stackTrace`` frame fills in when the function is anonymous;
    the event name is the last resort.
    """
    function_name = "anonymous"
    file = "unknown"
    line = 0
    column = 0
    call_stack = []

    data = mapping_field(event.args, "data")
    if data:
        function_name = str_field(data, "functionName") or function_name
        file = str_field(data, "scriptName") or str_field(data, "url") or file
        line = int_field(data, "lineNumber") or line
        column = int_field(data, "columnNumber") or column
        call_stack.extend(parse_stack_frame(frame) for frame in stack_field(data))

    for frame in stack_field(mapping_field(event.args, "beginData")):
        stack_frame = parse_stack_frame(frame)
        call_stack.append(stack_frame)
        if function_name == "anonymous" and stack_frame.function_name != "anonymous":
            function_name = stack_frame.function_name
            file = stack_frame.file
            line = stack_frame.line
            column = stack_frame.column

    if function_name == "anonymous":
        function_name = event.name

    return CallInfo(
        function_name=function_name,
        file=file,
        line=line,
        column=column,
        call_stack=tuple(call_stack),
    )


def find_frame_drops(trace: TraceData, frame_budget_ms: float) -> list[FrameDrop]:
    """Intervals between consecutive frame markers that exceed the frame budget."""
    budget_us = frame_budget_ms * 1000
    markers = frame_markers(trace)
    drops = []
    for prev, current in zip(markers, markers[1:]):
        interval = current.ts - prev.ts
        if interval > budget_us:
            drops.append(FrameDrop(ts=prev.ts, duration=interval))
    return drops


class LongTaskDetector:
    name = "LongTaskDetector"
    priority = 3
    required_capabilities = frozenset({Capability.LONG_TASKS})

    def __init__(
        self,
        scoring_config: ScoringConfig = DEFAULT_SCORING_CONFIG,
        threshold_ms: float = LONG_TASK_THRESHOLD_MS
    ):
        self.scoring_config = scoring_config
        self.threshold_ms = threshold_ms

    def detect(self, trace: TraceData, context: DetectionContext) -> list[LongTaskDetection]:
        tasks = self.find_long_tasks(trace)
        drops = find_frame_drops(trace, context.frame_budget_ms)
        patterns = self._correlate(tasks, drops)
        logger.debug("%s found %d long tasks in %d patterns (%d frame drops)",
                     self.name, len(tasks), len(patterns), len(drops))
        return [self._create_detection(pattern, context) for pattern in patterns]

    def find_long_tasks(self, trace: TraceData) -> list[TraceEvent]:
        """
        JS execution events at or above the threshold, in time order.

        A task lying entirely inside an already accepted task on the same
        thread is dropped so nested calls are not counted twice.
        """
        threshold_us = self.threshold_ms * 1000
        candidates = [
            event for event in trace.trace_events
            if is_js_execution(event) and event.dur >= threshold_us
        ]
        candidates.sort(key=lambda event: (event.ts, -event.dur))

        accepted = []
        open_until: dict[tuple[int, int], float] = {}
        for event in candidates:
            thread = (event.pid, event.tid)
            enclosing_end = open_until.get(thread)
            if enclosing_end is not None and event.end <= enclosing_end:
                continue
            accepted.append(event)
            open_until[thread] = max(event.end, enclosing_end or event.end)
        return accepted

    def _correlate(self, tasks: list[TraceEvent], drops: list[FrameDrop]) -> list[_TaskPattern]:
        patterns: dict[str, _TaskPattern] = {}
        for task in tasks:
            call = extract_call_info(task)
            correlated = sum(1 for drop in drops if task.ts < drop.end and task.end > drop.ts)

            key = f"{call.function_name}:{call.file}:{call.line}"
            pattern = patterns.get(key)
            if pattern is None:
                pattern = _TaskPattern(call=call, call_stack=call.call_stack)
                patterns[key] = pattern
            pattern.events.append(task)
            pattern.total_cpu_ms += task.dur / 1000
            pattern.correlated_frame_drops += correlated
            if len(call.call_stack) > len(pattern.call_stack):
                pattern.call_stack = call.call_stack

        return [
            pattern
            for pattern in patterns.values()
            if pattern.total_cpu_ms >= self.threshold_ms or len(pattern.events) >= 2
        ]

    def _create_detection(self, pattern: _TaskPattern, context: DetectionContext) -> LongTaskDetection:
        occurrences = len(pattern.events)
        call = pattern.call
        result = calculate_score(
            ScoringInput(
                detection_type=DetectionType.LONG_TASK,
                duration_ms=pattern.total_cpu_ms,
                occurrences=occurrences,
                frame_budget_ms=context.frame_budget_ms,
                trace_duration_ms=trace_duration_ms(context),
                correlated_frame_drops=pattern.correlated_frame_drops,
            ),
            self.scoring_config,
        )
        avg_cpu_ms = pattern.total_cpu_ms / occurrences
        return LongTaskDetection(
            type=DetectionType.LONG_TASK,
            severity=result.severity,
            description=(
                f"Long task \"{call.function_name}\" averaging {avg_cpu_ms:.1f}ms, "
                f"correlated with {pattern.correlated_frame_drops} frame drops"
            ),
            location=DetectionLocation(file=call.file, line=call.line, column=call.column),
            metrics=build_metrics(pattern.total_cpu_ms, occurrences, result),
            evidence=build_evidence(pattern.events),
            function_name=call.function_name,
            file=call.file,
            line=call.line,
            column=call.column,
            cpu_ms=pattern.total_cpu_ms,
            occurrences=occurrences,
            correlated_frame_drops=pattern.correlated_frame_drops,
            call_stack=pattern.call_stack,
        )
