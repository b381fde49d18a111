"""Trace-event model, JSON loading and main-thread helpers."""

from __future__ import annotations

import bisect
import gzip
import json
import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

from render_analyzer.errors import InvalidTraceFormatError, TraceNotFoundError, TraceParseError

logger = logging.getLogger(__name__)

MAIN_THREAD_NAMES = ("CrRendererMain", "CrBrowserMain", "main")
FRAME_MARKER_NAMES = ("BeginFrame", "DrawFrame", "BeginMainThreadFrame")


def _as_number(value: Any, default: float = 0) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return default
    if not isinstance(value, (int, float)):
        return default
    # NaN and infinities from "nan"/"inf" strings or JSON NaN/Infinity literals
    if isinstance(value, float) and not math.isfinite(value):
        return default
    return value


def _as_int(value: Any, default: int = 0) -> int:
    number = _as_number(value, default)
    try:
        return int(number)
    except (OverflowError, ValueError):
        return default


@dataclass(frozen=True)
class TraceEvent:
    """One trace-event record. Times are in microseconds."""

    pid: int
    tid: int
    ts: float
    ph: str
    cat: str
    name: str
    dur: float = 0
    tdur: float | None = None
    s: str | None = None
    args: Mapping[str, Any] = field(default_factory=dict, hash=False)

    @property
    def end(self) -> float:
        return self.ts + self.dur

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "TraceEvent":
        """
        Build an event from a raw trace-event object.

        Missing or malformed optional fields fall back to defaults instead of
        failing; the trace is a best-effort capture.
        """
        args = raw.get("args")
        tdur = raw.get("tdur")
        scope = raw.get("s")
        return cls(
            pid=_as_int(raw.get("pid")),
            tid=_as_int(raw.get("tid")),
            ts=_as_number(raw.get("ts")),
            ph=str(raw.get("ph") or ""),
            cat=str(raw.get("cat") or ""),
            name=str(raw.get("name") or ""),
            dur=max(_as_number(raw.get("dur")), 0),
            tdur=_as_number(tdur) if tdur is not None else None,
            s=str(scope) if scope is not None else None,
            args=args if isinstance(args, Mapping) else {},
        )

    def to_dict(self) -> dict:
        payload = {
            "pid": self.pid,
            "tid": self.tid,
            "ts": self.ts,
            "ph": self.ph,
            "cat": self.cat,
            "name": self.name,
            "dur": self.dur,
        }
        if self.tdur is not None:
            payload["tdur"] = self.tdur
        if self.s is not None:
            payload["s"] = self.s
        if self.args:
            payload["args"] = dict(self.args)
        return payload


@dataclass(frozen=True)
class TraceData:
    trace_events: tuple[TraceEvent, ...]
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_events(cls, events: Iterable[TraceEvent], metadata: Mapping[str, Any] | None = None) -> "TraceData":
        return cls(trace_events=tuple(events), metadata=dict(metadata or {}))

    @classmethod
    def from_dict(cls, payload: Any) -> "TraceData":
        """
        Accept both Chrome trace-event shapes: ``{"traceEvents": [...]}`` and a bare array.

        Raises:
            InvalidTraceFormatError: if the payload is neither shape
        """
        if isinstance(payload, list):
            raw_events, metadata = payload, {}
        elif isinstance(payload, Mapping) and isinstance(payload.get("traceEvents"), list):
            raw_events = payload["traceEvents"]
            metadata = payload.get("metadata")
            if not isinstance(metadata, Mapping):
                metadata = {}
        else:
            raise InvalidTraceFormatError("Expected a traceEvents array or an object containing one")

        events = []
        skipped = 0
        for raw in raw_events:
            if not isinstance(raw, Mapping):
                skipped += 1
                continue
            events.append(TraceEvent.from_dict(raw))
        if skipped:
            logger.debug("Skipped %d non-object trace entries", skipped)
        return cls.from_events(events, metadata)


def load_trace(path: str | Path) -> TraceData:
    """
    Load a Chrome trace-event JSON file (optionally gzip-compressed).

    Args:
        path: Path to the ``.json`` or ``.json.gz`` trace

    Returns:
        Parsed TraceData
    """
    trace_path = Path(path)
    if not trace_path.is_file():
        raise TraceNotFoundError(str(trace_path))

    opener = gzip.open if trace_path.suffix == ".gz" else open
    try:
        with opener(trace_path, "rt", encoding="utf-8") as f:
            payload = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TraceParseError(str(trace_path), str(exc)) from exc

    trace = TraceData.from_dict(payload)
    logger.debug("Loaded %d events from %s", len(trace.trace_events), trace_path)
    return trace


def trace_time_range(trace: TraceData) -> tuple[float, float]:
    """Return (start, end) in microseconds; (0, 0) for an empty trace."""
    if not trace.trace_events:
        return 0, 0
    start = min(event.ts for event in trace.trace_events)
    end = max(event.end for event in trace.trace_events)
    return start, end


def find_main_thread(trace: TraceData) -> tuple[int | None, str]:
    """
    Resolve the renderer main thread.

    Prefers ``thread_name`` metadata naming a known main-thread label, then
    falls back to the thread with the most events.

    Returns:
        Tuple of (tid or None, note describing how it was resolved)
    """
    for event in trace.trace_events:
        if event.ph == "M" and event.name == "thread_name":
            if event.args.get("name") in MAIN_THREAD_NAMES:
                return event.tid, f"Main thread tid={event.tid} from thread_name '{event.args.get('name')}'"

    counts = Counter(event.tid for event in trace.trace_events)
    main_tid = None
    max_count = 0
    for tid, count in counts.items():
        if count > max_count:
            main_tid, max_count = tid, count

    if main_tid is None:
        return None, "Main thread unresolved: trace has no events"
    return main_tid, f"Main thread tid={main_tid} inferred as busiest thread ({max_count} events)"


def find_main_thread_id(trace: TraceData) -> int | None:
    return find_main_thread(trace)[0]


class MainThreadIndex:
    """Main-thread events sorted by start time for interval lookups."""

    def __init__(self, trace: TraceData, tid: int | None):
        self.tid = tid
        events = [event for event in trace.trace_events if tid is not None and event.tid == tid]
        events.sort(key=lambda event: event.ts)
        self._starts = [event.ts for event in events]
        self._names = [event.name for event in events]

    def __len__(self) -> int:
        return len(self._starts)

    def names_between(self, start: float, end: float) -> list[str]:
        """Names of main-thread events starting within [start, end)."""
        lo = bisect.bisect_left(self._starts, start)
        hi = bisect.bisect_left(self._starts, end)
        return self._names[lo:hi]

    def any_name_contains(self, start: float, end: float, tokens: Iterable[str]) -> bool:
        tokens = tuple(tokens)
        return any(
            token in name
            for name in self.names_between(start, end)
            for token in tokens
        )


def frame_markers(trace: TraceData, names: Iterable[str] = FRAME_MARKER_NAMES) -> list[TraceEvent]:
    """Frame boundary events sorted by timestamp."""
    wanted = frozenset(names)
    markers = [event for event in trace.trace_events if event.name in wanted]
    markers.sort(key=lambda event: event.ts)
    return markers
