"""Read Chrome/Perfetto traces through Perfetto's TraceProcessor."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

from perfetto.trace_processor import TraceProcessor

from render_analyzer.errors import TraceNotFoundError, TraceParseError
from render_analyzer.trace import TraceData, TraceEvent

logger = logging.getLogger(__name__)

SLICE_QUERY = """
SELECT
    s.ts AS ts,
    s.dur AS dur,
    s.name AS name,
    s.category AS category,
    s.arg_set_id AS arg_set_id,
    t.tid AS tid,
    t.name AS thread_name,
    p.pid AS pid
FROM slice s
JOIN thread_track tt ON s.track_id = tt.id
JOIN thread t ON t.utid = tt.utid
LEFT JOIN process p ON p.upid = t.upid
ORDER BY s.ts
"""

ARGS_QUERY = """
SELECT
    a.arg_set_id AS arg_set_id,
    a.key AS key,
    a.int_value AS int_value,
    a.string_value AS string_value,
    a.real_value AS real_value
FROM args a
WHERE a.arg_set_id IN (SELECT DISTINCT arg_set_id FROM slice WHERE arg_set_id IS NOT NULL)
ORDER BY a.arg_set_id, a.id
"""

_ARG_PREFIXES = ("args.", "debug.")
_SEGMENT = re.compile(r"^([^\[\]]+)((?:\[\d+\])*)$")
_INDEX = re.compile(r"\[(\d+)\]")


def _q(tp: TraceProcessor, sql: str) -> list[dict]:
    """Execute a SQL query and return results as a list of dictionaries."""
    result = tp.query(sql)
    rows = []
    for row in result:
        row_dict = {col: getattr(row, col) for col in result.column_names}
        rows.append(row_dict)
    return rows


def _arg_value(row: dict) -> Any:
    for column in ("int_value", "real_value", "string_value"):
        if row.get(column) is not None:
            return row[column]
    return None


def _container_for(parent: Any, key: Any, next_is_index: bool) -> Any:
    empty = [] if next_is_index else {}
    if isinstance(parent, list):
        while len(parent) <= key:
            parent.append(None)
        if not isinstance(parent[key], (dict, list)):
            parent[key] = empty
        return parent[key]
    if not isinstance(parent.get(key), (dict, list)):
        parent[key] = empty
    return parent[key]


def _insert_arg(target: dict, flat_key: str, value: Any) -> None:
    """
    Insert a flattened arg key such as ``args.data.stackTrace[0].url`` into nested dicts and lists.
    """
    for prefix in _ARG_PREFIXES:
        if flat_key.startswith(prefix):
            flat_key = flat_key[len(prefix):]
            break

    path: list[Any] = []
    for segment in flat_key.split("."):
        match = _SEGMENT.match(segment)
        if not match:
            path.append(segment)
            continue
        path.append(match.group(1))
        path.extend(int(index) for index in _INDEX.findall(match.group(2)))

    node: Any = target
    for position, key in enumerate(path[:-1]):
        node = _container_for(node, key, isinstance(path[position + 1], int))
        if isinstance(node, list) and not isinstance(path[position + 1], int):
            return

    last = path[-1]
    if isinstance(node, list):
        if not isinstance(last, int):
            return
        while len(node) <= last:
            node.append(None)
        node[last] = value
    elif isinstance(node, dict) and not isinstance(last, int):
        node[last] = value


def _group_args(rows: list[dict]) -> dict[int, dict]:
    grouped: dict[int, dict] = {}
    for row in rows:
        args = grouped.setdefault(row["arg_set_id"], {})
        _insert_arg(args, row["key"], _arg_value(row))
    return grouped


def load_perfetto_trace(path: str | Path) -> TraceData:
    """
    Load a trace with TraceProcessor and convert thread slices to trace events.

    Nanosecond timestamps become microseconds; slices with a duration become
    complete (``X``) events, the rest instant (``I``) events. ``thread_name``
    metadata events are synthesized so main-thread resolution works.

    Args:
        path: Path to a Perfetto protobuf or Chrome JSON trace

    Returns:
        TraceData built from the slice table
    """
    trace_path = Path(path)
    if not trace_path.is_file():
        raise TraceNotFoundError(str(trace_path))

    try:
        tp = TraceProcessor(trace=str(trace_path))
    except Exception as exc:
        raise TraceParseError(str(trace_path), str(exc)) from exc

    try:
        slices = _q(tp, SLICE_QUERY)
        args_by_set = _group_args(_q(tp, ARGS_QUERY))
    except Exception as exc:
        raise TraceParseError(str(trace_path), str(exc)) from exc
    finally:
        tp.close()

    events = []
    thread_names: dict[tuple[int, int], str] = {}
    for row in slices:
        pid = row.get("pid") or 0
        tid = row.get("tid") or 0
        dur = row.get("dur") or 0
        if row.get("thread_name") and (pid, tid) not in thread_names:
            thread_names[(pid, tid)] = row["thread_name"]
        events.append(TraceEvent(
            pid=pid,
            tid=tid,
            ts=row["ts"] / 1000,
            ph="X" if dur > 0 else "I",
            cat=row.get("category") or "",
            name=row.get("name") or "",
            dur=max(dur, 0) / 1000,
            args=args_by_set.get(row.get("arg_set_id"), {}),
        ))

    first_ts = events[0].ts if events else 0
    metadata_events = [
        TraceEvent(pid=pid, tid=tid, ts=first_ts, ph="M", cat="__metadata", name="thread_name", args={"name": name})
        for (pid, tid), name in thread_names.items()
    ]

    logger.debug("Loaded %d slices from %s via TraceProcessor", len(events), trace_path)
    return TraceData.from_events(metadata_events + events, {"source": "perfetto"})
