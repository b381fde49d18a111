"""Trace-collection capabilities declared by the adapter that captured a trace."""

from enum import Enum
from typing import Iterable


class Capability(str, Enum):
    FULL_CDP = "full_cdp"
    FRAME_TIMING = "frame_timing"
    LONG_TASKS = "long_tasks"
    DOM_SIGNALS = "dom_signals"
    GPU_EVENTS = "gpu_events"
    PAINT_EVENTS = "paint_events"
    SOURCE_MAPS = "source_maps"
    LIVE_MONITORING = "live_monitoring"


FULL_CAPABILITIES = frozenset(Capability)

ADAPTER_CAPABILITIES = {
    "chromium-cdp": FULL_CAPABILITIES,
    # Native WebKit traces carry no GPU or paint visibility.
    "webkit-native": frozenset({
        Capability.FRAME_TIMING,
        Capability.LONG_TASKS,
        Capability.DOM_SIGNALS,
    }),
}

CAPABILITY_EFFECTS = {
    Capability.FULL_CDP: "complete rendering pipeline visibility is unavailable",
    Capability.FRAME_TIMING: "frame boundaries cannot be measured",
    Capability.LONG_TASKS: "main-thread tasks over 50ms cannot be attributed",
    Capability.DOM_SIGNALS: "forced synchronous layouts cannot be observed",
    Capability.GPU_EVENTS: "GPU sync, texture upload and raster stalls are invisible",
    Capability.PAINT_EVENTS: "paint and rasterization cost cannot be measured",
    Capability.SOURCE_MAPS: "stack frames stay in their minified form",
    Capability.LIVE_MONITORING: "rolling-window monitoring is unavailable",
}


def parse_capability(value: str | Capability) -> Capability:
    """
    Resolve a capability from its value ("gpu_events") or name ("GPU_EVENTS").
    """
    if isinstance(value, Capability):
        return value
    token = str(value).strip().lower().replace("-", "_")
    for capability in Capability:
        if token in (capability.value, capability.name.lower()):
            return capability
    raise ValueError(f"Unknown capability: {value}")


def parse_capabilities(values: Iterable[str | Capability]) -> frozenset[Capability]:
    return frozenset(parse_capability(value) for value in values)


def adapter_capabilities(adapter: str) -> frozenset[Capability]:
    """
    Look up the capability preset of a named adapter.

    Raises:
        ValueError: if the adapter is not known
    """
    try:
        return ADAPTER_CAPABILITIES[adapter]
    except KeyError:
        known = ", ".join(sorted(ADAPTER_CAPABILITIES))
        raise ValueError(f"Unknown adapter '{adapter}' (known: {known})") from None
