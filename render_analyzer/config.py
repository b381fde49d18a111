"""Analysis configuration and JSON config-file loading."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping

from render_analyzer.errors import ConfigError
from render_analyzer.scoring import DEFAULT_SCORING_CONFIG, ScoringConfig, ScoringWeights, SeverityThresholds

logger = logging.getLogger(__name__)

# (file key, snake_case alias, attribute)
_ANALYSIS_KEYS = (
    ("fpsTarget", "fps_target", "fps_target"),
    ("longTaskThreshold", "long_task_ms", "long_task_ms"),
    ("gpuMinStallMs", "gpu_min_stall_ms", "gpu_min_stall_ms"),
    ("layoutMinEventMs", "layout_min_event_ms", "layout_min_event_ms"),
    ("paintBudgetFraction", "paint_budget_fraction", "paint_budget_fraction"),
    ("maxWorkers", "max_workers", "max_workers"),
)

_SCORING_KEYS = (
    ("maxSpeedupPct", "max_speedup_pct"),
    ("highConfidenceThresholdMs", "high_confidence_threshold_ms"),
    ("mediumConfidenceThresholdMs", "medium_confidence_threshold_ms"),
)


@dataclass(frozen=True)
class AnalysisConfig:
    fps_target: float = 60
    long_task_ms: float = 50
    gpu_min_stall_ms: float = 1.0
    layout_min_event_ms: float = 0.1
    paint_budget_fraction: float = 0.12
    max_workers: int = 1
    scoring: ScoringConfig = DEFAULT_SCORING_CONFIG

    def with_overrides(self, **overrides) -> "AnalysisConfig":
        """Return a copy with the given fields replaced; ``None`` values are ignored."""
        return replace(self, **{key: value for key, value in overrides.items() if value is not None})


def _lookup(section: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in section:
            return section[key]
    return None


def _positive_number(value: Any, key: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"'{key}' must be a positive number, got {value!r}")
    return value


def _section(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key, {})
    if not isinstance(value, Mapping):
        raise ConfigError(f"'{key}' must be an object")
    return value


def _scoring_config(section: Mapping[str, Any]) -> ScoringConfig:
    overrides: dict[str, Any] = {}
    for camel, snake in _SCORING_KEYS:
        value = _lookup(section, camel, snake)
        if value is not None:
            overrides[snake] = _positive_number(value, camel)

    weights = _section(section, "weights")
    if weights:
        overrides["weights"] = ScoringWeights(**{
            name: _positive_number(weights[name], f"weights.{name}")
            for name in ("duration", "frequency", "impact")
            if name in weights
        })

    thresholds = _lookup(section, "severityThresholds", "severity_thresholds")
    if thresholds is not None:
        if not isinstance(thresholds, Mapping):
            raise ConfigError("'severityThresholds' must be an object")
        overrides["severity_thresholds"] = SeverityThresholds(**{
            name: _positive_number(thresholds[name], f"severityThresholds.{name}")
            for name in ("critical", "high", "warning")
            if name in thresholds
        })

    return DEFAULT_SCORING_CONFIG.with_overrides(**overrides)


def config_from_dict(payload: Mapping[str, Any]) -> AnalysisConfig:
    """
    Build an AnalysisConfig from a parsed config document.

    Values come from the ``analysis`` section (camelCase or snake_case keys),
    with ``profiling.defaultFpsTarget`` as the FPS fallback. Unknown keys are
    ignored.

    Raises:
        ConfigError: if a known key holds a value of the wrong type
    """
    if not isinstance(payload, Mapping):
        raise ConfigError("Config root must be an object")

    analysis = _section(payload, "analysis")
    profiling = _section(payload, "profiling")

    values: dict[str, Any] = {}
    for camel, snake, attr in _ANALYSIS_KEYS:
        value = _lookup(analysis, camel, snake)
        if value is None:
            continue
        value = _positive_number(value, camel)
        if attr == "max_workers":
            if int(value) != value:
                raise ConfigError(f"'{camel}' must be an integer, got {value!r}")
            value = int(value)
        values[attr] = value

    if "fps_target" not in values:
        fallback = profiling.get("defaultFpsTarget")
        if fallback is not None:
            values["fps_target"] = _positive_number(fallback, "profiling.defaultFpsTarget")

    scoring = _section(analysis, "scoring")
    if scoring:
        values["scoring"] = _scoring_config(scoring)

    return AnalysisConfig(**values)


def load_config(path: str | Path) -> AnalysisConfig:
    """
    Load analysis settings from a JSON config file.

    Args:
        path: Path to the config file

    Returns:
        Parsed AnalysisConfig
    """
    config_path = Path(path)
    if not config_path.is_file():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Failed to read config {config_path}: {exc}") from exc

    config = config_from_dict(payload)
    logger.debug("Loaded config from %s: %s", config_path, config)
    return config
