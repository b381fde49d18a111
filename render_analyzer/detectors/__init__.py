"""Built-in detectors."""

from render_analyzer.config import AnalysisConfig
from render_analyzer.detectors.base import Detector
from render_analyzer.detectors.gpu_stall import GPUStallDetector
from render_analyzer.detectors.heavy_paint import HeavyPaintDetector
from render_analyzer.detectors.layout_thrash import LayoutThrashDetector
from render_analyzer.detectors.long_task import LongTaskDetector


def default_detectors(config: AnalysisConfig | None = None) -> list[Detector]:
    """One instance of every built-in detector, tuned by ``config``."""
    config = config or AnalysisConfig()
    return [
        LayoutThrashDetector(config.scoring, min_event_ms=config.layout_min_event_ms),
        GPUStallDetector(config.scoring, min_stall_ms=config.gpu_min_stall_ms),
        LongTaskDetector(config.scoring, threshold_ms=config.long_task_ms),
        HeavyPaintDetector(config.scoring, budget_fraction=config.paint_budget_fraction),
    ]


__all__ = [
    "Detector",
    "GPUStallDetector",
    "HeavyPaintDetector",
    "LayoutThrashDetector",
    "LongTaskDetector",
    "default_detectors",
]
