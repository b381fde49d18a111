import json
import tempfile
import unittest
from pathlib import Path

from render_analyzer.analyzer import (
    TraceAnalyzer,
    analyze_trace,
    calculate_frame_metrics,
    calculate_phase_breakdown,
    create_default_analyzer,
    load_any_trace,
    rank_detections,
)
from render_analyzer.capabilities import ADAPTER_CAPABILITIES, Capability
from render_analyzer.config import AnalysisConfig
from render_analyzer.models import DetectionType, WarningCode
from render_analyzer.snapshot import TraceSnapshot
from render_analyzer.trace import TraceData

from trace_fixtures import (
    begin_frame,
    build_trace,
    create_gpu_stall_trace,
    create_heavy_paint_trace,
    create_layout_thrash_trace,
    create_long_task_trace,
    create_snapshot_payload,
    event,
    thread_name,
)


class FailingDetector:
    name = "FailingDetector"
    priority = 0
    required_capabilities = frozenset()

    def detect(self, trace, context):
        raise RuntimeError("boom")


class ContextRecorder:
    name = "ContextRecorder"
    priority = 0
    required_capabilities = frozenset()

    def __init__(self):
        self.contexts = []

    def detect(self, trace, context):
        self.contexts.append(context)
        return []


class StaticDetector:
    required_capabilities = frozenset()

    def __init__(self, name, priority):
        self.name = name
        self.priority = priority

    def detect(self, trace, context):
        return []


def _combined_trace():
    events = [thread_name(1, "CrRendererMain")]
    for trace in (create_layout_thrash_trace(), create_gpu_stall_trace(), create_long_task_trace()):
        events.extend(e.to_dict() for e in trace.trace_events if e.ph != "M")
    return build_trace(events, "combined")


class TestRegistration(unittest.TestCase):
    def test_default_detectors_in_priority_order(self):
        names = [detector.name for detector in create_default_analyzer().get_detectors()]
        self.assertEqual(names, ["LayoutThrashDetector", "GPUStallDetector", "LongTaskDetector", "HeavyPaintDetector"])

    def test_equal_priorities_keep_registration_order(self):
        analyzer = TraceAnalyzer()
        analyzer.register_detector(StaticDetector("b", 2))
        analyzer.register_detector(StaticDetector("a", 1))
        analyzer.register_detector(StaticDetector("c", 2))
        self.assertEqual([d.name for d in analyzer.get_detectors()], ["a", "b", "c"])

    def test_rejects_non_detector(self):
        with self.assertRaises(TypeError):
            TraceAnalyzer().register_detector(object())


class TestAnalyze(unittest.TestCase):
    def test_full_capabilities_run_every_detector(self):
        result = create_default_analyzer().analyze(_combined_trace())
        types = {detection.type for detection in result.detections}
        self.assertTrue({DetectionType.LAYOUT_THRASHING, DetectionType.GPU_STALL, DetectionType.LONG_TASK} <= types)
        self.assertEqual(result.warnings, [])
        self.assertIn("capabilities", result.assumptions)
        self.assertEqual(len(result.summary.hotspots["gpu_stalls"]), 3)
        self.assertEqual(result.summary.hotspots["layout_thrashing"][0]["selector"], ".card-container")

    def test_detections_follow_detector_priority(self):
        result = create_default_analyzer().analyze(_combined_trace())
        order = {DetectionType.LAYOUT_THRASHING: 1, DetectionType.GPU_STALL: 2, DetectionType.LONG_TASK: 3,
                 DetectionType.HEAVY_PAINT: 4}
        priorities = [order[detection.type] for detection in result.detections]
        self.assertEqual(priorities, sorted(priorities))

    def test_limited_capabilities_emit_one_degraded_warning(self):
        trace = create_gpu_stall_trace()
        result = create_default_analyzer().analyze(trace, capabilities=ADAPTER_CAPABILITIES["webkit-native"])

        self.assertEqual([d for d in result.detections if d.type is DetectionType.GPU_STALL], [])
        self.assertEqual(len(result.warnings), 1)
        warning = result.warnings[0]
        self.assertEqual(warning.code, WarningCode.DEGRADED_ANALYSIS)
        self.assertEqual(warning.affected_detectors, ("GPUStallDetector", "HeavyPaintDetector"))
        self.assertIn("2 detector(s) skipped", warning.message)
        self.assertIn("gpu_events", warning.message)
        self.assertEqual(len(warning.suggestions), 2)
        self.assertNotIn("capabilities", result.assumptions)

    def test_removing_gpu_events_skips_only_gpu_detector(self):
        trace = create_gpu_stall_trace()
        full = create_default_analyzer().analyze(trace, capabilities=list(Capability))
        self.assertEqual(full.warnings, [])
        self.assertTrue(any(d.type is DetectionType.GPU_STALL for d in full.detections))

        limited = create_default_analyzer().analyze(
            trace, capabilities=[c for c in Capability if c is not Capability.GPU_EVENTS]
        )
        self.assertEqual([d for d in limited.detections if d.type is DetectionType.GPU_STALL], [])
        [warning] = limited.warnings
        self.assertEqual(warning.code, WarningCode.DEGRADED_ANALYSIS)
        self.assertEqual(warning.affected_detectors, ("GPUStallDetector",))
        self.assertEqual(len(warning.suggestions), 1)

    def test_no_capabilities_skips_everything(self):
        result = create_default_analyzer().analyze(create_long_task_trace(), capabilities=[])
        self.assertEqual(result.detections, [])
        self.assertEqual(len(result.warnings[0].affected_detectors), 4)

    def test_failing_detector_is_isolated(self):
        analyzer = create_default_analyzer()
        analyzer.register_detector(FailingDetector())
        with self.assertLogs("render_analyzer.analyzer", level="ERROR"):
            result = analyzer.analyze(create_gpu_stall_trace())

        self.assertEqual(len([d for d in result.detections if d.type is DetectionType.GPU_STALL]), 3)
        [warning] = result.warnings
        self.assertEqual(warning.code, WarningCode.DETECTOR_FAILED)
        self.assertEqual(warning.affected_detectors, ("FailingDetector",))
        self.assertIn("boom", warning.message)

    def test_empty_trace(self):
        result = create_default_analyzer().analyze(build_trace([]))
        self.assertEqual(result.detections, [])
        self.assertEqual(result.summary.frames.total, 0)
        self.assertEqual(result.summary.duration_ms, 0)
        self.assertIn("trace_duration", result.assumptions)
        self.assertIn("frames", result.assumptions)

    def test_invalid_arguments(self):
        analyzer = create_default_analyzer()
        with self.assertRaises(ValueError):
            analyzer.analyze(None)
        for fps in (0, -30):
            with self.assertRaises(ValueError):
                analyzer.analyze(build_trace([]), fps_target=fps)

    def test_frame_budget_follows_fps_target(self):
        trace = create_long_task_trace()
        for fps, budget in ((30, 1000 / 30), (60, 1000 / 60), (120, 1000 / 120)):
            result = create_default_analyzer().analyze(trace, fps_target=fps)
            self.assertAlmostEqual(result.summary.frames.frame_budget_ms, budget)

    def test_repeated_runs_are_identical(self):
        analyzer = create_default_analyzer()
        trace = _combined_trace()
        self.assertEqual(analyzer.analyze(trace).to_dict(), analyzer.analyze(trace).to_dict())

    def test_parallel_matches_serial(self):
        trace = _combined_trace()
        serial = create_default_analyzer().analyze(trace).to_dict()
        parallel = create_default_analyzer(AnalysisConfig(max_workers=4)).analyze(trace).to_dict()
        self.assertEqual(serial, parallel)

    def test_sub_millisecond_gpu_events_never_cluster(self):
        trace = build_trace([event("GPUTask", i * 1000, 500, cat="gpu") for i in range(50)])
        result = create_default_analyzer().analyze(trace)
        self.assertEqual([d for d in result.detections if d.type is DetectionType.GPU_STALL], [])

    def test_non_finite_gpu_durations_never_cluster(self):
        trace = build_trace([event("GPUTask", i * 20000, "nan", cat="gpu") for i in range(3)])
        result = create_default_analyzer().analyze(trace)
        self.assertEqual([d for d in result.detections if d.type is DetectionType.GPU_STALL], [])
        json.dumps(result.to_dict(), allow_nan=False)

    def test_capture_order_does_not_change_detections(self):
        for trace in (create_gpu_stall_trace(), create_layout_thrash_trace()):
            with self.subTest(scenario=trace.metadata["scenario"]):
                shuffled = TraceData.from_events(reversed(trace.trace_events), trace.metadata)
                expected = create_default_analyzer().analyze(trace).detections
                actual = create_default_analyzer().analyze(shuffled).detections
                self.assertTrue(expected)
                self.assertEqual([d.to_dict() for d in actual], [d.to_dict() for d in expected])

    def test_degraded_mode_follows_full_cdp(self):
        recorder = ContextRecorder()
        analyzer = TraceAnalyzer()
        analyzer.register_detector(recorder)
        analyzer.analyze(create_long_task_trace())
        analyzer.analyze(create_long_task_trace(), capabilities=ADAPTER_CAPABILITIES["webkit-native"])
        self.assertEqual([context.degraded_mode for context in recorder.contexts], [False, True])

    def test_result_serializes_enums_as_values(self):
        output = create_default_analyzer().analyze(
            create_gpu_stall_trace(), capabilities=[Capability.FRAME_TIMING]
        ).to_dict()
        json.dumps(output)
        self.assertEqual(output["warnings"][0]["code"], "DEGRADED_ANALYSIS")
        self.assertEqual(output["summary"]["metadata"]["scenario"], "gpu-stall-test")


class TestAnalyzeSnapshot(unittest.TestCase):
    def test_native_snapshot_infers_capabilities(self):
        recorder = ContextRecorder()
        analyzer = create_default_analyzer()
        analyzer.register_detector(recorder)
        result = analyzer.analyze_snapshot(TraceSnapshot.from_dict(create_snapshot_payload()))

        [context] = recorder.contexts
        self.assertEqual(
            context.capabilities,
            {Capability.FRAME_TIMING, Capability.LONG_TASKS, Capability.DOM_SIGNALS},
        )
        self.assertTrue(context.degraded_mode)
        self.assertEqual((context.trace_start_time, context.trace_end_time), (0, 8 * 16667 + 2 * 40000))
        self.assertIn("inferred", result.assumptions["capabilities"])

        [warning] = result.warnings
        self.assertEqual(warning.code, WarningCode.DEGRADED_ANALYSIS)
        self.assertEqual(warning.affected_detectors, ("GPUStallDetector", "HeavyPaintDetector"))

        [task] = [d for d in result.detections if d.type is DetectionType.LONG_TASK]
        self.assertEqual((task.function_name, task.file, task.line), ("processData", "app.js", 42))
        self.assertEqual(task.occurrences, 2)

    def test_summary_comes_from_snapshot(self):
        payload = create_snapshot_payload()
        summary = create_default_analyzer().analyze_snapshot(TraceSnapshot.from_dict(payload), fps_target=120).summary

        self.assertEqual(summary.name, "checkout-scroll")
        self.assertEqual(summary.duration_ms, payload["durationMs"])
        self.assertEqual((summary.frames.total, summary.frames.dropped, summary.frames.avg_fps), (10, 2, 52.5))
        self.assertAlmostEqual(summary.frames.frame_budget_ms, 1000 / 120)
        self.assertEqual(summary.phase_breakdown.layout_ms, 15.0)
        self.assertEqual(summary.phase_breakdown.paint_ms, 20.0)
        self.assertEqual(summary.metadata["scenario"], "checkout")
        self.assertEqual(summary.metadata["fps_target"], 120)

    def test_chromium_snapshot_runs_every_detector(self):
        snapshot = TraceSnapshot.from_dict(create_snapshot_payload("chromium-cdp", with_gpu=True))
        recorder = ContextRecorder()
        analyzer = create_default_analyzer()
        analyzer.register_detector(recorder)
        result = analyzer.analyze_snapshot(snapshot)

        self.assertFalse(recorder.contexts[0].degraded_mode)
        self.assertEqual(result.warnings, [])
        [stall] = [d for d in result.detections if d.type is DetectionType.GPU_STALL]
        self.assertEqual((stall.element, stall.occurrences, stall.stall_ms), ("hero-canvas", 3, 30.0))
        self.assertEqual(result.summary.phase_breakdown.gpu_ms, 30.5)

    def test_explicit_capabilities_win_over_inference(self):
        snapshot = TraceSnapshot.from_dict(create_snapshot_payload("chromium-cdp", with_gpu=True))
        result = create_default_analyzer().analyze_snapshot(snapshot, capabilities=[Capability.LONG_TASKS])

        self.assertNotIn("capabilities", result.assumptions)
        self.assertEqual({d.type for d in result.detections}, {DetectionType.LONG_TASK})
        self.assertEqual(len(result.warnings[0].affected_detectors), 3)

    def test_invalid_arguments(self):
        analyzer = create_default_analyzer()
        with self.assertRaises(ValueError):
            analyzer.analyze_snapshot(None)
        with self.assertRaises(ValueError):
            analyzer.analyze_snapshot(TraceSnapshot.from_dict(create_snapshot_payload()), fps_target=0)


class TestMetrics(unittest.TestCase):
    def test_frame_metrics(self):
        trace = build_trace([begin_frame(0, 0), begin_frame(16000, 1), begin_frame(50000, 2)])
        metrics = calculate_frame_metrics(trace, 60)
        self.assertEqual(metrics.total, 2)
        self.assertEqual(metrics.dropped, 1)
        self.assertEqual(metrics.avg_fps, 40.0)

    def test_phase_breakdown(self):
        breakdown = calculate_phase_breakdown(create_heavy_paint_trace(frames=2))
        self.assertEqual(breakdown.paint_ms, 6.0)
        self.assertEqual(breakdown.gpu_ms, 4.0)
        self.assertEqual(breakdown.layout_ms, 0)

    def test_rank_detections(self):
        detections = create_default_analyzer().analyze(_combined_trace()).detections
        scores = [d.metrics.impact_score for d in rank_detections(detections)]
        self.assertEqual(scores, sorted(scores, reverse=True))


class TestAnalyzeTrace(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "scroll-test.json"
        trace = create_gpu_stall_trace()
        self.path.write_text(json.dumps({"traceEvents": [e.to_dict() for e in trace.trace_events]}))

    def tearDown(self):
        self.tmp.cleanup()

    def test_analyze_file(self):
        output = analyze_trace(str(self.path))
        self.assertEqual(output["summary"]["name"], "scroll-test")
        self.assertEqual(output["assumptions"]["trace_path"], str(self.path))
        types = [detection["type"] for detection in output["detections"]]
        self.assertEqual(types, ["gpu_stall"] * 3 + ["heavy_paint"] * 2)

    def test_adapter_preset(self):
        output = analyze_trace(str(self.path), adapter="webkit-native", name="native")
        self.assertEqual(output["summary"]["name"], "native")
        self.assertEqual(output["detections"], [])
        self.assertEqual(output["warnings"][0]["code"], "DEGRADED_ANALYSIS")

    def test_unknown_adapter_and_format(self):
        with self.assertRaises(ValueError):
            analyze_trace(str(self.path), adapter="netscape")
        with self.assertRaises(ValueError):
            load_any_trace(self.path, "xml")


if __name__ == "__main__":
    unittest.main()
