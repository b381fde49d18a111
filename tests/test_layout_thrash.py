import unittest

from render_analyzer.capabilities import Capability
from render_analyzer.detectors.layout_thrash import LayoutThrashDetector, extract_selector
from render_analyzer.models import DetectionType
from render_analyzer.trace import TraceEvent

from trace_fixtures import (
    GPU_TID,
    begin_frame,
    build_trace,
    create_layout_thrash_trace,
    event,
    make_context,
    thread_name,
)


class TestExtractSelector(unittest.TestCase):
    def test_prefers_selector_stats(self):
        raw = event("Layout", 0, 1000, args={"data": {"selectorStats": ".grid", "nodeName": "DIV"}})
        self.assertEqual(extract_selector(TraceEvent.from_dict(raw)), ".grid")

    def test_node_name(self):
        raw = event("Layout", 0, 1000, args={"data": {"nodeName": "DIV"}})
        self.assertEqual(extract_selector(TraceEvent.from_dict(raw)), "DIV")

    def test_stack_function_fallback(self):
        raw = event("Layout", 0, 1000, args={"beginData": {"stackTrace": [{"functionName": "measure"}]}})
        self.assertEqual(extract_selector(TraceEvent.from_dict(raw)), "measure")

    def test_unknown(self):
        self.assertEqual(extract_selector(TraceEvent.from_dict(event("Layout", 0, 1000))), "unknown")


class TestLayoutThrashDetector(unittest.TestCase):
    def setUp(self):
        self.detector = LayoutThrashDetector()
        self.trace = create_layout_thrash_trace()
        self.detections = self.detector.detect(self.trace, make_context(self.trace))

    def test_contract(self):
        self.assertEqual(self.detector.priority, 1)
        self.assertEqual(self.detector.required_capabilities, frozenset({Capability.DOM_SIGNALS}))

    def test_detects_selector_pattern(self):
        self.assertEqual([d.selector for d in self.detections], [".card-container", "unknown"])
        card = self.detections[0]
        self.assertEqual(card.type, DetectionType.LAYOUT_THRASHING)
        self.assertEqual(card.occurrences, 15)
        self.assertAlmostEqual(card.reflow_cost_ms, 75.0)
        self.assertEqual(card.affected_nodes, 100)
        self.assertEqual(card.location.selector, ".card-container")
        self.assertIn("15 forced reflows", card.description)

    def test_style_recalcs_form_their_own_pattern(self):
        recalc = self.detections[1]
        self.assertEqual(recalc.occurrences, 5)
        self.assertAlmostEqual(recalc.reflow_cost_ms, 2.5)
        self.assertEqual(recalc.affected_nodes, 100)

    def test_read_write_patterns(self):
        patterns = self.detections[0].read_write_pattern
        self.assertEqual(len(patterns), 15)
        self.assertEqual([p.frame_id for p in patterns[:3]], [0, 0, 0])
        self.assertEqual(patterns[3].frame_id, 1)
        for pattern in patterns:
            self.assertEqual(pattern.reads[0].property, "offsetWidth")
            self.assertEqual(pattern.writes[0].property, "style")
            self.assertEqual(pattern.forced_reflows, 1)

    def test_properties_from_stack_labels(self):
        layout = {"beginData": {"stackTrace": [
            {"functionName": "getBoundingClientRect", "url": "app.js", "lineNumber": 3},
            {"functionName": "element.style.transform", "url": "app.js", "lineNumber": 4},
        ]}, "data": {"selectorStats": ".box"}}
        trace = build_trace([
            thread_name(1, "CrRendererMain"),
            begin_frame(0, 0),
            event("Layout", 1000, 2000, args=layout),
            event("Layout", 3100, 2000, args=layout),
        ])
        [detection] = LayoutThrashDetector().detect(trace, make_context(trace))
        pattern = detection.read_write_pattern[0]
        self.assertEqual([r.property for r in pattern.reads], ["getBoundingClientRect"])
        self.assertEqual([w.property for w in pattern.writes], ["transform", "style"])

    def test_spread_out_layouts_are_not_thrashing(self):
        args = {"data": {"selectorStats": ".slow"}}
        trace = build_trace([
            thread_name(1, "CrRendererMain"),
            begin_frame(0, 0),
            event("Layout", 0, 1000, args=args),
            event("Layout", 10000, 1000, args=args),
        ])
        self.assertEqual(LayoutThrashDetector().detect(trace, make_context(trace)), [])

    def test_layouts_off_the_main_thread_are_ignored(self):
        args = {"data": {"selectorStats": ".worker"}}
        trace = build_trace([
            thread_name(1, "CrRendererMain"),
            begin_frame(0, 0),
            event("Layout", 1000, 2000, tid=GPU_TID, args=args),
            event("Layout", 3100, 2000, tid=GPU_TID, args=args),
        ])
        self.assertEqual(LayoutThrashDetector().detect(trace, make_context(trace)), [])

    def test_sub_threshold_events_are_ignored(self):
        args = {"data": {"selectorStats": ".tiny"}}
        trace = build_trace([
            begin_frame(0, 0),
            *[event("Layout", 100 + i * 60, 50, args=args) for i in range(20)],
        ])
        self.assertEqual(LayoutThrashDetector().detect(trace, make_context(trace)), [])

    def test_budget_windows_without_frame_markers(self):
        args = {"data": {"selectorStats": ".nomarkers"}}
        trace = build_trace([
            event("Layout", 0, 2000, args=args),
            event("Layout", 2100, 2000, args=args),
        ])
        [detection] = LayoutThrashDetector().detect(trace, make_context(trace))
        self.assertEqual(detection.selector, ".nomarkers")
        self.assertEqual(detection.read_write_pattern[0].frame_id, 0)

    def test_layouts_before_first_frame_marker_are_skipped(self):
        args = {"data": {"selectorStats": ".early"}}
        trace = build_trace([
            event("Layout", 0, 2000, args=args),
            event("Layout", 2100, 2000, args=args),
            begin_frame(10000, 0),
        ])
        self.assertEqual(LayoutThrashDetector().detect(trace, make_context(trace)), [])

    def test_empty_trace(self):
        trace = build_trace([])
        self.assertEqual(LayoutThrashDetector().detect(trace, make_context(trace)), [])


if __name__ == "__main__":
    unittest.main()
