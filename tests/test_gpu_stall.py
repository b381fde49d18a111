import unittest

from render_analyzer.capabilities import Capability
from render_analyzer.detectors.base import Detector
from render_analyzer.detectors.gpu_stall import GPUStallDetector, classify_stall, extract_stall_target
from render_analyzer.models import DetectionType, StallType
from render_analyzer.trace import TraceEvent

from trace_fixtures import GPU_TID, build_trace, create_gpu_stall_trace, event, make_context, thread_name


def _event(name, cat="gpu", args=None, dur=1000):
    return TraceEvent.from_dict(event(name, 0, dur, cat=cat, args=args))


class TestClassifyStall(unittest.TestCase):
    def test_known_names(self):
        self.assertEqual(classify_stall(_event("WaitForSwap")), StallType.SYNC)
        self.assertEqual(classify_stall(_event("TexSubImage2D")), StallType.TEXTURE_UPLOAD)
        self.assertEqual(classify_stall(_event("RasterTask", cat="cc")), StallType.RASTER)

    def test_gpu_category_keywords(self):
        self.assertEqual(classify_stall(_event("FenceSyncWait")), StallType.SYNC)
        self.assertEqual(classify_stall(_event("BindTextureFoo")), StallType.TEXTURE_UPLOAD)
        self.assertEqual(classify_stall(_event("OopRasterThing")), StallType.RASTER)
        # Unrecognised GPU work is assumed blocking.
        self.assertEqual(classify_stall(_event("SomethingElse")), StallType.SYNC)

    def test_non_gpu_event(self):
        self.assertIsNone(classify_stall(_event("Layout", cat="devtools.timeline")))


class TestExtractStallTarget(unittest.TestCase):
    def test_probe_order(self):
        self.assertEqual(extract_stall_target(_event("GPUTask", args={"data": {"elementId": "hero"}})).element, "hero")
        self.assertEqual(extract_stall_target(_event("GPUTask", args={"data": {"nodeId": 42}})).element, "42")
        self.assertEqual(extract_stall_target(_event("GPUTask", args={"data": {"layerId": 7}})).element, "layer-7")
        self.assertEqual(
            extract_stall_target(_event("UploadTexture", args={"data": {"url": "https://cdn/x/photo.png"}})).element,
            "photo.png"
        )
        self.assertEqual(extract_stall_target(_event("RasterTask", args={"tileId": "9"})).element, "tile-9")
        self.assertEqual(extract_stall_target(_event("UploadTexture", args={"textureId": 3})).element, "texture-3")
        self.assertEqual(extract_stall_target(_event("GPUTask", args={"other": True})).element, "unknown")
        self.assertEqual(extract_stall_target(_event("GPUTask")).element, "unknown")

    def test_layer_info(self):
        target = extract_stall_target(_event("RasterTask", args={"data": {
            "layerId": 3,
            "bounds": {"x": 0, "y": 10, "width": 300, "height": 200},
            "compositingReasons": ["transform"],
        }}))
        self.assertEqual(target.layer_info.layer_id, 3)
        self.assertEqual(target.layer_info.bounds.y, 10)
        self.assertEqual(target.layer_info.bounds.width, 300)
        self.assertEqual(target.layer_info.compositing_reasons, ("transform",))

    def test_layer_info_without_bounds(self):
        target = extract_stall_target(_event("GPUTask", args={"data": {"layerId": 1}}))
        self.assertEqual(target.layer_info.bounds.width, 0)
        self.assertEqual(target.layer_info.compositing_reasons, ())


class TestGPUStallDetector(unittest.TestCase):
    def setUp(self):
        self.detector = GPUStallDetector()
        self.trace = create_gpu_stall_trace()
        self.detections = self.detector.detect(self.trace, make_context(self.trace))

    def test_contract(self):
        self.assertIsInstance(self.detector, Detector)
        self.assertEqual(self.detector.priority, 2)
        self.assertEqual(self.detector.required_capabilities, frozenset({Capability.GPU_EVENTS}))

    def test_clusters(self):
        keys = [(d.element, d.stall_type) for d in self.detections]
        self.assertEqual(keys, [
            ("heavy-svg-element", StallType.SYNC),
            ("unknown", StallType.SYNC),
            ("layer-3", StallType.RASTER),
        ])

    def test_sync_cluster(self):
        svg = self.detections[0]
        self.assertEqual(svg.type, DetectionType.GPU_STALL)
        self.assertEqual(svg.occurrences, 3)
        self.assertAlmostEqual(svg.stall_ms, 30.0)
        self.assertEqual(svg.metrics.occurrences, 3)
        self.assertEqual(svg.layer_info.layer_id, 1)
        self.assertEqual(svg.location.element, "heavy-svg-element")
        self.assertIn('on "heavy-svg-element"', svg.description)
        self.assertIn("30.00ms", svg.description)

    def test_unattributed_sync_events_share_a_cluster(self):
        unknown = self.detections[1]
        self.assertEqual(unknown.occurrences, 7)
        self.assertAlmostEqual(unknown.stall_ms, 55.0)
        self.assertEqual(len(unknown.evidence), 5)

    def test_raster_cluster_keeps_layer_geometry(self):
        raster = self.detections[2]
        self.assertEqual(raster.occurrences, 2)
        self.assertAlmostEqual(raster.stall_ms, 20.0)
        self.assertEqual(raster.layer_info.bounds.width, 1920)
        self.assertEqual(raster.layer_info.bounds.height, 1080)
        self.assertEqual(raster.layer_info.compositing_reasons, ("transform", "will-change"))

    def test_texture_upload_without_main_thread_wait_is_ignored(self):
        stall_types = {d.stall_type for d in self.detections}
        self.assertNotIn(StallType.TEXTURE_UPLOAD, stall_types)

    def test_texture_upload_blocking_main_thread(self):
        trace = build_trace([
            thread_name(1, "CrRendererMain"),
            event("UploadTexture", 1000, 8000, tid=GPU_TID, cat="gpu", args={"data": {"url": "a/big.png"}}),
            event("IdleTask", 2000, 5000),
        ])
        detections = GPUStallDetector().detect(trace, make_context(trace))
        self.assertEqual([(d.element, d.stall_type) for d in detections], [("big.png", StallType.TEXTURE_UPLOAD)])

    def test_short_stalls_are_dropped(self):
        trace = build_trace([event("GPUTask", i * 1000, 500, cat="gpu") for i in range(10)])
        self.assertEqual(GPUStallDetector().detect(trace, make_context(trace)), [])

    def test_small_cluster_is_dropped(self):
        trace = build_trace([
            event("GPUTask", 0, 2000, cat="gpu", args={"data": {"elementId": "a"}}),
            event("GPUTask", 5000, 2000, cat="gpu", args={"data": {"elementId": "a"}}),
        ])
        self.assertEqual(GPUStallDetector().detect(trace, make_context(trace)), [])

    def test_no_gpu_events(self):
        trace = build_trace([event("Layout", 0, 5000)])
        self.assertEqual(GPUStallDetector().detect(trace, make_context(trace)), [])

    def test_detection_is_repeatable(self):
        again = self.detector.detect(self.trace, make_context(self.trace))
        self.assertEqual([d.to_dict() for d in again], [d.to_dict() for d in self.detections])


if __name__ == "__main__":
    unittest.main()
