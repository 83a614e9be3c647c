import numpy as np
import onnxruntime
import pytest

from facegate.app.config import BackendConfig
from facegate.app.errors import DetectorInitError
from facegate.models import Detection, DetectionOptions, FaceAnalyzer, pick_best
from facegate.models.base import EyeLandmarks, ExpressionClassifier, EyeLandmarker, FaceEmbedder, FaceLocator
from facegate.models import onnx_common


class StubLocator(FaceLocator):
    def __init__(self, dets):
        self.dets = dets
        self.sizes = []

    def locate(self, frame_bgr, input_size):
        self.sizes.append(input_size)
        return list(self.dets)


class StubEmbedder(FaceEmbedder):
    dim = 4
    model_tag = "stub-4"

    def embed(self, aligned_rgb):
        return np.arange(4, dtype=np.float32)


class StubExpressions(ExpressionClassifier):
    def classify(self, face_bgr):
        return {"neutral": 0.2, "happy": 0.8}


class StubEyes(EyeLandmarker):
    def eyes(self, face_bgr):
        pts = ((0.0, 0.0),) * 6
        return EyeLandmarks(pts, pts)


def test_black_frame_has_no_face():
    analyzer = FaceAnalyzer(BackendConfig())
    frame = np.zeros((240, 320, 3), dtype=np.uint8)
    assert analyzer.detect(frame, DetectionOptions()) is None
    assert analyzer.embedding_dim == 512
    assert analyzer.model_tag == "dct-512"


def test_empty_frame_is_no_face():
    analyzer = FaceAnalyzer(locator=StubLocator([]), embedder=StubEmbedder(), expressions=StubExpressions())
    assert analyzer.detect(np.zeros((0, 0, 3), dtype=np.uint8), DetectionOptions()) is None


def test_pick_best_prefers_score_then_area_then_position():
    a = Detection((50, 0, 10, 10), 0.9)
    b = Detection((0, 0, 20, 20), 0.9)
    c = Detection((0, 0, 40, 40), 0.7)
    d = Detection((10, 0, 20, 20), 0.9)
    assert pick_best([a, b, c, d], 0.5) is b
    assert pick_best([c], 0.8) is None
    assert pick_best([], 0.1) is None


def test_pick_best_needs_score_above_threshold():
    at = Detection((0, 0, 20, 20), 0.5)
    assert pick_best([at], 0.5) is None
    assert pick_best([at], 0.49) is at


def test_detect_builds_full_result():
    locator = StubLocator([Detection((20, 20, 40, 40), 0.4), Detection((30, 30, 50, 50), 0.95)])
    analyzer = FaceAnalyzer(
        locator=locator, embedder=StubEmbedder(), expressions=StubExpressions(), landmarker=StubEyes()
    )
    frame = np.full((120, 160, 3), 128, dtype=np.uint8)
    res = analyzer.detect(frame, DetectionOptions(input_size=128, score_threshold=0.5))
    assert res.bbox == (30, 30, 50, 50)
    assert res.confidence == pytest.approx(0.95)
    assert res.embedding.dtype == np.float64
    assert res.expression("happy") == pytest.approx(0.8)
    assert res.expression("surprised") == 0.0
    assert res.landmarks is not None
    assert locator.sizes == [128]


def test_score_threshold_filters_everything():
    locator = StubLocator([Detection((20, 20, 40, 40), 0.3)])
    analyzer = FaceAnalyzer(locator=locator, embedder=StubEmbedder(), expressions=StubExpressions())
    frame = np.full((120, 160, 3), 128, dtype=np.uint8)
    assert analyzer.detect(frame, DetectionOptions(score_threshold=0.5)) is None


def test_missing_landmarker_is_fatal_only_when_required(tmp_path):
    backend = BackendConfig(model_dir=str(tmp_path))
    FaceAnalyzer(backend, locator=StubLocator([]), embedder=StubEmbedder(), expressions=StubExpressions()).load()
    strict = FaceAnalyzer(
        backend, require_landmarks=True, locator=StubLocator([]), embedder=StubEmbedder(),
        expressions=StubExpressions(),
    )
    with pytest.raises(DetectorInitError):
        strict.load()


def test_onnx_model_path_resolution(tmp_path, monkeypatch):
    assert onnx_common.ort is onnxruntime
    model = tmp_path / "arcface.onnx"
    model.write_bytes(b"")
    monkeypatch.setenv("FACEGATE_TEST_MODEL", str(model))
    assert onnx_common.resolve_model_path("missing.onnx", None, "FACEGATE_TEST_MODEL") == str(model)
    monkeypatch.delenv("FACEGATE_TEST_MODEL")
    assert onnx_common.resolve_model_path("arcface.onnx", str(tmp_path), "FACEGATE_TEST_MODEL") == str(model)
    with pytest.raises(RuntimeError):
        onnx_common.resolve_model_path("nope.onnx", str(tmp_path), "FACEGATE_TEST_MODEL")
