import logging
import os
from typing import Optional

import numpy as np

from facegate.app.config import BackendConfig
from facegate.app.errors import DetectorInitError

from .base import (
    Detection,
    DetectionOptions,
    DetectionResult,
    ExpressionClassifier,
    EyeLandmarker,
    FaceAligner,
    FaceDetector,
    FaceEmbedder,
    FaceLocator,
)
from .opencv_fallback import DCTEmbedder, HaarFaceLocator, HaarSmileClassifier, SimpleAligner, crop_face

logger = logging.getLogger(__name__)

DEFAULT_ASSETS = os.path.abspath(os.path.join(os.path.dirname(__file__), "assets"))


def pick_best(dets, score_threshold: float) -> Optional[Detection]:
    """Resolve candidates to one face: highest score, then larger area, then top-left."""
    candidates = [d for d in dets if d.score > score_threshold]
    if not candidates:
        return None
    return min(candidates, key=lambda d: (-d.score, -(d.bbox[2] * d.bbox[3]), d.bbox[0], d.bbox[1]))


class FaceAnalyzer(FaceDetector):
    """
    FaceDetector built from a locator, an embedder, an expression classifier
    and, optionally, an eye landmarker.

    Components passed to the constructor are used as-is; missing ones are
    created from ``backend`` on ``load()``, preferring the configured model
    backends and falling back to the OpenCV-only implementations.
    """

    def __init__(
        self,
        backend: Optional[BackendConfig] = None,
        require_landmarks: bool = False,
        locator: Optional[FaceLocator] = None,
        embedder: Optional[FaceEmbedder] = None,
        expressions: Optional[ExpressionClassifier] = None,
        landmarker: Optional[EyeLandmarker] = None,
        aligner: Optional[FaceAligner] = None,
    ):
        self.backend = backend or BackendConfig()
        self.require_landmarks = require_landmarks
        self.locator = locator
        self.embedder = embedder
        self.expressions = expressions
        self.landmarker = landmarker
        self.aligner = aligner or SimpleAligner()
        self._loaded = False

    @property
    def embedding_dim(self) -> int:  # type: ignore[override]
        self.load()
        return int(self.embedder.dim)

    @property
    def model_tag(self) -> str:  # type: ignore[override]
        self.load()
        return str(self.embedder.model_tag)

    def _model_dir(self) -> str:
        return self.backend.model_dir or DEFAULT_ASSETS

    def load(self) -> None:
        if self._loaded:
            return
        try:
            if self.locator is None:
                self.locator = self._make_locator()
            if self.embedder is None:
                self.embedder = self._make_embedder()
            if self.expressions is None:
                self.expressions = self._make_expressions()
            if self.landmarker is None:
                self.landmarker = self._make_landmarker()
        except DetectorInitError:
            raise
        except Exception as exc:
            raise DetectorInitError(f"face detector failed to initialize: {exc}") from exc
        self._loaded = True
        logger.info(
            "Face detector ready: locator=%s embedder=%s expressions=%s landmarks=%s",
            type(self.locator).__name__,
            self.embedder.model_tag,
            type(self.expressions).__name__,
            type(self.landmarker).__name__ if self.landmarker else None,
        )

    def _make_locator(self) -> FaceLocator:
        if self.backend.face_backend.lower() in ("opencv_dnn", "dnn"):
            try:
                from .opencv_dnn import DnnFaceLocator

                return DnnFaceLocator.from_dir(self._model_dir())
            except (RuntimeError, OSError) as exc:
                logger.warning("DNN face locator unavailable (%s); using Haar cascades", exc)
        return HaarFaceLocator()

    def _make_embedder(self) -> FaceEmbedder:
        if self.backend.embedder_backend.lower() in ("onnx", "arcface", "onnx_arcface"):
            try:
                from .onnx_arcface import ONNXArcFaceEmbedder

                return ONNXArcFaceEmbedder(model_dir=self._model_dir(), threads=self.backend.threads)
            except RuntimeError as exc:
                logger.warning("ArcFace embedder unavailable (%s); using DCT embedder", exc)
        return DCTEmbedder()

    def _make_expressions(self) -> ExpressionClassifier:
        if self.backend.expression_backend.lower() in ("onnx", "ferplus", "onnx_ferplus"):
            try:
                from .onnx_expression import OnnxFerPlusClassifier

                return OnnxFerPlusClassifier(model_dir=self._model_dir(), threads=self.backend.threads)
            except RuntimeError as exc:
                logger.warning("FER+ classifier unavailable (%s); using smile cascade", exc)
        return HaarSmileClassifier()

    def _make_landmarker(self) -> Optional[EyeLandmarker]:
        path = self.backend.landmarker_path or os.path.join(self._model_dir(), "face_landmarker.task")
        try:
            from .mediapipe_eyes import MediaPipeEyeLandmarker

            if not os.path.exists(path):
                raise RuntimeError(f"face landmarker model not found at {path}")
            return MediaPipeEyeLandmarker(path)
        except (RuntimeError, ValueError, OSError) as exc:
            if self.require_landmarks:
                raise DetectorInitError(f"blink challenge needs eye landmarks: {exc}") from exc
            logger.debug("Eye landmarks disabled: %s", exc)
            return None

    def detect(self, frame_bgr: np.ndarray, options: DetectionOptions) -> Optional[DetectionResult]:
        if frame_bgr is None or frame_bgr.size == 0:
            return None
        self.load()
        best = pick_best(self.locator.locate(frame_bgr, options.input_size), options.score_threshold)
        if best is None:
            return None
        aligned = self.aligner.align(frame_bgr, best)
        embedding = np.asarray(self.embedder.embed(aligned), dtype=np.float64)
        face = crop_face(frame_bgr, best.bbox, pad_ratio=0.1)
        expressions = self.expressions.classify(face)
        eyes = self.landmarker.eyes(face) if self.landmarker is not None else None
        return DetectionResult(
            bbox=best.bbox,
            confidence=float(best.score),
            embedding=embedding,
            expressions=expressions,
            landmarks=eyes,
        )
