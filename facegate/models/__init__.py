from .base import (
    Detection,
    DetectionOptions,
    DetectionResult,
    EyeLandmarks,
    FaceLocator,
    FaceAligner,
    FaceEmbedder,
    ExpressionClassifier,
    EyeLandmarker,
    FaceDetector,
)
from .opencv_fallback import HaarFaceLocator, SimpleAligner, DCTEmbedder, HaarSmileClassifier
from .analyzer import FaceAnalyzer, pick_best

__all__ = [
    "Detection",
    "DetectionOptions",
    "DetectionResult",
    "EyeLandmarks",
    "FaceLocator",
    "FaceAligner",
    "FaceEmbedder",
    "ExpressionClassifier",
    "EyeLandmarker",
    "FaceDetector",
    "HaarFaceLocator",
    "SimpleAligner",
    "DCTEmbedder",
    "HaarSmileClassifier",
    "FaceAnalyzer",
    "pick_best",
]
