from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

Point = Tuple[float, float]


@dataclass
class Detection:
    bbox: Tuple[int, int, int, int]  # x, y, w, h
    score: float


@dataclass(frozen=True)
class EyeLandmarks:
    # Six points per eye, p1..p6 around the eye contour (p1/p4 are the corners)
    left_eye: Tuple[Point, ...]
    right_eye: Tuple[Point, ...]


@dataclass(frozen=True)
class DetectionOptions:
    input_size: int = 128
    score_threshold: float = 0.5


@dataclass(frozen=True)
class DetectionResult:
    bbox: Tuple[int, int, int, int]
    confidence: float
    embedding: np.ndarray
    expressions: Dict[str, float] = field(default_factory=dict)
    landmarks: Optional[EyeLandmarks] = None

    def expression(self, name: str) -> float:
        return float(self.expressions.get(name, 0.0))


class FaceLocator:
    def locate(self, frame_bgr: np.ndarray, input_size: int) -> List[Detection]:
        raise NotImplementedError


class FaceAligner:
    def align(self, frame_bgr: np.ndarray, det: Detection) -> np.ndarray:
        raise NotImplementedError


class FaceEmbedder:
    dim: int = 512
    model_tag: str = "unknown"

    def embed(self, aligned_rgb: np.ndarray) -> np.ndarray:
        raise NotImplementedError


class ExpressionClassifier:
    def classify(self, face_bgr: np.ndarray) -> Dict[str, float]:
        raise NotImplementedError


class EyeLandmarker:
    def eyes(self, face_bgr: np.ndarray) -> Optional[EyeLandmarks]:
        raise NotImplementedError


class FaceDetector:
    """Single-face detection capability consumed by enrollment and verification.

    ``detect`` returns ``None`` when no face clears ``options.score_threshold``;
    absence is a normal result and never raises.
    """

    embedding_dim: int = 512
    model_tag: str = "unknown"

    def load(self) -> None:
        """Initialize models. Raises ``DetectorInitError`` on failure."""

    def detect(self, frame_bgr: np.ndarray, options: DetectionOptions) -> Optional[DetectionResult]:
        raise NotImplementedError
