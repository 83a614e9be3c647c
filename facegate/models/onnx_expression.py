from typing import Dict, Optional

import cv2
import numpy as np

from .base import ExpressionClassifier
from .onnx_common import create_session, resolve_model_path, softmax

# FER+ output order, renamed to the detector's expression vocabulary
FERPLUS_LABELS = ("neutral", "happy", "surprised", "sad", "angry", "disgusted", "fearful", "contempt")


class OnnxFerPlusClassifier(ExpressionClassifier):
    """Emotion FER+ (64x64 grayscale) expression scores, softmax-normalized."""

    def __init__(self, model_dir: Optional[str] = None, model_path: Optional[str] = None, threads: Optional[int] = None):
        path = resolve_model_path("emotion-ferplus-8.onnx", model_dir, "FACEGATE_FERPLUS_PATH", model_path)
        self.session = create_session(path, threads)
        self.input_name = self.session.get_inputs()[0].name

    def classify(self, face_bgr: np.ndarray) -> Dict[str, float]:
        if face_bgr is None or face_bgr.size == 0:
            return {}
        gray = cv2.cvtColor(face_bgr, cv2.COLOR_BGR2GRAY)
        gray = cv2.resize(gray, (64, 64), interpolation=cv2.INTER_AREA)
        # FER+ takes raw 0..255 intensities
        inp = gray.astype(np.float32)[None, None, :, :]
        logits = np.asarray(self.session.run(None, {self.input_name: inp})[0]).reshape(-1)
        probs = softmax(logits[: len(FERPLUS_LABELS)])
        return {name: float(p) for name, p in zip(FERPLUS_LABELS, probs)}
