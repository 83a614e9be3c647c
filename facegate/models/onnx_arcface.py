from typing import Optional

import cv2
import numpy as np

from .base import FaceEmbedder
from .onnx_common import create_session, resolve_model_path


class ONNXArcFaceEmbedder(FaceEmbedder):
    """
    ArcFace-like ONNX embedder.
    - Expects aligned RGB 112x112 input in [0,1] with mean/std normalization.
    - Produces a 512-dim L2-normalized float64 embedding.

    Place the ONNX model in <model_dir>/arcface_r100.onnx or set
    FACEGATE_ARCFACE_PATH to an absolute path.
    """

    dim = 512
    model_tag = "arcface-r100"

    def __init__(self, model_dir: Optional[str] = None, model_path: Optional[str] = None, threads: Optional[int] = None):
        path = resolve_model_path("arcface_r100.onnx", model_dir, "FACEGATE_ARCFACE_PATH", model_path)
        self.sess = create_session(path, threads)
        self.inp_name = self.sess.get_inputs()[0].name
        self.out_name = self.sess.get_outputs()[0].name

    def embed(self, aligned_rgb: np.ndarray) -> np.ndarray:
        img = aligned_rgb
        if img.shape[:2] != (112, 112):
            img = cv2.resize(img, (112, 112), interpolation=cv2.INTER_LINEAR)
        img = img.astype(np.float32) / 255.0
        # Common ArcFace normalization
        img = (img - 0.5) / 0.5
        chw = np.transpose(img, (2, 0, 1))[None, ...]

        out = self.sess.run([self.out_name], {self.inp_name: chw})[0]
        vec = out.reshape(-1).astype(np.float64)
        n = float(np.linalg.norm(vec))
        if not np.isfinite(n) or n < 1e-6:
            # Degenerate output; a unit vector keeps distances finite
            v = np.zeros((self.dim,), dtype=np.float64)
            v[0] = 1.0
            return v
        return vec / n
