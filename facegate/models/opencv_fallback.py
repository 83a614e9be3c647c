import os
from typing import Dict, List, Tuple

import cv2
import numpy as np

from .base import Detection, ExpressionClassifier, FaceAligner, FaceEmbedder, FaceLocator


def _load_cascades(names: List[str]) -> list:
    base = cv2.data.haarcascades
    cascades = []
    for n in names:
        path = base + n
        if os.path.exists(path):
            cascades.append(cv2.CascadeClassifier(path))
    return cascades


class HaarFaceLocator(FaceLocator):
    # Haar needs some pixels to work with; smaller hints are raised to this
    MIN_DETECT_SIDE = 160

    def __init__(self):
        self.cascades = _load_cascades(
            [
                "haarcascade_frontalface_default.xml",
                "haarcascade_frontalface_alt2.xml",
            ]
        )
        if not self.cascades:
            raise RuntimeError("No Haar face cascades found in cv2.data")

    def locate(self, frame_bgr: np.ndarray, input_size: int) -> List[Detection]:
        gray = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2GRAY)
        H, W = gray.shape[:2]
        target = max(int(input_size), self.MIN_DETECT_SIDE)
        scale = min(1.0, target / float(max(H, W)))
        if scale < 1.0:
            gray = cv2.resize(gray, (int(W * scale), int(H * scale)), interpolation=cv2.INTER_AREA)
        # Normalize contrast for tougher lighting
        gray = cv2.equalizeHist(gray)
        min_side = max(20, int(40 * scale))
        params = dict(scaleFactor=1.1, minNeighbors=4, minSize=(min_side, min_side))
        dets: List[Detection] = []
        for cas in self.cascades:
            for (x, y, w, h) in cas.detectMultiScale(gray, **params):
                x0, y0 = int(x / scale), int(y / scale)
                w0, h0 = int(w / scale), int(h / scale)
                # Area-based confidence proxy; Haar has no calibrated score
                score = float(min(1.0, (w0 * h0) / (H * W) * 10.0))
                dets.append(Detection((x0, y0, w0, h0), score))
        return _dedupe(dets)


def _iou(a: Tuple[int, int, int, int], b: Tuple[int, int, int, int]) -> float:
    ax, ay, aw, ah = a
    bx, by, bw, bh = b
    ix = max(0, min(ax + aw, bx + bw) - max(ax, bx))
    iy = max(0, min(ay + ah, by + bh) - max(ay, by))
    inter = ix * iy
    union = aw * ah + bw * bh - inter
    return inter / union if union > 0 else 0.0


def _dedupe(dets: List[Detection], iou_thr: float = 0.4) -> List[Detection]:
    # Several cascades fire on the same face; keep the strongest box per face
    kept: List[Detection] = []
    for d in sorted(dets, key=lambda d: d.score, reverse=True):
        if all(_iou(d.bbox, k.bbox) < iou_thr for k in kept):
            kept.append(d)
    return kept


class SimpleAligner(FaceAligner):
    SIZE = (112, 112)

    def align(self, frame_bgr: np.ndarray, det: Detection) -> np.ndarray:
        crop = crop_face(frame_bgr, det.bbox, pad_ratio=0.2)
        rgb = cv2.cvtColor(crop, cv2.COLOR_BGR2RGB)
        return cv2.resize(rgb, self.SIZE, interpolation=cv2.INTER_LINEAR)


class DCTEmbedder(FaceEmbedder):
    """Low-frequency DCT coefficients of the luminance channel.

    Dependency-free baseline; it separates faces poorly and should only be
    used when the ArcFace model is not installed.
    """

    dim = 512
    model_tag = "dct-512"

    def embed(self, aligned_rgb: np.ndarray) -> np.ndarray:
        gray = cv2.cvtColor(aligned_rgb, cv2.COLOR_RGB2GRAY)
        gray = cv2.resize(gray, (32, 32), interpolation=cv2.INTER_AREA).astype(np.float64) / 255.0
        coeffs = cv2.dct(gray)
        # 23x23 top-left block minus the DC term
        vec = np.abs(coeffs[:23, :23]).flatten()[1:self.dim + 1]
        if vec.size < self.dim:
            vec = np.pad(vec, (0, self.dim - vec.size), mode="constant")
        n = float(np.linalg.norm(vec))
        if n < 1e-6:
            # Flat image; any fixed unit vector will do
            vec = np.zeros(self.dim, dtype=np.float64)
            vec[0] = 1.0
            return vec
        return vec / n


class HaarSmileClassifier(ExpressionClassifier):
    """Binary smile/neutral scores from OpenCV's smile cascade.

    Only ``happy`` and ``neutral`` carry signal; every other expression is 0.
    """

    SMILE = {"neutral": 0.1, "happy": 0.9}
    NO_SMILE = {"neutral": 0.85, "happy": 0.05}

    def __init__(self, min_neighbors: int = 20):
        cascades = _load_cascades(["haarcascade_smile.xml"])
        if not cascades:
            raise RuntimeError("Smile cascade not found in cv2.data")
        self.cascade = cascades[0]
        self.min_neighbors = int(min_neighbors)

    def classify(self, face_bgr: np.ndarray) -> Dict[str, float]:
        if face_bgr is None or face_bgr.size == 0:
            return {}
        gray = cv2.cvtColor(face_bgr, cv2.COLOR_BGR2GRAY)
        h, w = gray.shape[:2]
        # Mouth lives in the lower half of the face box
        lower = cv2.equalizeHist(gray[h // 2:, :])
        smiles = self.cascade.detectMultiScale(
            lower, scaleFactor=1.7, minNeighbors=self.min_neighbors, minSize=(max(10, w // 5), max(5, h // 10))
        )
        return dict(self.SMILE if len(smiles) > 0 else self.NO_SMILE)


def crop_face(frame_bgr: np.ndarray, bbox: Tuple[int, int, int, int], pad_ratio: float = 0.0) -> np.ndarray:
    x, y, w, h = bbox
    pad = int(pad_ratio * w)
    x0 = max(0, x - pad)
    y0 = max(0, y - pad)
    x1 = min(frame_bgr.shape[1], x + w + pad)
    y1 = min(frame_bgr.shape[0], y + h + pad)
    crop = frame_bgr[y0:y1, x0:x1]
    if crop.size == 0:
        crop = frame_bgr[max(0, y):y + h, max(0, x):x + w]
    return crop
