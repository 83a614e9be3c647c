import os
from typing import List

import cv2
import numpy as np

from .base import Detection, FaceLocator

PROTOTXT_NAME = "deploy.prototxt"
WEIGHTS_NAME = "res10_300x300_ssd_iter_140000.caffemodel"


class DnnFaceLocator(FaceLocator):
    """OpenCV res10 SSD face detector; unlike Haar it reports a calibrated confidence."""

    def __init__(self, prototxt_path: str, weights_path: str, conf_floor: float = 0.1):
        if not (os.path.exists(prototxt_path) and os.path.exists(weights_path)):
            raise FileNotFoundError("DNN face model files not found")
        self.net = cv2.dnn.readNetFromCaffe(prototxt_path, weights_path)
        self.conf_floor = conf_floor

    @classmethod
    def from_dir(cls, model_dir: str) -> "DnnFaceLocator":
        return cls(os.path.join(model_dir, PROTOTXT_NAME), os.path.join(model_dir, WEIGHTS_NAME))

    def locate(self, frame_bgr: np.ndarray, input_size: int) -> List[Detection]:
        (h, w) = frame_bgr.shape[:2]
        size = max(64, int(input_size))
        blob = cv2.dnn.blobFromImage(frame_bgr, 1.0, (size, size), (104.0, 177.0, 123.0), swapRB=False, crop=False)
        self.net.setInput(blob)
        detections = self.net.forward()
        dets: List[Detection] = []
        for i in range(0, detections.shape[2]):
            conf = float(detections[0, 0, i, 2])
            if conf < self.conf_floor:
                continue
            box = detections[0, 0, i, 3:7] * np.array([w, h, w, h])
            (x0, y0, x1, y1) = box.astype("int")
            x = max(0, int(x0))
            y = max(0, int(y0))
            x1 = min(w - 1, int(x1))
            y1 = min(h - 1, int(y1))
            if x1 <= x or y1 <= y:
                continue
            dets.append(Detection((x, y, x1 - x, y1 - y), conf))
        dets.sort(key=lambda d: d.score, reverse=True)
        return dets
