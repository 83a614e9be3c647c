from typing import Optional

import numpy as np

try:
    import mediapipe as mp  # type: ignore
except Exception:  # pragma: no cover - optional dep
    mp = None  # type: ignore

from .base import EyeLandmarker, EyeLandmarks

# MediaPipe face mesh indices, ordered p1..p6 for the EAR formula
LEFT_EYE = (362, 380, 374, 263, 386, 385)
RIGHT_EYE = (33, 159, 158, 133, 153, 145)


class MediaPipeEyeLandmarker(EyeLandmarker):
    """Eye contour points from a MediaPipe FaceLandmarker run on the face crop."""

    def __init__(self, model_path: str):
        if mp is None:
            raise RuntimeError("mediapipe is required for MediaPipeEyeLandmarker")
        vision = mp.tasks.vision
        options = vision.FaceLandmarkerOptions(
            base_options=mp.tasks.BaseOptions(model_asset_path=str(model_path)),
            running_mode=vision.RunningMode.IMAGE,
            num_faces=1,
            min_face_detection_confidence=0.5,
            min_face_presence_confidence=0.5,
        )
        self.landmarker = vision.FaceLandmarker.create_from_options(options)

    def eyes(self, face_bgr: np.ndarray) -> Optional[EyeLandmarks]:
        if face_bgr is None or face_bgr.size == 0:
            return None
        rgb = np.ascontiguousarray(face_bgr[..., ::-1])
        result = self.landmarker.detect(mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb))
        if not result.face_landmarks:
            return None
        lms = result.face_landmarks[0]
        h, w = rgb.shape[:2]
        # Pixel coordinates; normalized ones would skew EAR on non-square crops

        def pick(indices):
            return tuple((float(lms[i].x * w), float(lms[i].y * h)) for i in indices)

        return EyeLandmarks(left_eye=pick(LEFT_EYE), right_eye=pick(RIGHT_EYE))

    def close(self) -> None:
        self.landmarker.close()
