import logging
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from facegate.app.config import AppConfig
from facegate.app.errors import NoFaceDetected
from facegate.app.utils import now_ts
from facegate.camera.frame_source import FrameHandle, FrameSource
from facegate.db.dao import EnrollmentRecord, EnrollmentStore
from facegate.models.base import DetectionOptions, FaceDetector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnrollmentResult:
    record: EnrollmentRecord
    record_id: str
    low_quality: bool = False


class EnrollmentFlow:
    """Capture one frame and store the resulting embedding.

    The flow owns the camera between ``open`` and ``close``. ``capture`` takes a
    single frame; a capture below ``enrollment_quality_threshold`` is still
    stored, the result just carries ``low_quality=True``.
    """

    def __init__(
        self,
        source: FrameSource,
        detector: FaceDetector,
        store: EnrollmentStore,
        cfg: Optional[AppConfig] = None,
        on_complete: Optional[Callable[[EnrollmentRecord], None]] = None,
    ):
        self.cfg = cfg or AppConfig()
        self.source = source
        self.detector = detector
        self.store = store
        self.on_complete = on_complete
        self.options = DetectionOptions(
            input_size=self.cfg.session.enrollment_input_size,
            score_threshold=self.cfg.thresholds.min_detection_score,
        )
        self._handle: Optional[FrameHandle] = None

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    def open(self) -> "EnrollmentFlow":
        if self._handle is None:
            self.detector.load()
            self._handle = self.source.acquire(self.cfg.camera)
        return self

    def close(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            self.source.release(handle)

    def __enter__(self) -> "EnrollmentFlow":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def preview(self) -> Optional[np.ndarray]:
        self.open()
        return self._handle.read()

    def capture(self, user_id: str, label: str = "") -> EnrollmentResult:
        if not user_id:
            raise ValueError("user_id is required")
        self.open()
        frame = self._handle.read()
        if frame is None:
            raise NoFaceDetected("camera returned no frame")
        det = self.detector.detect(frame, self.options)
        if det is None:
            raise NoFaceDetected("no face detected, look straight at the camera")

        quality = float(det.confidence)
        low_quality = quality < self.cfg.thresholds.enrollment_quality_threshold
        if low_quality:
            logger.warning(
                "Low quality enrollment for %s: %.2f < %.2f",
                user_id,
                quality,
                self.cfg.thresholds.enrollment_quality_threshold,
            )
        record = EnrollmentRecord(
            user_id=user_id,
            embedding=np.asarray(det.embedding, dtype=np.float64),
            captured_at=now_ts(),
            quality_score=quality,
            label=label,
            model_tag=self.detector.model_tag,
        )
        record_id = self.store.save_enrollment(record)
        logger.info("Enrolled %s (quality %.2f, record %s)", user_id, quality, record_id)
        if self.on_complete is not None:
            self.on_complete(record)
        return EnrollmentResult(record=record, record_id=record_id, low_quality=low_quality)
