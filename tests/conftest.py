import asyncio
from typing import List, Optional

import numpy as np
import pytest

from facegate.app.config import AppConfig, CameraConfig
from facegate.camera.frame_source import FrameHandle, FrameSource
from facegate.db.dao import EnrollmentRecord, EnrollmentStore
from facegate.models.base import DetectionOptions, DetectionResult, EyeLandmarks, FaceDetector

ENROLLED = np.array([0.1, 0.2, 0.3, 0.4])
STRANGER = ENROLLED + 1.0

OPEN_EYE = ((0.0, 0.0), (1.0, -0.5), (2.0, -0.5), (3.0, 0.0), (2.0, 0.5), (1.0, 0.5))
CLOSED_EYE = ((0.0, 0.0), (1.0, -0.1), (2.0, -0.1), (3.0, 0.0), (2.0, 0.1), (1.0, 0.1))


def face(embedding=ENROLLED, confidence=0.9, landmarks=None, **expressions) -> DetectionResult:
    return DetectionResult(
        bbox=(10, 10, 50, 50),
        confidence=confidence,
        embedding=np.asarray(embedding, dtype=np.float64),
        expressions=expressions,
        landmarks=landmarks,
    )


def eyes(closed: bool) -> EyeLandmarks:
    eye = CLOSED_EYE if closed else OPEN_EYE
    return EyeLandmarks(left_eye=eye, right_eye=eye)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class FakeHandle(FrameHandle):
    def __init__(self, source: "FakeFrameSource"):
        super().__init__(source)
        self.fake = source

    def read(self) -> Optional[np.ndarray]:
        return self.fake.frame_at_read()

    async def next_frame(self) -> Optional[np.ndarray]:
        await asyncio.sleep(0)
        if self.released:
            return None
        return self.read()

    def _close(self) -> None:
        self.fake.close_count += 1


class FakeFrameSource(FrameSource):
    """Yields a black frame per read, or ``None`` once ``frames`` is exhausted
    when ``empty_after`` is set. Each read advances ``clock`` by ``step``."""

    def __init__(self, clock: Optional[FakeClock] = None, step: float = 0.01, frames: Optional[int] = None,
                 open_error: Optional[Exception] = None):
        super().__init__()
        self.clock = clock
        self.step = step
        self.frames = frames
        self.open_error = open_error
        self.reads = 0
        self.open_count = 0
        self.close_count = 0

    def frame_at_read(self) -> Optional[np.ndarray]:
        self.reads += 1
        if self.clock is not None:
            self.clock.advance(self.step)
        if self.frames is not None and self.reads > self.frames:
            return None
        return np.zeros((48, 64, 3), dtype=np.uint8)

    def _open(self, config: CameraConfig) -> FrameHandle:
        if self.open_error is not None:
            raise self.open_error
        self.open_count += 1
        return FakeHandle(self)


class FakeDetector(FaceDetector):
    """Returns scripted results in order, then ``tail`` forever."""

    def __init__(self, script: Optional[List[Optional[DetectionResult]]] = None, tail=None,
                 embedding_dim: int = 4, model_tag: str = "fake-4", error: Optional[Exception] = None):
        self.script = list(script or [])
        self.tail = tail
        self.embedding_dim = embedding_dim
        self.model_tag = model_tag
        self.error = error
        self.calls = 0
        self.options: List[DetectionOptions] = []
        self.loaded = False

    def load(self) -> None:
        self.loaded = True

    def detect(self, frame_bgr, options: DetectionOptions) -> Optional[DetectionResult]:
        self.calls += 1
        self.options.append(options)
        if self.error is not None:
            raise self.error
        if self.script:
            return self.script.pop(0)
        return self.tail


class MemoryStore(EnrollmentStore):
    def __init__(self):
        self.records: List[EnrollmentRecord] = []

    def save_enrollment(self, record: EnrollmentRecord) -> str:
        self.records.append(record)
        return f"rec-{len(self.records)}"

    def load_enrollment(self, user_id: str) -> Optional[EnrollmentRecord]:
        matches = [r for r in self.records if r.user_id == user_id]
        return matches[-1] if matches else None


def enrolled_record(user_id: str = "u1", embedding=ENROLLED, model_tag: str = "fake-4") -> EnrollmentRecord:
    return EnrollmentRecord(
        user_id=user_id,
        embedding=np.asarray(embedding, dtype=np.float64),
        captured_at=1.0,
        quality_score=0.9,
        model_tag=model_tag,
    )


@pytest.fixture
def fast_cfg(tmp_path) -> AppConfig:
    cfg = AppConfig()
    cfg.session.detection_min_interval_ms = 0
    cfg.session.settle_delay_ms = 0
    cfg.paths.data_dir = str(tmp_path)
    cfg.paths.db_path = str(tmp_path / "facegate.db")
    cfg.paths.log_dir = str(tmp_path / "logs")
    return cfg
