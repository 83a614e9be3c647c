"""Asynchronous verification session.

One ``VerificationSession`` drives one challenge from camera acquisition to a
terminal outcome. Everything runs cooperatively on the caller's event loop;
blocking camera reads and model inference go through ``asyncio.to_thread``.

Rules the loop keeps:

- at most one detection in flight; frames arriving meanwhile are dropped
- a new detection starts no sooner than ``detection_min_interval_ms`` after
  the previous one started
- results from a superseded generation (after ``stop``) are discarded
- the camera handle is released exactly once, on every exit path
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence

import numpy as np

from facegate.app.config import AppConfig
from facegate.app.errors import (
    DeviceUnavailable,
    EmbeddingShapeError,
    EnrollmentCorrupt,
    EnrollmentMissing,
    FaceGateError,
    SessionAlreadyActive,
    SessionFatalError,
)
from facegate.app.utils import as_embedding
from facegate.camera.frame_source import FrameHandle, FrameSource
from facegate.db.dao import EnrollmentRecord
from facegate.models.base import DetectionOptions, DetectionResult, FaceDetector
from facegate.pipeline.liveness import (
    ChallengeStep,
    NOT_MATCHED_TEXT,
    Feedback,
    FeedbackCode,
    LivenessChallengeEngine,
    SessionState,
    build_sequence,
)

logger = logging.getLogger(__name__)


def _ignore(*_args) -> None:
    return None


@dataclass
class SessionCallbacks:
    on_verified: Callable[[str], None] = _ignore
    on_failure: Callable[[FaceGateError], None] = _ignore
    on_feedback: Callable[[str], None] = _ignore


class SessionOutcome(str, Enum):
    VERIFIED = "verified"
    FAILED = "failed"
    CANCELLED = "cancelled"


class VerificationSession:
    def __init__(
        self,
        source: FrameSource,
        detector: FaceDetector,
        record: Optional[EnrollmentRecord],
        check_type: str,
        callbacks: Optional[SessionCallbacks] = None,
        cfg: Optional[AppConfig] = None,
        steps: Optional[Sequence[ChallengeStep]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if record is None:
            raise EnrollmentMissing("no enrollment loaded for this session")
        self.cfg = cfg or AppConfig()
        self.source = source
        self.detector = detector
        self.record = record
        self.check_type = check_type
        self.callbacks = callbacks or SessionCallbacks()
        self.steps = tuple(steps) if steps is not None else build_sequence(self.cfg.challenge)
        self.clock = clock
        self.options = DetectionOptions(
            input_size=self.cfg.session.input_size,
            score_threshold=self.cfg.thresholds.min_detection_score,
        )

        self.engine: Optional[LivenessChallengeEngine] = None
        self.outcome: Optional[SessionOutcome] = None
        self.error: Optional[FaceGateError] = None
        self._state: Optional[SessionState] = None
        self._generation = 0
        self._started = False
        self._finished = False
        self._stopped = False
        self._closed = False
        self._handle: Optional[FrameHandle] = None
        self._inflight: Optional[asyncio.Task] = None
        self._last_detection_at: Optional[float] = None
        self._wake: Optional[asyncio.Event] = None
        self._wake_waiter: Optional[asyncio.Future] = None
        self._settle: Optional[asyncio.TimerHandle] = None

    # ------------------------------------------------------------------
    @property
    def state(self) -> Optional[SessionState]:
        return self._state

    @property
    def progress(self) -> float:
        if self.engine is None or self._state is None:
            return 0.0
        return self.engine.progress(self._state)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def stopped(self) -> bool:
        return self._stopped

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and not self._stopped

    # ------------------------------------------------------------------
    async def run(self) -> SessionOutcome:
        """Run the challenge until success, a fatal error or ``stop``."""
        if self._started:
            raise SessionAlreadyActive("a verification session can only run once")
        self._started = True
        if self._stopped:
            self._closed = True
            return SessionOutcome.CANCELLED

        self._generation += 1
        generation = self._generation
        self._wake = asyncio.Event()
        self._wake_waiter = asyncio.ensure_future(self._wake.wait())
        try:
            await asyncio.to_thread(self.detector.load)
            self.engine = self._build_engine()
            self._state = self.engine.initial_state(self.clock())
            if not self._is_current(generation):
                return self._result()
            self._handle = await asyncio.to_thread(self.source.acquire, self.cfg.camera)
            if not self._is_current(generation):
                return self._result()
            logger.info("Verification for %s started (%s)", self.record.user_id, self.check_type)
            self._emit(generation, self.engine.prompt_for(self._state))
            await self._loop(generation)
        except SessionFatalError as exc:
            self._fail(generation, exc)
        finally:
            await self._teardown()

        if self.error is not None and self.outcome == SessionOutcome.FAILED and not self._stopped:
            logger.error("Verification for %s failed: %s", self.record.user_id, self.error)
            self.callbacks.on_failure(self.error)
        elif self.outcome == SessionOutcome.VERIFIED and not self._stopped:
            delay = self.cfg.session.settle_delay_ms / 1000.0
            loop = asyncio.get_running_loop()
            self._settle = loop.call_later(delay, self._deliver_verified, generation)
        return self._result()

    def stop(self) -> None:
        """Cancel the session. Idempotent; no callback fires after it returns."""
        if self._stopped:
            return
        self._stopped = True
        self._generation += 1
        if self._settle is not None:
            self._settle.cancel()
            self._settle = None
        if self.outcome is None:
            self.outcome = SessionOutcome.CANCELLED
        if self._wake is not None:
            self._wake.set()
        logger.info("Verification for %s stopped", self.record.user_id)

    def _result(self) -> SessionOutcome:
        return self.outcome or SessionOutcome.CANCELLED

    def _build_engine(self) -> LivenessChallengeEngine:
        try:
            enrolled = as_embedding(self.record.embedding)
        except EmbeddingShapeError as exc:
            raise EnrollmentCorrupt(f"enrollment for {self.record.user_id} is unusable: {exc}") from exc
        dim = int(self.detector.embedding_dim)
        if enrolled.size != dim:
            raise EnrollmentCorrupt(
                f"enrollment for {self.record.user_id} has {enrolled.size} values, detector produces {dim}"
            )
        tag = self.detector.model_tag
        if self.record.model_tag and tag and self.record.model_tag != tag:
            raise EnrollmentCorrupt(
                f"enrollment for {self.record.user_id} was made with {self.record.model_tag}, detector is {tag}"
            )
        return LivenessChallengeEngine(
            self.steps,
            enrolled,
            threshold=self.cfg.thresholds.match_distance_threshold,
            mismatch_policy=self.cfg.challenge.mismatch_policy,
        )

    # ------------------------------------------------------------------
    async def _loop(self, generation: int) -> None:
        interval = self.cfg.session.detection_min_interval_ms / 1000.0
        max_failures = self.cfg.camera.max_read_failures
        failures = 0
        while self._is_current(generation) and not self._finished:
            frame = await self._next_frame()
            if not self._is_current(generation) or self._finished:
                break
            if frame is None:
                failures += 1
                if failures > max_failures:
                    raise DeviceUnavailable(f"no frame after {failures} consecutive reads")
                continue
            failures = 0
            if self._inflight is not None and not self._inflight.done():
                continue
            now = self.clock()
            if self._last_detection_at is not None and now - self._last_detection_at < interval:
                continue
            self._last_detection_at = now
            self._inflight = asyncio.create_task(self._detect(frame, generation))

    async def _next_frame(self) -> Optional[np.ndarray]:
        read = asyncio.ensure_future(self.source.next_frame(self._handle))
        done, _ = await asyncio.wait({read, self._wake_waiter}, return_when=asyncio.FIRST_COMPLETED)
        if read not in done:
            read.cancel()
            return None
        try:
            return read.result()
        except Exception as exc:
            logger.warning("Frame read failed: %s", exc)
            logger.debug("Frame read traceback", exc_info=True)
            return None

    async def _detect(self, frame: np.ndarray, generation: int) -> None:
        try:
            detection = await asyncio.to_thread(self.detector.detect, frame, self.options)
        except SessionFatalError as exc:
            self._fail(generation, exc)
            return
        except Exception as exc:
            # A bad frame never ends the session
            logger.warning("Detection failed on one frame: %s", exc)
            logger.debug("Detection traceback", exc_info=True)
            return
        if not self._is_current(generation) or self._finished:
            return
        self._apply(generation, detection)

    def _apply(self, generation: int, detection: Optional[DetectionResult]) -> None:
        previous = self._state
        try:
            state, feedback = self.engine.transition(previous, detection, self.clock())
        except EmbeddingShapeError as exc:
            # The enrollment was validated in _build_engine, so the live embedding is bad
            logger.warning("Discarding detection with unusable embedding: %s", exc)
            self._emit(generation, Feedback(FeedbackCode.NOT_MATCHED, NOT_MATCHED_TEXT))
            return
        self._state = state
        if state.step_name != previous.step_name:
            logger.info("Verification for %s: %s -> %s", self.record.user_id, previous.step_name, state.step_name)
        self._emit(generation, feedback)
        if state.succeeded and self._is_current(generation):
            self.outcome = SessionOutcome.VERIFIED
            self._finish()

    def _emit(self, generation: int, feedback: Feedback) -> None:
        if not self._is_current(generation):
            return
        try:
            self.callbacks.on_feedback(feedback.text)
        except Exception:
            logger.exception("on_feedback callback raised")

    def _fail(self, generation: int, exc: SessionFatalError) -> None:
        if not self._is_current(generation) or self._finished:
            return
        self.outcome = SessionOutcome.FAILED
        self.error = exc
        self._finish()

    def _finish(self) -> None:
        self._finished = True
        if self._wake is not None:
            self._wake.set()

    def _deliver_verified(self, generation: int) -> None:
        self._settle = None
        if not self._is_current(generation):
            return
        logger.info("Verification for %s succeeded (%s)", self.record.user_id, self.check_type)
        self.callbacks.on_verified(self.check_type)

    async def _teardown(self) -> None:
        self._finished = True
        task, self._inflight = self._inflight, None
        if task is not None and not task.done():
            # Let the running inference finish; its result is discarded
            await asyncio.wait({task})
        if self._wake_waiter is not None and not self._wake_waiter.done():
            self._wake_waiter.cancel()
        handle, self._handle = self._handle, None
        if handle is not None:
            await asyncio.to_thread(self.source.release, handle)
        self._closed = True
