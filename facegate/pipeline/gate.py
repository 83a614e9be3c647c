import logging
from typing import Callable, Optional

from facegate.app.config import AppConfig
from facegate.app.errors import EnrollmentCorrupt, EnrollmentMissing, SessionAlreadyActive
from facegate.camera.frame_source import CameraFrameSource, FrameSource
from facegate.db.dao import EnrollmentRecord, EnrollmentStore
from facegate.models.analyzer import FaceAnalyzer
from facegate.models.base import FaceDetector
from facegate.pipeline.enrollment import EnrollmentFlow
from facegate.pipeline.liveness import build_sequence, requires_landmarks
from facegate.pipeline.session import SessionCallbacks, VerificationSession

logger = logging.getLogger(__name__)


class FaceGate:
    """Entry point wiring config, detector, frame source and enrollment store."""

    def __init__(
        self,
        cfg: AppConfig,
        store: EnrollmentStore,
        frame_source: Optional[FrameSource] = None,
        detector: Optional[FaceDetector] = None,
    ):
        self.cfg = cfg
        self.store = store
        self.steps = build_sequence(cfg.challenge)
        self.frame_source = frame_source or CameraFrameSource()
        self.detector = detector or FaceAnalyzer(cfg.backend, require_landmarks=requires_landmarks(self.steps))
        self._active: Optional[VerificationSession] = None

    @property
    def active_session(self) -> Optional[VerificationSession]:
        if self._active is not None and self._active.closed:
            self._active = None
        return self._active

    def open_verification(
        self,
        user_id: str,
        check_type: str,
        callbacks: Optional[SessionCallbacks] = None,
        frame_source: Optional[FrameSource] = None,
    ) -> VerificationSession:
        """Build a session for ``user_id``; the caller awaits ``session.run()``.

        A session that was created but never run counts as active until it is
        stopped. An unreadable stored enrollment is reported through
        ``callbacks.on_failure`` and then re-raised.
        """
        current = self.active_session
        if current is not None and not current.stopped:
            raise SessionAlreadyActive(f"a verification session is already active for {current.record.user_id}")
        try:
            record = self.store.load_enrollment(user_id)
        except EnrollmentCorrupt as exc:
            logger.error("Stored enrollment for %s is unreadable: %s", user_id, exc)
            if callbacks is not None:
                callbacks.on_failure(exc)
            raise
        if record is None:
            raise EnrollmentMissing(f"no enrollment stored for {user_id}")
        session = VerificationSession(
            frame_source or self.frame_source,
            self.detector,
            record,
            check_type,
            callbacks=callbacks,
            cfg=self.cfg,
            steps=self.steps,
        )
        self._active = session
        logger.debug("Opened verification for %s (%s)", user_id, check_type)
        return session

    def enrollment(
        self,
        on_complete: Optional[Callable[[EnrollmentRecord], None]] = None,
        frame_source: Optional[FrameSource] = None,
    ) -> EnrollmentFlow:
        return EnrollmentFlow(
            frame_source or self.frame_source,
            self.detector,
            self.store,
            cfg=self.cfg,
            on_complete=on_complete,
        )
