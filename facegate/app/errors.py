"""Error taxonomy shared by the camera, detector, session and enrollment code.

Three families matter to callers:

- ``FrameError``: noise on a single frame. The verification loop swallows it
  and only the feedback text changes.
- ``SessionFatalError``: the session stops, the camera is released and
  ``on_failure`` receives the error exactly once.
- ``CallerError``: the request is rejected before anything starts.
"""


class FaceGateError(Exception):
    """Base class for every error raised by facegate."""

    reason: str = "error"


class FrameError(FaceGateError):
    reason = "frame_error"


class NoFaceDetected(FrameError):
    reason = "no_face"


class EmbeddingShapeError(FaceGateError, ValueError):
    reason = "embedding_shape"


class SessionFatalError(FaceGateError):
    reason = "fatal"


class CameraError(SessionFatalError):
    reason = "camera_error"


class PermissionDenied(CameraError):
    reason = "permission_denied"


class DeviceNotFound(CameraError):
    reason = "device_not_found"


class DeviceBusy(CameraError):
    reason = "device_busy"


class DeviceUnavailable(CameraError):
    reason = "device_unavailable"


class DetectorInitError(SessionFatalError):
    reason = "detector_init"


class EnrollmentCorrupt(SessionFatalError):
    reason = "enrollment_corrupt"


class CallerError(FaceGateError):
    reason = "caller_error"


class EnrollmentMissing(CallerError):
    reason = "enrollment_missing"


class SessionAlreadyActive(CallerError):
    reason = "session_active"


class CameraInUseError(CallerError):
    reason = "camera_in_use"
