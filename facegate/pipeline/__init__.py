from .enrollment import EnrollmentFlow, EnrollmentResult
from .gate import FaceGate
from .liveness import LivenessChallengeEngine, SessionState
from .session import SessionCallbacks, SessionOutcome, VerificationSession

__all__ = [
    "EnrollmentFlow",
    "EnrollmentResult",
    "FaceGate",
    "LivenessChallengeEngine",
    "SessionState",
    "SessionCallbacks",
    "SessionOutcome",
    "VerificationSession",
]
