"""Liveness challenge state machine.

The machine is linear: ``match`` first, then the configured challenge steps,
then ``success``. ``LivenessChallengeEngine.transition`` is pure; it takes a
``SessionState`` and one detection (or ``None``) and returns the next state
plus the feedback to show. Callers own the state value.
"""
import dataclasses
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from facegate.app.config import ChallengeConfig
from facegate.app.utils import as_embedding
from facegate.models.base import DetectionResult, EyeLandmarks, Point
from facegate.pipeline.matcher import DEFAULT_MATCH_THRESHOLD, distance, is_match

logger = logging.getLogger(__name__)

MATCH = "match"
SUCCESS = "success"
RESERVED_NAMES = (MATCH, SUCCESS)

MISMATCH_HOLD = "hold"
MISMATCH_RESET = "reset"


class FeedbackCode(str, Enum):
    NO_FACE = "NO_FACE"
    NOT_MATCHED = "NOT_MATCHED"
    PROMPT = "PROMPT"
    EYES_NOT_VISIBLE = "EYES_NOT_VISIBLE"
    VERIFIED = "VERIFIED"


@dataclass(frozen=True)
class Feedback:
    code: FeedbackCode
    text: str


NO_FACE_TEXT = "No face detected, position your face in the frame"
NOT_MATCHED_TEXT = "Face does not match the enrolled user"
EYES_NOT_VISIBLE_TEXT = "Keep your eyes visible to the camera"
VERIFIED_TEXT = "Verification successful"
SCANNING_TEXT = "Scanning face..."


@dataclass(frozen=True)
class ChallengeStep:
    name: str
    prompt: str


@dataclass(frozen=True)
class MatchStep(ChallengeStep):
    pass


@dataclass(frozen=True)
class ExpressionStep(ChallengeStep):
    expression: str
    threshold: float


@dataclass(frozen=True)
class GestureStep(ChallengeStep):
    target: int = 2
    ear_threshold: float = 0.26
    gesture: str = "blink"

    def progress_prompt(self, count: int) -> str:
        return f"{self.prompt} ({count}/{self.target})"


MATCH_STEP = MatchStep(MATCH, SCANNING_TEXT)


@dataclass(frozen=True)
class StepRecord:
    step: str
    at: Optional[float]


@dataclass(frozen=True)
class SessionState:
    step_index: int
    step_name: str
    started_at: float
    attempt_history: Tuple[StepRecord, ...] = ()
    # Blink counter for the current gesture step
    blink_count: int = 0
    eyes_closed: bool = False

    @property
    def succeeded(self) -> bool:
        return self.step_name == SUCCESS


def _dist(a: Point, b: Point) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


def eye_aspect_ratio(eye: Sequence[Point]) -> float:
    """Eye Aspect Ratio = (|p2-p6| + |p3-p5|) / (2*|p1-p4|)"""
    p1, p2, p3, p4, p5, p6 = eye[:6]
    horizontal = _dist(p1, p4)
    if horizontal == 0:
        return 0.0
    return (_dist(p2, p6) + _dist(p3, p5)) / (2.0 * horizontal)


def average_ear(landmarks: EyeLandmarks) -> float:
    return (eye_aspect_ratio(landmarks.left_eye) + eye_aspect_ratio(landmarks.right_eye)) / 2.0


class LivenessChallengeEngine:
    def __init__(
        self,
        steps: Iterable[ChallengeStep],
        enrolled: np.ndarray,
        threshold: float = DEFAULT_MATCH_THRESHOLD,
        mismatch_policy: str = MISMATCH_HOLD,
    ):
        challenge = tuple(steps)
        if not challenge:
            raise ValueError("challenge sequence needs at least one step")
        names = [s.name for s in challenge]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate challenge step names: {names}")
        if any(isinstance(s, MatchStep) or s.name in RESERVED_NAMES for s in challenge):
            raise ValueError("'match' and 'success' are implicit and cannot be configured")
        if mismatch_policy not in (MISMATCH_HOLD, MISMATCH_RESET):
            raise ValueError(f"unknown mismatch policy {mismatch_policy!r}")
        self.steps: Tuple[ChallengeStep, ...] = (MATCH_STEP,) + challenge
        self.enrolled = as_embedding(enrolled)
        self.threshold = float(threshold)
        self.mismatch_policy = mismatch_policy

    @property
    def step_names(self) -> List[str]:
        return [s.name for s in self.steps] + [SUCCESS]

    def initial_state(self, started_at: float) -> SessionState:
        return SessionState(step_index=0, step_name=MATCH, started_at=started_at)

    def progress(self, state: SessionState) -> float:
        return min(state.step_index, len(self.steps)) / float(len(self.steps))

    def prompt_for(self, state: SessionState) -> Feedback:
        if state.succeeded:
            return Feedback(FeedbackCode.VERIFIED, VERIFIED_TEXT)
        step = self.steps[state.step_index]
        if isinstance(step, GestureStep):
            return Feedback(FeedbackCode.PROMPT, step.progress_prompt(state.blink_count))
        return Feedback(FeedbackCode.PROMPT, step.prompt)

    def transition(
        self, state: SessionState, detection: Optional[DetectionResult], now: Optional[float] = None
    ) -> Tuple[SessionState, Feedback]:
        if state.succeeded:
            return state, Feedback(FeedbackCode.VERIFIED, VERIFIED_TEXT)
        if detection is None:
            return state, Feedback(FeedbackCode.NO_FACE, NO_FACE_TEXT)

        matched = is_match(distance(detection.embedding, self.enrolled), self.threshold)
        step = self.steps[state.step_index]

        if isinstance(step, MatchStep):
            if not matched:
                return state, Feedback(FeedbackCode.NOT_MATCHED, NOT_MATCHED_TEXT)
            state = self._advance(state, now)
            # The matching frame is checked against the first challenge step right away
            return self._evaluate(state, detection, now)

        if not matched:
            if self.mismatch_policy == MISMATCH_RESET:
                logger.info("Face changed during %s; restarting challenge", step.name)
                return self.initial_state(state.started_at), Feedback(FeedbackCode.NOT_MATCHED, NOT_MATCHED_TEXT)
            return state, Feedback(FeedbackCode.NOT_MATCHED, NOT_MATCHED_TEXT)

        return self._evaluate(state, detection, now)

    def _evaluate(
        self, state: SessionState, detection: DetectionResult, now: Optional[float]
    ) -> Tuple[SessionState, Feedback]:
        if state.succeeded:
            return state, self.prompt_for(state)
        step = self.steps[state.step_index]

        if isinstance(step, ExpressionStep):
            if detection.expression(step.expression) > step.threshold:
                state = self._advance(state, now)
            return state, self.prompt_for(state)

        if isinstance(step, GestureStep):
            if detection.landmarks is None:
                return state, Feedback(FeedbackCode.EYES_NOT_VISIBLE, EYES_NOT_VISIBLE_TEXT)
            closed = average_ear(detection.landmarks) < step.ear_threshold
            count = state.blink_count
            if not closed and state.eyes_closed:
                # A blink is counted when the eyes reopen
                count += 1
            if count >= step.target:
                state = self._advance(state, now)
            else:
                state = dataclasses.replace(state, blink_count=count, eyes_closed=closed)
            return state, self.prompt_for(state)

        raise TypeError(f"unsupported challenge step {type(step).__name__}")

    def _advance(self, state: SessionState, now: Optional[float]) -> SessionState:
        index = state.step_index + 1
        name = self.steps[index].name if index < len(self.steps) else SUCCESS
        logger.debug("Challenge step %s -> %s", state.step_name, name)
        return SessionState(
            step_index=index,
            step_name=name,
            started_at=state.started_at,
            attempt_history=state.attempt_history + (StepRecord(state.step_name, now),),
        )


PRESETS: Dict[str, List[Dict[str, Any]]] = {
    "expressions": [
        {"name": "neutral_1", "kind": "expression", "expression": "neutral", "threshold": 0.6,
         "prompt": "Hold a neutral expression"},
        {"name": "smile_1", "kind": "expression", "expression": "happy", "threshold": 0.65,
         "prompt": "Smile widely"},
        {"name": "neutral_2", "kind": "expression", "expression": "neutral", "threshold": 0.6,
         "prompt": "Back to a neutral expression"},
        {"name": "smile_2", "kind": "expression", "expression": "happy", "threshold": 0.65,
         "prompt": "Smile once more"},
    ],
    "blink": [
        {"name": "neutral", "kind": "expression", "expression": "neutral", "threshold": 0.6,
         "prompt": "Hold a neutral expression"},
        {"name": "blink", "kind": "blink", "prompt": "Blink your eyes"},
        {"name": "smile", "kind": "expression", "expression": "happy", "threshold": 0.7,
         "prompt": "Now smile widely"},
    ],
}


def step_from_dict(spec: Dict[str, Any], cfg: Optional[ChallengeConfig] = None) -> ChallengeStep:
    cfg = cfg or ChallengeConfig()
    try:
        name = str(spec["name"])
        kind = str(spec.get("kind", "expression")).lower()
        if kind == "expression":
            expression = str(spec["expression"])
            return ExpressionStep(
                name=name,
                prompt=str(spec.get("prompt") or f"Show a {expression} expression"),
                expression=expression,
                threshold=float(spec["threshold"]),
            )
        if kind in ("blink", "gesture"):
            target = int(spec.get("target", cfg.required_blink_count))
            if target < 1:
                raise ValueError("blink target must be at least 1")
            return GestureStep(
                name=name,
                prompt=str(spec.get("prompt") or "Blink your eyes"),
                target=target,
                ear_threshold=float(spec.get("ear_threshold", cfg.ear_threshold)),
            )
    except KeyError as exc:
        raise ValueError(f"challenge step {spec!r} is missing {exc}") from exc
    raise ValueError(f"unknown challenge step kind {kind!r}")


def build_sequence(cfg: ChallengeConfig) -> Tuple[ChallengeStep, ...]:
    """Challenge steps from ``cfg.sequence``, or from ``cfg.preset`` when unset."""
    if cfg.sequence:
        specs = cfg.sequence
    else:
        if cfg.preset not in PRESETS:
            raise ValueError(f"unknown challenge preset {cfg.preset!r}; choose from {sorted(PRESETS)}")
        specs = PRESETS[cfg.preset]
    return tuple(step_from_dict(s, cfg) for s in specs)


def requires_landmarks(steps: Iterable[ChallengeStep]) -> bool:
    return any(isinstance(s, GestureStep) for s in steps)
