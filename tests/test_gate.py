import asyncio

import pytest

from facegate.app.errors import EnrollmentCorrupt, EnrollmentMissing, SessionAlreadyActive
from facegate.pipeline.gate import FaceGate
from facegate.pipeline.session import SessionCallbacks, SessionOutcome

from conftest import ENROLLED, FakeDetector, FakeFrameSource, MemoryStore, enrolled_record, face


def make_gate(cfg, script=None):
    store = MemoryStore()
    source = FakeFrameSource()
    detector = FakeDetector(script or [], tail=None)
    return FaceGate(cfg, store, frame_source=source, detector=detector), store, source


def test_unknown_user_is_rejected(fast_cfg):
    gate, _, _ = make_gate(fast_cfg)
    with pytest.raises(EnrollmentMissing):
        gate.open_verification("ghost", "IN")


def test_one_session_at_a_time(fast_cfg):
    gate, store, _ = make_gate(fast_cfg)
    store.save_enrollment(enrolled_record("u1"))
    first = gate.open_verification("u1", "IN")
    with pytest.raises(SessionAlreadyActive):
        gate.open_verification("u1", "OUT")
    first.stop()
    second = gate.open_verification("u1", "OUT")
    assert gate.active_session is second


def test_enroll_then_verify(fast_cfg):
    script = [face(ENROLLED, confidence=0.93), face(neutral=0.9), face(happy=0.8), face(neutral=0.9), face(happy=0.8)]
    gate, store, source = make_gate(fast_cfg, script)
    with gate.enrollment() as flow:
        flow.capture("u1", label="Alice")
    assert store.load_enrollment("u1").label == "Alice"

    verified = []

    async def main():
        session = gate.open_verification("u1", "IN", SessionCallbacks(on_verified=verified.append))
        outcome = await session.run()
        await asyncio.sleep(0.05)
        return outcome

    assert asyncio.run(main()) == SessionOutcome.VERIFIED
    assert verified == ["IN"]
    assert gate.active_session is None
    assert not source.in_use


class CorruptStore(MemoryStore):
    def load_enrollment(self, user_id):
        raise EnrollmentCorrupt(f"enrollment for {user_id} could not be decoded")


def test_corrupt_enrollment_reported_through_on_failure(fast_cfg):
    source = FakeFrameSource()
    gate = FaceGate(fast_cfg, CorruptStore(), frame_source=source, detector=FakeDetector())
    failures = []
    with pytest.raises(EnrollmentCorrupt):
        gate.open_verification("u1", "IN", SessionCallbacks(on_failure=failures.append))
    assert len(failures) == 1
    assert failures[0].reason == "enrollment_corrupt"
    assert gate.active_session is None
    assert source.open_count == 0
