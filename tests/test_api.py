import os

import cv2
import numpy as np
from fastapi.testclient import TestClient

from facegate.api.server import create_app
from facegate.db import Database

from conftest import ENROLLED, FakeDetector, face


def jpeg() -> bytes:
    ok, buf = cv2.imencode(".jpg", np.zeros((64, 64, 3), dtype=np.uint8))
    assert ok
    return buf.tobytes()


def make_client(cfg, tmp_path, script):
    db = Database(os.path.join(tmp_path, "api.db"))
    detector = FakeDetector(script, tail=None)
    return TestClient(create_app(cfg, store=db, detector=detector))


def enroll(client, user_id="u1"):
    return client.post(
        "/enroll",
        data={"user_id": user_id, "label": "Alice"},
        files={"file": ("face.jpg", jpeg(), "image/jpeg")},
    )


def test_health(fast_cfg, tmp_path):
    with make_client(fast_cfg, tmp_path, []) as client:
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "ok", "model_tag": "fake-4"}


def test_enroll_and_read_metadata(fast_cfg, tmp_path):
    with make_client(fast_cfg, tmp_path, [face(ENROLLED, confidence=0.6)]) as client:
        r = enroll(client)
        assert r.status_code == 200
        body = r.json()
        assert body["user_id"] == "u1"
        assert body["low_quality"] is True

        info = client.get("/enrollments/u1").json()
        assert info["label"] == "Alice"
        assert info["dim"] == 4
        assert "embedding" not in info

        assert client.get("/enrollments/nobody").status_code == 404


def test_enroll_rejects_bad_input(fast_cfg, tmp_path):
    with make_client(fast_cfg, tmp_path, [None]) as client:
        r = client.post("/enroll", data={"user_id": "u1"}, files={"file": ("x.jpg", b"not an image", "image/jpeg")})
        assert r.status_code == 400
        assert enroll(client).status_code == 422


def test_websocket_verification(fast_cfg, tmp_path):
    script = [face(ENROLLED, confidence=0.9), face(neutral=0.9), face(happy=0.8), face(neutral=0.9), face(happy=0.8)]
    with make_client(fast_cfg, tmp_path, script) as client:
        assert enroll(client).status_code == 200
        with client.websocket_connect("/ws/verify/u1?check_type=OUT") as ws:
            first = ws.receive_json()
            assert first["type"] == "feedback"
            assert first["step"] == "match"
            messages = []
            for _ in range(10):
                ws.send_bytes(jpeg())
                msg = ws.receive_json()
                messages.append(msg)
                if msg["type"] == "verified":
                    break
    assert messages[-1] == {"type": "verified", "check_type": "OUT"}
    assert messages[-2]["step"] == "success"
    assert messages[-2]["progress"] == 1.0


def test_websocket_unknown_user(fast_cfg, tmp_path):
    with make_client(fast_cfg, tmp_path, []) as client:
        with client.websocket_connect("/ws/verify/ghost") as ws:
            msg = ws.receive_json()
    assert msg["type"] == "failure"
    assert msg["reason"] == "enrollment_missing"
