import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

import cv2
import numpy as np
from fastapi import FastAPI, File, Form, HTTPException, UploadFile, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from facegate.app.config import AppConfig, load_config
from facegate.app.errors import FaceGateError, NoFaceDetected
from facegate.camera.frame_source import PushFrameSource, StillFrameSource
from facegate.db import Database, EnrollmentStore
from facegate.models.analyzer import FaceAnalyzer
from facegate.models.base import FaceDetector
from facegate.pipeline.enrollment import EnrollmentFlow
from facegate.pipeline.liveness import build_sequence, requires_landmarks
from facegate.pipeline.session import SessionCallbacks, SessionOutcome, VerificationSession

logger = logging.getLogger(__name__)


class EnrollResponse(BaseModel):
    record_id: str
    user_id: str
    quality: float
    low_quality: bool
    model_tag: str


class EnrollmentInfo(BaseModel):
    id: str
    user_id: str
    label: str
    dim: int
    model_tag: str
    quality: float
    captured_at: float
    created_at: float


def decode_image(raw: bytes) -> Optional[np.ndarray]:
    if not raw:
        return None
    arr = np.frombuffer(raw, np.uint8)
    return cv2.imdecode(arr, cv2.IMREAD_COLOR)


def create_app(
    cfg: Optional[AppConfig] = None,
    store: Optional[EnrollmentStore] = None,
    detector: Optional[FaceDetector] = None,
) -> FastAPI:
    """Build the HTTP service. Missing collaborators are created at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        conf = cfg or load_config()
        own_db = store is None
        db = store if store is not None else Database(conf.paths.db_path)
        det = detector
        if det is None:
            steps = build_sequence(conf.challenge)
            det = FaceAnalyzer(conf.backend, require_landmarks=requires_landmarks(steps))
        await asyncio.to_thread(det.load)
        app.state.cfg = conf
        app.state.store = db
        app.state.detector = det
        logger.info("facegate API ready (db=%s)", getattr(db, "db_path", type(db).__name__))
        try:
            yield
        finally:
            if own_db:
                db.close()

    app = FastAPI(title="facegate API", version="0.1.0", lifespan=lifespan)

    @app.get("/health")
    def health():
        return {"status": "ok", "model_tag": app.state.detector.model_tag}

    @app.post("/enroll", response_model=EnrollResponse)
    def enroll(user_id: str = Form(...), label: str = Form(""), file: UploadFile = File(...)):
        img = decode_image(file.file.read())
        if img is None:
            raise HTTPException(status_code=400, detail="could not decode image")
        flow = EnrollmentFlow(StillFrameSource(img), app.state.detector, app.state.store, cfg=app.state.cfg)
        try:
            with flow:
                res = flow.capture(user_id, label=label)
        except NoFaceDetected as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return EnrollResponse(
            record_id=res.record_id,
            user_id=res.record.user_id,
            quality=res.record.quality_score,
            low_quality=res.low_quality,
            model_tag=res.record.model_tag,
        )

    @app.get("/enrollments")
    def enrollments():
        return app.state.store.list_enrollments()

    @app.get("/enrollments/{user_id}", response_model=EnrollmentInfo)
    def enrollment(user_id: str):
        rows = app.state.store.list_enrollments(user_id)
        if not rows:
            raise HTTPException(status_code=404, detail=f"no enrollment for {user_id}")
        return rows[0]

    @app.websocket("/ws/verify/{user_id}")
    async def verify(websocket: WebSocket, user_id: str, check_type: str = "IN"):
        await websocket.accept()
        state = websocket.app.state
        try:
            record = state.store.load_enrollment(user_id)
        except FaceGateError as exc:
            await websocket.send_json({"type": "failure", "reason": exc.reason, "message": str(exc)})
            await websocket.close(code=1011)
            return
        if record is None:
            await websocket.send_json(
                {"type": "failure", "reason": "enrollment_missing", "message": f"no enrollment for {user_id}"}
            )
            await websocket.close(code=1008)
            return

        source = PushFrameSource()
        outbox: asyncio.Queue = asyncio.Queue()
        session: Optional[VerificationSession] = None

        def on_feedback(text: str) -> None:
            outbox.put_nowait(
                {"type": "feedback", "text": text, "step": session.state.step_name, "progress": session.progress}
            )

        callbacks = SessionCallbacks(
            on_verified=lambda ct: outbox.put_nowait({"type": "verified", "check_type": ct}),
            on_failure=lambda err: outbox.put_nowait({"type": "failure", "reason": err.reason, "message": str(err)}),
            on_feedback=on_feedback,
        )
        session = VerificationSession(source, state.detector, record, check_type, callbacks, cfg=state.cfg)
        frame_count = 0

        async def reader():
            """Feed client frames into the session; only the newest frame is kept."""
            nonlocal frame_count
            try:
                while True:
                    message = await websocket.receive()
                    if message.get("type") == "websocket.disconnect":
                        break
                    if message.get("text"):
                        try:
                            data = json.loads(message["text"])
                        except json.JSONDecodeError:
                            continue
                        if isinstance(data, dict) and data.get("type") == "stop":
                            session.stop()
                            break
                    if message.get("bytes"):
                        frame = decode_image(message["bytes"])
                        if frame is None:
                            outbox.put_nowait({"type": "error", "message": "could not decode frame"})
                            continue
                        frame_count += 1
                        source.push(frame)
            except (WebSocketDisconnect, RuntimeError):
                pass

        async def sender():
            while True:
                msg = await outbox.get()
                if msg is None:
                    break
                try:
                    await websocket.send_json(msg)
                except (WebSocketDisconnect, RuntimeError):
                    break
                if msg["type"] in ("verified", "failure"):
                    break

        reader_task = asyncio.create_task(reader())
        sender_task = asyncio.create_task(sender())
        run_task = asyncio.create_task(session.run())
        try:
            await asyncio.wait({reader_task, run_task}, return_when=asyncio.FIRST_COMPLETED)
            if not run_task.done():
                # Client left or asked to stop
                session.stop()
            outcome = await run_task
            if outcome != SessionOutcome.VERIFIED or session.stopped:
                outbox.put_nowait(None)
            await sender_task
        finally:
            session.stop()
            reader_task.cancel()
            sender_task.cancel()
            logger.info("WS verification for %s ended: %s frames, outcome %s", user_id, frame_count, session.outcome)
            try:
                await websocket.close()
            except RuntimeError:
                pass

    return app


app = create_app()
