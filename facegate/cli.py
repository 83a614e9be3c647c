import asyncio
import csv
import signal
import time
from typing import Optional

import typer
import uvicorn

from facegate.app.config import AppConfig, load_config
from facegate.app.errors import CallerError, FaceGateError, NoFaceDetected, SessionFatalError
from facegate.app.logging_config import setup_logging
from facegate.db import Database
from facegate.pipeline.gate import FaceGate
from facegate.pipeline.session import SessionCallbacks, SessionOutcome


app = typer.Typer(name="facegate", help="Face enrollment and liveness-gated verification.")


def _config(config: Optional[str]) -> AppConfig:
    cfg = load_config(config)
    setup_logging(cfg.log_level, cfg.paths.log_dir)
    return cfg


@app.command()
def enroll(
    user_id: str,
    label: str = typer.Option("", help="Display name stored with the enrollment."),
    delay: float = typer.Option(2.0, help="Seconds to wait before capturing."),
    attempts: int = typer.Option(3, help="Captures to try when no face is found."),
    config: Optional[str] = typer.Option(None, help="Path to a YAML config file."),
):
    """Capture one camera frame and store it as the enrollment for USER_ID."""
    cfg = _config(config)
    db = Database(cfg.paths.db_path)
    gate = FaceGate(cfg, db)
    try:
        with gate.enrollment() as flow:
            typer.echo(f"Look at the camera, capturing in {delay:.0f}s...")
            time.sleep(delay)
            for attempt in range(1, attempts + 1):
                try:
                    res = flow.capture(user_id, label=label)
                    break
                except NoFaceDetected as exc:
                    typer.echo(f"Attempt {attempt}/{attempts}: {exc}")
                    time.sleep(0.5)
            else:
                raise typer.Exit(code=1)
    except FaceGateError as exc:
        typer.echo(f"Enrollment failed: {exc}", err=True)
        raise typer.Exit(code=2)
    finally:
        db.close()
    note = " (low quality, consider re-enrolling)" if res.low_quality else ""
    typer.echo(f"Enrolled {user_id} with quality {res.record.quality_score:.2f}{note}")


async def _verify(gate: FaceGate, user_id: str, check_type: str) -> SessionOutcome:
    verified = asyncio.Event()
    callbacks = SessionCallbacks(
        on_verified=lambda ct: (typer.echo(f"Verified {user_id} for {ct}"), verified.set()),
        on_failure=lambda err: typer.echo(f"Verification failed: {err}", err=True),
        on_feedback=typer.echo,
    )
    session = gate.open_verification(user_id, check_type, callbacks)

    def interrupt() -> None:
        session.stop()
        verified.set()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, interrupt)
    except (NotImplementedError, RuntimeError):
        pass
    outcome = await session.run()
    if outcome == SessionOutcome.VERIFIED:
        # on_verified arrives after the settle delay
        await verified.wait()
    return outcome


@app.command()
def verify(
    user_id: str,
    check_type: str = typer.Option("IN", help="Check type reported on success, e.g. IN or OUT."),
    config: Optional[str] = typer.Option(None, help="Path to a YAML config file."),
):
    """Run a liveness-gated verification for USER_ID against the camera."""
    cfg = _config(config)
    db = Database(cfg.paths.db_path)
    gate = FaceGate(cfg, db)
    try:
        outcome = asyncio.run(_verify(gate, user_id, check_type))
    except CallerError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2)
    except SessionFatalError:
        # already printed by on_failure
        raise typer.Exit(code=2)
    finally:
        db.close()
    if outcome != SessionOutcome.VERIFIED:
        raise typer.Exit(code=1)


@app.command()
def api(host: str = "127.0.0.1", port: int = 8000, config: Optional[str] = None):
    """Run the FastAPI service."""
    from facegate.api.server import create_app

    cfg = _config(config)
    uvicorn.run(create_app(cfg), host=host, port=port, reload=False, log_config=None)


@app.command()
def export(csv_path: str = "enrollments.csv", config: Optional[str] = None):
    """Export enrollment metadata (never embeddings) to CSV."""
    cfg = _config(config)
    db = Database(cfg.paths.db_path)
    rows = db.list_enrollments()
    db.close()
    fields = ["id", "user_id", "label", "dim", "model_tag", "quality", "captured_at", "created_at"]
    with open(csv_path, "w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow(fields)
        for r in rows:
            w.writerow([r[k] for k in fields])
    typer.echo(f"Exported {len(rows)} rows to {csv_path}")


if __name__ == "__main__":
    app()
