"""Background sweeps that resume timed waits and expire unanswered inputs."""
from __future__ import annotations

import threading
from datetime import datetime

from flask import Flask
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models.execution import WAITING, Execution
from ..utils.clock import utcnow
from .dispatcher import ExecutionDispatcher, get_dispatcher
from .engine import ExecutionEngine
from .pending import PendingInputManager


def resume_due_executions(
    now: datetime | None = None,
    engine: ExecutionEngine | None = None,
    dispatcher: ExecutionDispatcher | None = None,
) -> int:
    """Resume ``waiting`` executions whose ``next_run_at`` has passed."""

    now = now or utcnow()
    engine = engine or ExecutionEngine.from_app()
    dispatcher = dispatcher or get_dispatcher()

    due_ids = [
        row.id
        for row in Execution.query.filter(Execution.status == WAITING)
        .filter(Execution.next_run_at.isnot(None))
        .filter(Execution.next_run_at <= now)
        .order_by(Execution.next_run_at.asc())
        .all()
    ]

    resumed = 0
    for execution_id in due_ids:
        execution = db.session.get(Execution, execution_id)
        if execution is None:
            continue
        outcome = engine.resume(execution, WAITING, message="wait elapsed")
        if outcome is None:
            continue
        resumed += 1
        if execution.status == "running":
            dispatcher.submit(execution.id)
    return resumed


def run_scheduler_tick(app: Flask, now: datetime | None = None) -> tuple[int, int]:
    """Run one sweep of both timers. Returns ``(resumed, expired)``."""

    with app.app_context():
        now = now or utcnow()
        try:
            resumed = resume_due_executions(now)
            expired = PendingInputManager().expire_pending(now)
        except SQLAlchemyError:
            db.session.rollback()
            app.logger.exception("Scheduler tick failed")
            return 0, 0
        finally:
            db.session.remove()

    if resumed or expired:
        app.logger.info("scheduler resumed %s executions and expired %s inputs", resumed, expired)
    return resumed, expired


class SchedulerThread:
    """Runs :func:`run_scheduler_tick` on a fixed interval in a daemon thread."""

    def __init__(self, app: Flask, interval: float = 60.0) -> None:
        self.app = app
        self.interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="automation-scheduler", daemon=True)

    def start(self) -> None:
        if self._thread.is_alive():
            return
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                run_scheduler_tick(self.app)
            except Exception:
                self.app.logger.exception("Scheduler thread error")


_scheduler_instance: SchedulerThread | None = None
_scheduler_lock = threading.Lock()


def ensure_scheduler_started(app: Flask) -> SchedulerThread:
    """Ensure the scheduler thread is running for the given Flask app."""
    global _scheduler_instance
    with _scheduler_lock:
        if _scheduler_instance is None:
            _scheduler_instance = SchedulerThread(
                app, interval=float(app.config.get("SCHEDULER_INTERVAL_SECONDS", 60))
            )
            _scheduler_instance.start()
    return _scheduler_instance
