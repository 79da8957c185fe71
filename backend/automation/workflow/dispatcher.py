"""Fire-and-forget execution dispatch onto a worker pool."""
from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor

from flask import Flask, current_app, has_app_context

from ..extensions import db
from .engine import ExecutionEngine

_EXTENSION_KEY = "automation_dispatcher"


class ExecutionDispatcher:
    """Runs executions off the caller's request path.

    With ``inline=True`` the drive loop runs synchronously in the caller's
    application context, which keeps tests deterministic.
    """

    def __init__(self, app: Flask, workers: int = 4, inline: bool = False) -> None:
        self.app = app
        self.inline = inline
        self._executor: ThreadPoolExecutor | None = None
        if not inline:
            self._executor = ThreadPoolExecutor(
                max_workers=max(1, workers), thread_name_prefix="automation-exec"
            )

    def submit(self, execution_id: int) -> Future | None:
        if self._executor is None:
            self._run(execution_id)
            return None
        return self._executor.submit(self._run, execution_id)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    def _run(self, execution_id: int) -> None:
        if self.inline and has_app_context():
            self._drive(execution_id)
            return
        with self.app.app_context():
            self._drive(execution_id)

    def _drive(self, execution_id: int) -> None:
        try:
            ExecutionEngine.from_app(self.app).run(execution_id)
        except Exception:
            db.session.rollback()
            self.app.logger.exception("execution %s crashed", execution_id)


def get_dispatcher(app: Flask | None = None) -> ExecutionDispatcher:
    app = app or current_app._get_current_object()  # type: ignore[attr-defined]
    dispatcher = app.extensions.get(_EXTENSION_KEY)
    if dispatcher is None:
        dispatcher = ExecutionDispatcher(
            app,
            workers=int(app.config.get("EXECUTION_WORKERS", 4)),
            inline=bool(app.config.get("EXECUTE_INLINE", False)),
        )
        app.extensions[_EXTENSION_KEY] = dispatcher
    return dispatcher
