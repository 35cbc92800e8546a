# arcards/services/compile_queue.py
"""
Runs compilation attempts off the request thread.

Each job pushes its own app context. The queue provides no mutual exclusion:
single-flight is enforced by the conditional updates in compile_service, so
several processes can each run their own queue.
"""
from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

log = logging.getLogger(__name__)


class CompileQueue:
    EXTENSION_KEY = "arcards-compile-queue"

    def __init__(self, app=None):
        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> None:
        mode = (app.config.get("COMPILE_EXECUTOR") or "thread").lower()
        if mode not in ("thread", "sync"):
            raise ValueError(f"Unknown COMPILE_EXECUTOR: {mode!r}")
        executor = None
        if mode == "thread":
            executor = ThreadPoolExecutor(
                max_workers=int(app.config.get("COMPILE_WORKERS", 4)),
                thread_name_prefix="arcards-compile",
            )
        app.extensions[self.EXTENSION_KEY] = {"app": app, "mode": mode, "executor": executor}

    def _state(self):
        from flask import current_app
        return current_app.extensions[self.EXTENSION_KEY]

    def enqueue(self, asset_id: str, generation: int) -> Optional[Future]:
        state = self._state()
        app = state["app"]
        log.info("compile queued: asset=%s gen=%s mode=%s", asset_id, generation, state["mode"])
        if state["mode"] == "sync":
            _run(app, asset_id, generation)
            return None
        return state["executor"].submit(_run, app, asset_id, generation)


def _run(app, asset_id: str, generation: int) -> str:
    from .compile_service import compile_asset

    with app.app_context():
        try:
            return compile_asset(asset_id, generation)
        except Exception:
            # compile_asset records failures itself; this only guards the worker
            log.exception("compile worker crashed: asset=%s gen=%s", asset_id, generation)
            return "crashed"
