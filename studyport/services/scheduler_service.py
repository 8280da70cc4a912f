"""
Study Import/Export Service
Scheduler Service.

Lightweight background job runner: a registry of named job functions plus a
daemon thread that runs every registered job on a fixed interval. Jobs can
also be triggered by hand (CLI, tests).

Architecture:
    - register_job: decorator adding a function to the registry
    - SchedulerService.run_job: executes one job inside the Flask app context
    - SchedulerService.start: interval thread (skipped when the interval is 0)
    - SchedulerService.stop: ends the thread; registered with atexit by start
"""

from __future__ import annotations

import atexit
import logging
import threading
import time
from typing import Callable

from flask import Flask

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("staging_sweep")
        def sweep_staging(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Interval scheduler.

    Jobs are executed within Flask app context. A failing job is logged and
    does not stop the loop.
    """

    _app: Flask | None = None
    _thread: threading.Thread | None = None
    _stop: threading.Event | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Bind the scheduler to ``app`` and start the interval thread."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))
        interval = app.config.get("STAGING_SWEEP_INTERVAL_SECONDS", 0)
        if interval and interval > 0:
            cls.start(interval)

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with cls._app.app_context():
                result = fn(cls._app)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc)

        duration_ms = int((time.monotonic() - start) * 1000)
        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def start(cls, interval_seconds: int) -> None:
        """Run every registered job each ``interval_seconds`` in a daemon thread."""
        if cls._thread is not None and cls._thread.is_alive():
            return
        cls._stop = threading.Event()
        stop = cls._stop

        def _loop():
            while not stop.wait(interval_seconds):
                for name in list(_job_registry):
                    cls.run_job(name)

        cls._thread = threading.Thread(target=_loop, name="studyport-scheduler", daemon=True)
        cls._thread.start()
        atexit.register(cls.stop)
        logger.info("Scheduler thread started (every %ss)", interval_seconds)

    @classmethod
    def stop(cls, timeout: float = 5.0) -> None:
        """Signal the interval thread and wait for a running pass to end."""
        if cls._stop is not None:
            cls._stop.set()
        thread, cls._thread = cls._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            logger.info("Scheduler thread stopped")
