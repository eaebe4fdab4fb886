"""
HoldingManager — Approval Workflow & Alerts
Scheduler Service.

Thread-based job runner for the periodic alert scan.

Architecture:
    - Job functions register themselves with ``@register_job(name)``
    - Each registered job gets a ScheduledJob row (interval + last run summary)
    - ``run_job`` executes one job inside the app context and records the run
    - ``start`` launches a daemon thread that ticks every
      ``ALERT_SCAN_INTERVAL_SECONDS`` and runs the jobs that are due;
      0 leaves it off (manual trigger only)

Several processes may run the loop at once; jobs are safe to overlap.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable

from flask import Flask
from sqlalchemy.exc import SQLAlchemyError

from holdingmanager.models import db
from holdingmanager.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("alert_scan")
        def alert_scan(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return dict(_job_registry)


class SchedulerService:
    """
    Manages job registration, persistence, and execution.
    Jobs are executed within the Flask app context.
    """

    _app: Flask | None = None
    _thread: threading.Thread | None = None
    _stop: threading.Event | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        # Importing the module registers its jobs.
        from holdingmanager.services import scheduled_jobs  # noqa: F401

        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[str]:
        """Create or refresh the ScheduledJob row of every registered job.

        The interval follows ALERT_SCAN_INTERVAL_SECONDS on every start.
        Returns the names of the jobs that were added.
        """
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            interval = int(cls._app.config.get("ALERT_SCAN_INTERVAL_SECONDS", 0) or 0)
            for name, fn in _job_registry.items():
                job = ScheduledJob.query.filter_by(job_name=name).first()
                if job is None:
                    job = ScheduledJob(
                        job_name=name,
                        description=(fn.__doc__ or name).strip().splitlines()[0],
                        is_enabled=True,
                    )
                    db.session.add(job)
                    created.append(name)
                job.interval_seconds = interval
            db.session.commit()
            if created:
                logger.info("Registered %d scheduled job(s): %s", len(created), ", ".join(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """Run one job now, inside a fresh app context, and record the outcome.

        Never raises for a failing job; the failure is in ``status``/``error``.
        Unknown names come back with status ``error``.
        """
        fn = _job_registry.get(job_name)
        if fn is None:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if cls._app is None:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        outcome = {"job_name": job_name, "status": "success", "result": None, "error": None}
        started = time.perf_counter()
        with cls._app.app_context():
            try:
                outcome["result"] = fn(cls._app)
            except Exception as exc:
                db.session.rollback()
                outcome.update(status="failed", error=str(exc))
                logger.exception("Job %s failed", job_name, extra={"job_name": job_name})
        outcome["duration_ms"] = int((time.perf_counter() - started) * 1000)

        cls._record_run(outcome)
        logger.info(
            "Job %s %s in %dms", job_name, outcome["status"], outcome["duration_ms"],
            extra={"job_name": job_name, "duration_ms": outcome["duration_ms"]},
        )
        return outcome

    @classmethod
    def _record_run(cls, outcome: dict) -> None:
        result = outcome["result"]
        with cls._app.app_context():
            job = ScheduledJob.query.filter_by(job_name=outcome["job_name"]).first()
            if job is None:
                return
            job.record_run(
                status=outcome["status"],
                duration_ms=outcome["duration_ms"],
                result=result if isinstance(result, dict) or result is None else {"output": str(result)},
                error=outcome["error"],
            )
            try:
                db.session.commit()
            except SQLAlchemyError:
                db.session.rollback()
                logger.warning("Could not record run of %s", outcome["job_name"],
                               exc_info=True, extra={"job_name": outcome["job_name"]})

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """Registered jobs with their persisted row (None until registered)."""
        rows = {j.job_name: j for j in ScheduledJob.query.all()}
        return [
            {"job_name": name, "registered": True,
             "db_record": rows[name].to_dict() if name in rows else None}
            for name in _job_registry
        ]

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        db.session.commit()
        return job_record.to_dict()

    # ── Background loop ──────────────────────────────────────────────────

    @classmethod
    def start(cls) -> bool:
        """Start the interval loop if configured. Returns True when started."""
        if not cls._app or (cls._thread and cls._thread.is_alive()):
            return False
        interval = int(cls._app.config.get("ALERT_SCAN_INTERVAL_SECONDS", 0) or 0)
        if interval <= 0:
            return False

        cls._stop = threading.Event()
        cls._thread = threading.Thread(
            target=cls._loop, args=(interval, cls._stop), name="scheduler", daemon=True,
        )
        cls._thread.start()
        logger.info("Scheduler loop started (every %ds)", interval)
        return True

    @classmethod
    def stop(cls) -> None:
        if cls._stop:
            cls._stop.set()
        if cls._thread:
            cls._thread.join(timeout=5)
        cls._thread = None

    @classmethod
    def _loop(cls, tick: int, stop: threading.Event) -> None:
        while not stop.wait(tick):
            now = datetime.now(timezone.utc)
            for name in list(_job_registry):
                with cls._app.app_context():
                    record = ScheduledJob.query.filter_by(job_name=name).first()
                    due = record is None or record.is_due(now)
                if due:
                    cls.run_job(name)
