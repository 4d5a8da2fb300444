"""
Matasa incident pipeline
Scheduler Service.

Lightweight job registry and runner. A cron/worker process (or the admin
API) triggers jobs by name; every run executes inside the Flask app
context and is recorded on its ScheduledJob row.

Jobs must be idempotent: re-running one on already-processed records must
not double-escalate or double-notify.
"""

from __future__ import annotations

import logging
import time
from contextlib import nullcontext
from typing import Callable

from flask import Flask, current_app, has_app_context
from sqlalchemy import select

from matasa.models import db
from matasa.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}
_job_intervals: dict[str, int] = {}


def register_job(name: str, *, interval_minutes: int | None = None):
    """Decorator to register a job function.

    Usage:
        @register_job("alert_expiry", interval_minutes=5)
        def expire_alerts(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        if interval_minutes:
            _job_intervals[name] = interval_minutes
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


def _job_record(job_name: str) -> ScheduledJob | None:
    return db.session.execute(
        select(ScheduledJob).where(ScheduledJob.job_name == job_name)
    ).scalar_one_or_none()


class SchedulerService:
    """Job execution and bookkeeping, bound to one Flask app."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def _context(cls):
        """Reuse an active context of the same app, otherwise push one."""
        if has_app_context() and current_app._get_current_object() is cls._app:
            return nullcontext()
        return cls._app.app_context()

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create missing ScheduledJob rows (call inside an app context)."""
        created = []
        for name, fn in _job_registry.items():
            if _job_record(name) is None:
                job = ScheduledJob(
                    job_name=name,
                    description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                    interval_minutes=_job_intervals.get(name),
                    is_enabled=True,
                )
                db.session.add(job)
                created.append(job)
        if created:
            db.session.commit()
            logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        with cls._context():
            try:
                result = fn(cls._app)
            except Exception as exc:
                status = "failed"
                error = str(exc)
                db.session.rollback()
                logger.exception("Job %s failed: %s", job_name, exc)

            duration_ms = int((time.monotonic() - start) * 1000)

            cls.ensure_jobs_registered()
            job_record = _job_record(job_name)
            if job_record:
                job_record.record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else {"output": result},
                    error=error,
                )
                db.session.commit()

        logger.info("Job %s finished: %s (%dms)", job_name, status, duration_ms,
                    extra={"event_type": "job_run", "duration_ms": duration_ms})
        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            record = _job_record(name)
            jobs.append({
                "job_name": name,
                "interval_minutes": _job_intervals.get(name),
                "db_record": record.to_dict() if record else None,
            })
        return jobs
