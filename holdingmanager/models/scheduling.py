"""
HoldingManager — Approval Workflow & Alerts
Scheduling model.

Models:
    - ScheduledJob: one row per registered periodic job (alert_scan), holding
      its interval, enabled flag and a summary of the latest run
"""

from datetime import datetime, timedelta, timezone

from holdingmanager.models import db

JOB_RUN_STATUSES = ("success", "failed")


def _aware(value):
    # SQLite hands DateTime(timezone=True) back naive; values are stored in UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ScheduledJob(db.Model):
    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    interval_seconds = db.Column(db.Integer, nullable=False, default=0,
                                 comment="0 = manual trigger only")
    is_enabled = db.Column(db.Boolean, nullable=False, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True, comment="success | failed")
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True, comment="Scan summary")
    run_count = db.Column(db.Integer, nullable=False, default=0)
    error_count = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def is_due(self, now: datetime) -> bool:
        """Enabled, interval-driven, and the interval has elapsed since the last run."""
        if not self.is_enabled or not self.interval_seconds:
            return False
        last = _aware(self.last_run_at)
        return last is None or now - last >= timedelta(seconds=self.interval_seconds)

    def record_run(self, *, status, duration_ms, result=None, error=None):
        self.last_run_at = datetime.now(timezone.utc)
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = error
        else:
            self.last_error = None

    def to_dict(self):
        last = _aware(self.last_run_at)
        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "interval_seconds": self.interval_seconds,
            "is_enabled": self.is_enabled,
            "last_run_at": last.isoformat() if last else None,
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} every={self.interval_seconds}s enabled={self.is_enabled}>"
