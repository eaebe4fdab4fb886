"""
HoldingManager — Approval Workflow & Alerts
Alert domain model.

Models:
    - Alert: severity-graded notification tied to a time-sensitive entity
      or a workflow event, with read / resolved tracking
"""

from datetime import datetime, timezone

from sqlalchemy import text

from holdingmanager.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ALERT_TYPES = frozenset({
    "invoice_overdue",
    "invoice_due_soon",
    "contract_expiring",
    "workflow_submitted",
    "workflow_step_approved",
    "workflow_approved",
    "workflow_rejected",
    "other",
})
ALERT_SEVERITIES = ("low", "medium", "high", "critical")


class Alert(db.Model):
    """
    Dashboard alert.

    The core only inserts alerts; read/resolve are user actions.
    At most one *unresolved* alert may exist per
    (type, linked_entity_type, linked_entity_id), enforced by a partial
    unique index so concurrent scans cannot both insert.
    """

    __tablename__ = "alerts"
    __table_args__ = (
        db.Index(
            "uq_alerts_open_per_entity",
            "type", "linked_entity_type", "linked_entity_id",
            unique=True,
            sqlite_where=text("resolved = 0"),
            postgresql_where=text("resolved = false"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(40), nullable=False, index=True)
    severity = db.Column(db.String(20), nullable=False, default="medium")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")

    linked_entity_type = db.Column(db.String(40), nullable=True,
                                   comment="invoice | contract | workflow_instance | approval_record")
    linked_entity_id = db.Column(db.Integer, nullable=True)
    due_date = db.Column(db.Date, nullable=True)

    read = db.Column(db.Boolean, nullable=False, default=False)
    resolved = db.Column(db.Boolean, nullable=False, default=False, index=True)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.read = True
        self.read_at = datetime.now(timezone.utc)

    def mark_resolved(self):
        if not self.read:
            self.mark_read()
        self.resolved = True
        self.resolved_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity,
            "title": self.title,
            "message": self.message,
            "linked_entity_type": self.linked_entity_type,
            "linked_entity_id": self.linked_entity_id,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "read": self.read,
            "resolved": self.resolved,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Alert {self.id}: {self.type} [{self.severity}] {self.title[:40]}>"
