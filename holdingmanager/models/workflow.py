"""
HoldingManager — Approval Workflow & Alerts
Workflow domain models.

Models:
    - WorkflowInstance: one approval request moving through its configured steps
    - ApprovalRecord: append-only ledger entry, one per (instance, step ordinal)
    - WorkflowNumeroSequence: monotonic numero suffix per (prefix, year)
"""

from datetime import datetime, timezone

from holdingmanager.models import db


# ── Constants ────────────────────────────────────────────────────────────────

WORKFLOW_STATUSES = ("draft", "in_progress", "approved", "rejected", "cancelled")
TERMINAL_STATUSES = frozenset({"approved", "rejected", "cancelled"})
DECISIONS = frozenset({"approved", "rejected"})
PRIORITIES = ("low", "normal", "high", "urgent")

# Status preconditions per lifecycle action. "to" is None when the target
# depends on the step position (approve) and is resolved by the service.
WORKFLOW_TRANSITIONS = {
    "submit": {"from": ["draft"], "to": "in_progress"},
    "approve": {"from": ["in_progress"], "to": None},
    "reject": {"from": ["in_progress"], "to": "rejected"},
    "cancel": {"from": ["draft", "in_progress"], "to": "cancelled"},
}


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class WorkflowInstance(db.Model):
    """
    A concrete approval request.

    Mutated only through the lifecycle service; ``current_step`` stays 0
    until submission and then tracks the ordinal awaiting a decision.
    """

    __tablename__ = "workflow_instances"

    id = db.Column(db.Integer, primary_key=True)
    numero = db.Column(db.String(32), unique=True, nullable=False,
                       comment="Human-readable code: {PREFIX}-{YEAR}-{NNNN}")
    type = db.Column(db.String(30), nullable=False, index=True,
                     comment="Workflow type key from the registry: achat, conge, ...")
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    data = db.Column(db.JSON, default=dict, comment="Type-specific fields")
    amount = db.Column(db.Numeric(14, 2), nullable=True)
    priority = db.Column(db.String(20), default="normal")
    subsidiary_id = db.Column(db.Integer, nullable=True, index=True)

    status = db.Column(db.String(20), nullable=False, default="draft", index=True)
    current_step = db.Column(db.Integer, nullable=False, default=0)
    submitter_id = db.Column(db.String(64), nullable=False, index=True)

    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    finalized_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "numero": self.numero,
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "data": self.data or {},
            "amount": float(self.amount) if self.amount is not None else None,
            "priority": self.priority,
            "subsidiary_id": self.subsidiary_id,
            "status": self.status,
            "current_step": self.current_step,
            "submitter_id": self.submitter_id,
            "submitted_at": _iso(self.submitted_at),
            "finalized_at": _iso(self.finalized_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<WorkflowInstance {self.numero} [{self.status} step={self.current_step}]>"


class ApprovalRecord(db.Model):
    """
    Ledger entry for a single step decision.

    Business rules:
    - Records are never updated or deleted.
    - At most one record per (instance_id, step_ordinal); the unique
      constraint is what settles two approvers racing on the same step.
    """

    __tablename__ = "approval_records"
    __table_args__ = (
        db.UniqueConstraint("instance_id", "step_ordinal", name="uq_approval_records_instance_step"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("workflow_instances.id"), nullable=False, index=True,
    )
    step_ordinal = db.Column(db.Integer, nullable=False)
    approver_id = db.Column(db.String(64), nullable=False)
    decision = db.Column(db.String(20), nullable=False, comment="approved | rejected")
    comment = db.Column(db.Text, nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "step_ordinal": self.step_ordinal,
            "approver_id": self.approver_id,
            "decision": self.decision,
            "comment": self.comment,
            "decided_at": _iso(self.decided_at),
        }

    def __repr__(self):
        return f"<ApprovalRecord instance={self.instance_id} step={self.step_ordinal} {self.decision}>"


class WorkflowNumeroSequence(db.Model):
    """Last issued numero suffix for one (prefix, year) namespace."""

    __tablename__ = "workflow_numero_sequences"
    __table_args__ = (
        db.UniqueConstraint("prefix", "year", name="uq_numero_sequences_prefix_year"),
    )

    id = db.Column(db.Integer, primary_key=True)
    prefix = db.Column(db.String(10), nullable=False)
    year = db.Column(db.Integer, nullable=False)
    last_value = db.Column(db.Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<WorkflowNumeroSequence {self.prefix}-{self.year}={self.last_value}>"
