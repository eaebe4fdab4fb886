"""
Approval Ledger.

Append-only record of step decisions. A record is flushed inside the
caller's transaction *before* the lifecycle manager touches instance state,
and both commit together.

Two guards protect (instance_id, step_ordinal):
    1. application pre-checks (sequence, existing record)
    2. the ``uq_approval_records_instance_step`` unique constraint, which
       settles concurrent writers that both passed the pre-checks

Usage:
    from holdingmanager.services.approval_ledger import ApprovalLedger

    record = ApprovalLedger.record(instance, instance.current_step, "u-7", "approved")
    history = ApprovalLedger.list_for(instance.id)
"""

import logging

from sqlalchemy.exc import IntegrityError

from holdingmanager.core.exceptions import (
    DuplicateStepDecisionError,
    InvalidPayloadError,
    StepOutOfSequenceError,
)
from holdingmanager.models import db
from holdingmanager.models.workflow import DECISIONS, ApprovalRecord

logger = logging.getLogger(__name__)


class ApprovalLedger:
    """Static helpers over the approval_records table."""

    @staticmethod
    def record(instance, step_ordinal, approver_id, decision, comment=None):
        """Append one decision for ``instance`` at ``step_ordinal``.

        Does not commit; the caller owns the transaction and must roll it
        back on any raised error.

        Raises:
            InvalidPayloadError: Unknown decision value.
            StepOutOfSequenceError: ``step_ordinal`` is not the current step.
            DuplicateStepDecisionError: The step already has a decision.
        """
        if decision not in DECISIONS:
            raise InvalidPayloadError(
                f"Invalid decision: {decision}",
                details={"decision": f"must be one of {sorted(DECISIONS)}"},
            )
        if step_ordinal != instance.current_step:
            raise StepOutOfSequenceError(instance.id, step_ordinal, instance.current_step)

        if ApprovalLedger.find(instance.id, step_ordinal) is not None:
            raise DuplicateStepDecisionError(instance.id, step_ordinal)

        # A failed flush expires `instance`; keep what the error path needs.
        instance_id = instance.id
        record = ApprovalRecord(
            instance_id=instance_id,
            step_ordinal=step_ordinal,
            approver_id=approver_id,
            decision=decision,
            comment=comment or None,
        )
        # No savepoint: a duplicate aborts the whole decision and the
        # lifecycle manager rolls the transaction back.
        db.session.add(record)
        try:
            db.session.flush()
        except IntegrityError:
            logger.info(
                "Lost race on step decision",
                extra={"instance_id": instance_id, "step_ordinal": step_ordinal},
            )
            raise DuplicateStepDecisionError(instance_id, step_ordinal) from None

        logger.info(
            "Step %s of %s %s by %s", step_ordinal, instance.numero, decision, approver_id,
            extra={"instance_id": instance.id, "numero": instance.numero},
        )
        return record

    @staticmethod
    def find(instance_id, step_ordinal):
        return ApprovalRecord.query.filter_by(
            instance_id=instance_id, step_ordinal=step_ordinal,
        ).first()

    @staticmethod
    def list_for(instance_id):
        """All decisions for an instance, in step order."""
        return (
            ApprovalRecord.query
            .filter_by(instance_id=instance_id)
            .order_by(ApprovalRecord.step_ordinal.asc())
            .all()
        )
