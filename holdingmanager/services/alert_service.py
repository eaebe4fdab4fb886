"""
Alert Service — deduplicated alert inserts and user read/resolve actions.

Dedup key: (type, linked_entity_type, linked_entity_id) among *unresolved*
alerts. The pre-check avoids the common case; the partial unique index
``uq_alerts_open_per_entity`` settles concurrent inserts, in which case the
loser's savepoint is rolled back and nothing is created.

Usage:
    from holdingmanager.services.alert_service import AlertService

    alert = AlertService.create_if_absent(
        type="invoice_overdue", severity="high", title="...", message="...",
        linked_entity_type="invoice", linked_entity_id=12,
    )
    AlertService.notify_workflow_event(instance, "submitted")
"""

import logging

from sqlalchemy.exc import IntegrityError

from holdingmanager.core.exceptions import NotFoundError, ValidationError
from holdingmanager.models import db
from holdingmanager.models.alert import ALERT_SEVERITIES, ALERT_TYPES, Alert
from holdingmanager.utils.helpers import format_eur

logger = logging.getLogger(__name__)

# event → (alert type, severity)
WORKFLOW_EVENT_ALERTS = {
    "submitted": ("workflow_submitted", "medium"),
    "step_approved": ("workflow_step_approved", "medium"),
    "approved": ("workflow_approved", "low"),
    "rejected": ("workflow_rejected", "high"),
}


def _workflow_event_text(instance, event, record=None, definition=None):
    label = definition.name if definition else instance.type
    amount = f" ({format_eur(instance.amount)})" if instance.amount is not None else ""
    if event == "submitted":
        return (
            f"Demande {instance.numero} soumise",
            f'La demande "{instance.title}"{amount} a été soumise par '
            f"{instance.submitter_id} et attend votre approbation.",
        )
    if event == "step_approved":
        step_name = ""
        if definition is not None and record is not None:
            step_name = f" ({definition.step(record.step_ordinal).name})"
        return (
            f"Demande {instance.numero}: étape {record.step_ordinal} validée",
            f'L\'étape {record.step_ordinal}{step_name} de la demande "{instance.title}" '
            f"a été validée par {record.approver_id}.",
        )
    if event == "approved":
        return (
            f"{label} {instance.numero} approuvée",
            f'La demande "{instance.title}"{amount} a été approuvée.',
        )
    return (
        f"{label} {instance.numero} rejetée",
        f'La demande "{instance.title}" a été rejetée.',
    )


class AlertService:
    """Static helpers over the alerts table."""

    @staticmethod
    def find_open(type, linked_entity_type, linked_entity_id):
        return Alert.query.filter_by(
            type=type,
            linked_entity_type=linked_entity_type,
            linked_entity_id=linked_entity_id,
            resolved=False,
        ).first()

    @staticmethod
    def exists_any(type, linked_entity_type, linked_entity_id):
        """True if an alert was ever created for the key, resolved or not."""
        return db.session.query(
            Alert.query.filter_by(
                type=type,
                linked_entity_type=linked_entity_type,
                linked_entity_id=linked_entity_id,
            ).exists()
        ).scalar()

    @staticmethod
    def create_if_absent(*, type, severity, title, message="",
                         linked_entity_type=None, linked_entity_id=None, due_date=None,
                         savepoint=True):
        """Insert an alert unless an unresolved one exists for the same key.

        Does not commit. Returns the new Alert, or None when deduplicated.

        With ``savepoint=False`` the insert joins the caller's transaction
        and a concurrent duplicate raises IntegrityError to the caller. The
        alert scan uses this so a failed rule leaves nothing behind; on
        SQLite a savepoint opened outside a transaction commits on release.
        """
        if type not in ALERT_TYPES:
            raise ValidationError(f"Unknown alert type: {type}")
        if severity not in ALERT_SEVERITIES:
            raise ValidationError(f"Unknown alert severity: {severity}")

        if AlertService.find_open(type, linked_entity_type, linked_entity_id):
            return None

        alert = Alert(
            type=type,
            severity=severity,
            title=title[:300],
            message=message,
            linked_entity_type=linked_entity_type,
            linked_entity_id=linked_entity_id,
            due_date=due_date,
        )
        if not savepoint:
            db.session.add(alert)
            db.session.flush()
            return alert
        try:
            with db.session.begin_nested():
                db.session.add(alert)
        except IntegrityError:
            logger.debug(
                "Alert already created concurrently",
                extra={"alert_type": type, "entity_id": linked_entity_id},
            )
            return None
        return alert

    @staticmethod
    def notify_workflow_event(instance, event, *, record=None, definition=None, savepoint=True):
        """Alert for a workflow event. Does not commit.

        ``step_approved`` alerts link to the approval record, the others to
        the instance, so each event gets its own dedup key.
        """
        alert_type, severity = WORKFLOW_EVENT_ALERTS[event]
        title, message = _workflow_event_text(instance, event, record, definition)
        if event == "step_approved":
            entity_type, entity_id = "approval_record", record.id
        else:
            entity_type, entity_id = "workflow_instance", instance.id
        return AlertService.create_if_absent(
            type=alert_type,
            severity=severity,
            title=title,
            message=message,
            linked_entity_type=entity_type,
            linked_entity_id=entity_id,
            savepoint=savepoint,
        )

    # ── User actions ─────────────────────────────────────────────────────

    @staticmethod
    def list_alerts(*, unresolved_only=False, type=None, severity=None, unread_only=False):
        q = Alert.query
        if unresolved_only:
            q = q.filter(Alert.resolved.is_(False))
        if unread_only:
            q = q.filter(Alert.read.is_(False))
        if type:
            q = q.filter(Alert.type == type)
        if severity:
            q = q.filter(Alert.severity == severity)
        return q.order_by(Alert.created_at.desc(), Alert.id.desc())

    @staticmethod
    def unread_count():
        return Alert.query.filter(Alert.read.is_(False), Alert.resolved.is_(False)).count()

    @staticmethod
    def _get(alert_id):
        alert = db.session.get(Alert, alert_id)
        if alert is None:
            raise NotFoundError("Alert", alert_id)
        return alert

    @staticmethod
    def mark_read(alert_id):
        alert = AlertService._get(alert_id)
        if not alert.read:
            alert.mark_read()
            db.session.commit()
        return alert

    @staticmethod
    def resolve(alert_id):
        alert = AlertService._get(alert_id)
        if not alert.resolved:
            alert.mark_resolved()
            db.session.commit()
            logger.info(
                "Alert %s resolved", alert.id,
                extra={"alert_type": alert.type},
            )
        return alert
