"""
Alert Generator — idempotent scan of time-sensitive entities.

Rules run in registration order, each in its own transaction. A rule that
fails is rolled back whole and reported in the summary; the remaining rules
still run. A rule that loses an insert race to a concurrent scan is rerun
once. Re-running over unchanged data creates nothing (dedup on unresolved
alerts per (type, linked_entity_type, linked_entity_id)).

Rules:
    invoice_overdue     open invoices past their due date
    invoice_due_soon    open invoices due within INVOICE_DUE_SOON_DAYS
    contract_expiring   active contracts ending within CONTRACT_EXPIRY_DAYS
    workflow_events     workflow events of the last WORKFLOW_ALERT_WINDOW_HOURS
                        whose alert was never created (backfill)

Usage:
    from holdingmanager.services.alert_generator import run_alert_scan

    summary = run_alert_scan()
    # {"created": {"invoice_overdue": 2, ...}, "errors": [], "total_created": 2}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable

from flask import current_app
from sqlalchemy.exc import IntegrityError

from holdingmanager.models import db
from holdingmanager.models.finance import OPEN_INVOICE_STATUSES, Contract, Invoice
from holdingmanager.models.workflow import ApprovalRecord, WorkflowInstance
from holdingmanager.services.alert_service import WORKFLOW_EVENT_ALERTS, AlertService
from holdingmanager.services.workflow_registry import get_registry
from holdingmanager.utils.helpers import format_eur

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanContext:
    today: date
    now: datetime
    due_soon_days: int = 7
    contract_expiry_days: int = 30
    workflow_window: timedelta = timedelta(hours=24)


_rules: list[tuple[str, Callable[[ScanContext], int]]] = []


def alert_rule(name: str):
    """Register a rule; it returns the number of alerts it created."""
    def decorator(fn):
        _rules.append((name, fn))
        return fn
    return decorator


def registered_rules() -> list[str]:
    return [name for name, _ in _rules]


# ── Severity thresholds ──────────────────────────────────────────────────

def overdue_severity(days_overdue: int) -> str:
    if days_overdue > 30:
        return "critical"
    if days_overdue > 14:
        return "high"
    return "medium"


def due_soon_severity(days_left: int) -> str:
    return "high" if days_left <= 3 else "medium"


def contract_expiry_severity(days_left: int) -> str:
    return "high" if days_left <= 7 else "medium"


# ── Rules ────────────────────────────────────────────────────────────────

@alert_rule("invoice_overdue")
def invoice_overdue(ctx: ScanContext) -> int:
    invoices = (
        Invoice.query
        .filter(Invoice.status.in_(OPEN_INVOICE_STATUSES), Invoice.due_date < ctx.today)
        .order_by(Invoice.due_date.asc())
        .all()
    )
    created = 0
    for invoice in invoices:
        days = (ctx.today - invoice.due_date).days
        alert = AlertService.create_if_absent(
            type="invoice_overdue",
            severity=overdue_severity(days),
            title=f"Facture {invoice.numero} en retard",
            message=(
                f"La facture {invoice.numero} est en retard de {days} jour(s). "
                f"Montant: {format_eur(invoice.total_amount)}"
            ),
            linked_entity_type="invoice",
            linked_entity_id=invoice.id,
            due_date=invoice.due_date,
            savepoint=False,
        )
        if alert:
            created += 1
    return created


@alert_rule("invoice_due_soon")
def invoice_due_soon(ctx: ScanContext) -> int:
    horizon = ctx.today + timedelta(days=ctx.due_soon_days)
    invoices = (
        Invoice.query
        .filter(
            Invoice.status.in_(OPEN_INVOICE_STATUSES),
            Invoice.due_date >= ctx.today,
            Invoice.due_date <= horizon,
        )
        .order_by(Invoice.due_date.asc())
        .all()
    )
    created = 0
    for invoice in invoices:
        days = (invoice.due_date - ctx.today).days
        alert = AlertService.create_if_absent(
            type="invoice_due_soon",
            severity=due_soon_severity(days),
            title=f"Échéance facture {invoice.numero}",
            message=(
                f"La facture {invoice.numero} arrive à échéance dans {days} jour(s). "
                f"Montant: {format_eur(invoice.total_amount)}"
            ),
            linked_entity_type="invoice",
            linked_entity_id=invoice.id,
            due_date=invoice.due_date,
            savepoint=False,
        )
        if alert:
            created += 1
    return created


@alert_rule("contract_expiring")
def contract_expiring(ctx: ScanContext) -> int:
    horizon = ctx.today + timedelta(days=ctx.contract_expiry_days)
    contracts = (
        Contract.query
        .filter(
            Contract.status == "active",
            Contract.end_date >= ctx.today,
            Contract.end_date <= horizon,
        )
        .order_by(Contract.end_date.asc())
        .all()
    )
    created = 0
    for contract in contracts:
        days = (contract.end_date - ctx.today).days
        renewal = " (reconduction auto)" if contract.auto_renew else ""
        alert = AlertService.create_if_absent(
            type="contract_expiring",
            severity=contract_expiry_severity(days),
            title=f"Contrat {contract.numero} expire bientôt",
            message=(
                f'Le contrat "{contract.title}" expire dans {days} jour(s){renewal}. '
                f"Valeur: {format_eur(contract.amount)}"
            ),
            linked_entity_type="contract",
            linked_entity_id=contract.id,
            due_date=contract.end_date,
            savepoint=False,
        )
        if alert:
            created += 1
    return created


def _backfill(instance, event, *, record=None, definition=None) -> int:
    alert_type, _ = WORKFLOW_EVENT_ALERTS[event]
    if event == "step_approved":
        key = ("approval_record", record.id)
    else:
        key = ("workflow_instance", instance.id)
    if AlertService.exists_any(alert_type, *key):
        return 0
    alert = AlertService.notify_workflow_event(
        instance, event, record=record, definition=definition, savepoint=False,
    )
    return 1 if alert else 0


@alert_rule("workflow_events")
def workflow_events(ctx: ScanContext) -> int:
    since = ctx.now - ctx.workflow_window
    registry = get_registry()
    created = 0

    submitted = WorkflowInstance.query.filter(WorkflowInstance.submitted_at >= since).all()
    for instance in submitted:
        created += _backfill(instance, "submitted")

    finalized = WorkflowInstance.query.filter(
        WorkflowInstance.status.in_(("approved", "rejected")),
        WorkflowInstance.finalized_at >= since,
    ).all()
    for instance in finalized:
        definition = registry.definition_for(instance.type) if instance.type in registry else None
        created += _backfill(instance, instance.status, definition=definition)

    decisions = (
        db.session.query(ApprovalRecord, WorkflowInstance)
        .join(WorkflowInstance, ApprovalRecord.instance_id == WorkflowInstance.id)
        .filter(ApprovalRecord.decision == "approved", ApprovalRecord.decided_at >= since)
        .all()
    )
    for record, instance in decisions:
        if instance.type not in registry:
            continue
        definition = registry.definition_for(instance.type)
        # Approval of the last step is reported as "approved".
        if definition.is_last(record.step_ordinal):
            continue
        created += _backfill(instance, "step_approved", record=record, definition=definition)

    return created


# ── Runner ───────────────────────────────────────────────────────────────

def _run_rule(name: str, rule, ctx: ScanContext) -> int:
    """Run ``rule`` in one transaction; rerun it once after a lost insert race."""
    for attempt in (1, 2):
        try:
            count = rule(ctx)
            db.session.commit()
            return count
        except IntegrityError:
            db.session.rollback()
            if attempt == 2:
                raise
            logger.info("Alert rule %s raced a concurrent scan, rerunning", name, extra={"rule": name})


def run_alert_scan(*, today: date | None = None, now: datetime | None = None) -> dict:
    """Run every rule once and return a per-rule summary.

    Never raises for a rule failure; errors are collected in ``errors``.
    """
    config = current_app.config
    now = now or datetime.now(timezone.utc)
    ctx = ScanContext(
        today=today or now.date(),
        now=now,
        due_soon_days=config.get("INVOICE_DUE_SOON_DAYS", 7),
        contract_expiry_days=config.get("CONTRACT_EXPIRY_DAYS", 30),
        workflow_window=timedelta(hours=config.get("WORKFLOW_ALERT_WINDOW_HOURS", 24)),
    )

    summary = {"created": {}, "errors": []}
    for name, rule in _rules:
        try:
            count = _run_rule(name, rule, ctx)
        except Exception as exc:
            db.session.rollback()
            logger.exception("Alert rule %s failed", name, extra={"rule": name})
            summary["created"][name] = 0
            summary["errors"].append({"rule": name, "error": str(exc)})
            continue
        summary["created"][name] = count
        if count:
            logger.info("Alert rule %s created %d alert(s)", name, count, extra={"rule": name})

    summary["total_created"] = sum(summary["created"].values())
    return summary
