"""
Workflow Instance Lifecycle Manager.

Owns WorkflowInstance state. Every state change goes through one of the
operations below, each taking the caller's identity as an explicit ``Actor``.

Transitions (WORKFLOW_TRANSITIONS):
    draft        --submit-->                 in_progress (current_step = 1)
    in_progress  --approve_step (not last)-> in_progress (current_step + 1)
    in_progress  --approve_step (last)-->    approved
    in_progress  --reject_step-->            rejected
    draft | in_progress --cancel-->          cancelled

Concurrency:
    - the instance row is read with SELECT ... FOR UPDATE where supported
    - the ledger insert is flushed before any state change
    - the state change is a compare-and-set on (id, status, current_step);
      zero rows updated means another writer got there first
    - a lost race rolls back, re-reads the instance and raises ConflictError
      with ``current_state`` set; it is never retried here

Workflow alerts are emitted after commit and are best-effort: a failure is
logged and the alert scan's ``workflow_events`` rule backfills it.

Usage:
    from holdingmanager.services.workflow_lifecycle import WorkflowLifecycleManager

    manager = WorkflowLifecycleManager(get_registry())
    instance = manager.create("conge", actor, {"title": "Congés août", "data": {...}})
    manager.submit(instance.id, actor)
    manager.approve_step(instance.id, responsable)
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from holdingmanager.core.exceptions import (
    ConflictError,
    DuplicateStepDecisionError,
    ForbiddenError,
    InstanceNotFoundError,
    InvalidPayloadError,
    InvalidTransitionError,
    StepOutOfSequenceError,
)
from holdingmanager.models import db
from holdingmanager.models.workflow import (
    PRIORITIES,
    WORKFLOW_TRANSITIONS,
    ApprovalRecord,
    WorkflowInstance,
    WorkflowNumeroSequence,
)
from holdingmanager.services.alert_service import AlertService
from holdingmanager.services.approval_ledger import ApprovalLedger
from holdingmanager.services.permission import can_manage, role_level, role_level_at_least
from holdingmanager.services.workflow_registry import get_registry
from holdingmanager.utils.helpers import parse_date, translate_store_errors

logger = logging.getLogger(__name__)

NUMERO_MAX_ATTEMPTS = 5
# Numeros keep a 4-digit counter; the 10 000th request of a year is refused.
NUMERO_MAX_VALUE = 9999


def _utcnow():
    return datetime.now(timezone.utc)


def validate_transition(instance: WorkflowInstance, action: str) -> dict:
    """Validate whether an action is valid for the instance's current status."""
    rule = WORKFLOW_TRANSITIONS.get(action)
    if not rule:
        return {"valid": False, "from": instance.status, "to": None,
                "reason": f"Unknown action: {action}"}

    if instance.status not in rule["from"]:
        return {"valid": False, "from": instance.status, "to": rule["to"],
                "reason": f"Cannot '{action}' from status '{instance.status}'"}

    return {"valid": True, "from": instance.status, "to": rule["to"], "reason": None}


def clean_payload(definition, payload: dict) -> tuple[dict, dict]:
    """Normalise a create payload against a workflow definition.

    Returns:
        (fields, errors): column values for WorkflowInstance, and a
        field → message dict that is empty when the payload is valid.
    """
    errors = {}
    payload = payload or {}

    title = payload.get("title") or ""
    if not isinstance(title, str):
        errors["title"] = "title must be a string"
        title = ""
    elif not title.strip():
        errors["title"] = "title is required"
    title = title.strip()

    data = payload.get("data") or {}
    if not isinstance(data, dict):
        errors["data"] = "data must be an object"
        data = {}

    for field in definition.required_fields:
        value = data.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors[field] = f"{field} is required"

    amount = payload.get("amount")
    if amount is not None and amount != "":
        try:
            amount = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            errors["amount"] = "amount must be a number"
            amount = None
        if amount is not None and not amount.is_finite():
            errors["amount"] = "amount must be a finite number"
            amount = None
    else:
        amount = None
    if definition.requires_amount and "amount" not in errors and (amount is None or amount <= 0):
        errors["amount"] = "amount must be a positive number"

    priority = payload.get("priority") or "normal"
    if priority not in PRIORITIES:
        errors["priority"] = f"priority must be one of {list(PRIORITIES)}"

    if data.get("date_debut") and data.get("date_fin"):
        start, end = parse_date(data["date_debut"]), parse_date(data["date_fin"])
        if start is None:
            errors["date_debut"] = "invalid date"
        if end is None:
            errors["date_fin"] = "invalid date"
        if start and end and end < start:
            errors["date_fin"] = "date_fin must not be before date_debut"

    fields = {
        "type": definition.type,
        "title": title,
        "description": payload.get("description"),
        "data": data,
        "amount": amount,
        "priority": priority,
        "subsidiary_id": payload.get("subsidiary_id"),
    }
    return fields, errors


def clean_comment(comment, *, required=False):
    """Strip a decision comment. Empty comes back as None."""
    if comment is not None and not isinstance(comment, str):
        raise InvalidPayloadError(
            "comment must be a string", details={"comment": "comment must be a string"},
        )
    comment = (comment or "").strip()
    if required and not comment:
        raise InvalidPayloadError(
            "A comment is required to reject a request",
            details={"comment": "comment is required"},
        )
    return comment or None


def _next_numero_value(prefix: str, year: int) -> int:
    """Bump and return the sequence for (prefix, year)."""
    seq = WorkflowNumeroSequence.query.filter_by(prefix=prefix, year=year)
    bump = {WorkflowNumeroSequence.last_value: WorkflowNumeroSequence.last_value + 1}

    if not seq.update(bump, synchronize_session=False):
        try:
            with db.session.begin_nested():
                db.session.add(WorkflowNumeroSequence(prefix=prefix, year=year, last_value=1))
            return 1
        except IntegrityError:
            # Another creator inserted the row first
            seq.update(bump, synchronize_session=False)

    return (
        db.session.query(WorkflowNumeroSequence.last_value)
        .filter_by(prefix=prefix, year=year)
        .scalar()
    )


class WorkflowLifecycleManager:
    """Applies lifecycle transitions to workflow instances."""

    def __init__(self, registry=None):
        self._registry = registry

    @property
    def registry(self):
        return self._registry if self._registry is not None else get_registry()

    # ── Queries ──────────────────────────────────────────────────────────

    @translate_store_errors
    def get(self, instance_id: int) -> WorkflowInstance:
        instance = db.session.get(WorkflowInstance, instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    @translate_store_errors
    def history(self, instance_id: int) -> list[ApprovalRecord]:
        self.get(instance_id)
        return ApprovalLedger.list_for(instance_id)

    def available_actions(self, instance: WorkflowInstance, actor=None) -> list[str]:
        """Actions valid from the instance's status, narrowed to ``actor`` if given."""
        actions = [a for a in WORKFLOW_TRANSITIONS if validate_transition(instance, a)["valid"]]
        if actor is None:
            return actions

        allowed = []
        for action in actions:
            if action in ("approve", "reject"):
                step = self.registry.definition_for(instance.type).step(instance.current_step)
                if role_level_at_least(actor.role, step.required_role):
                    allowed.append(action)
            elif can_manage(actor, instance.submitter_id):
                allowed.append(action)
        return allowed

    @translate_store_errors
    def pending_approvals(self, actor) -> list[WorkflowInstance]:
        """In-progress instances whose current step ``actor`` may decide.

        Excludes the actor's own submissions. Oldest submission first.
        """
        candidates = (
            WorkflowInstance.query
            .filter(
                WorkflowInstance.status == "in_progress",
                WorkflowInstance.submitter_id != actor.user_id,
            )
            .order_by(WorkflowInstance.submitted_at.asc(), WorkflowInstance.id.asc())
            .all()
        )
        level = role_level(actor.role)
        pending = []
        for instance in candidates:
            if instance.type not in self.registry:
                logger.warning(
                    "Skipping %s: type %s no longer registered", instance.numero, instance.type,
                    extra={"instance_id": instance.id},
                )
                continue
            step = self.registry.definition_for(instance.type).step(instance.current_step)
            if level >= role_level(step.required_role):
                pending.append(instance)
        return pending

    # ── Transitions ──────────────────────────────────────────────────────

    @translate_store_errors
    def create(self, workflow_type: str, submitter, payload: dict) -> WorkflowInstance:
        """Create a draft instance with a freshly allocated numero.

        Raises:
            UnknownWorkflowTypeError, InvalidPayloadError, ConflictError
        """
        definition = self.registry.definition_for(workflow_type)
        fields, errors = clean_payload(definition, payload)
        if errors:
            raise InvalidPayloadError("Invalid workflow payload", details=errors)

        year = _utcnow().year
        for attempt in range(1, NUMERO_MAX_ATTEMPTS + 1):
            value = _next_numero_value(definition.prefix, year)
            if value > NUMERO_MAX_VALUE:
                db.session.rollback()
                raise ConflictError(
                    f"Numero sequence {definition.prefix}-{year} is exhausted",
                    resource="WorkflowInstance",
                )
            instance = WorkflowInstance(
                numero=f"{definition.prefix}-{year}-{value:04d}",
                submitter_id=submitter.user_id,
                status="draft",
                current_step=0,
                **fields,
            )
            try:
                with db.session.begin_nested():
                    db.session.add(instance)
                break
            except IntegrityError:
                logger.warning(
                    "Numero %s already taken (attempt %d)", instance.numero, attempt,
                    extra={"numero": instance.numero},
                )
        else:
            db.session.rollback()
            raise ConflictError(
                f"Could not allocate a numero for {workflow_type}",
                resource="WorkflowInstance",
            )

        db.session.commit()
        logger.info(
            "Workflow %s created by %s", instance.numero, submitter.user_id,
            extra={"instance_id": instance.id, "numero": instance.numero},
        )
        return instance

    @translate_store_errors
    def submit(self, instance_id: int, actor) -> WorkflowInstance:
        instance = self._load_for_update(instance_id)
        self._require(instance, "submit")

        try:
            self._compare_and_set(instance, {
                "status": "in_progress",
                "current_step": 1,
                "submitted_at": _utcnow(),
            })
        except ConflictError as exc:
            self._raise_conflict(instance_id, exc)
        db.session.commit()
        db.session.refresh(instance)

        logger.info(
            "Workflow %s submitted by %s", instance.numero, actor.user_id,
            extra={"instance_id": instance.id, "numero": instance.numero},
        )
        self._notify(instance, "submitted")
        return instance

    @translate_store_errors
    def approve_step(self, instance_id: int, approver, comment: str | None = None,
                     step: int | None = None) -> WorkflowInstance:
        """Approve the current step; finalize to ``approved`` on the last one.

        ``step`` is the ordinal the approver was shown. When omitted the
        instance's current step is used.

        Raises:
            InstanceNotFoundError, InvalidTransitionError, ForbiddenError,
            DuplicateStepDecisionError, StepOutOfSequenceError, ConflictError
        """
        comment = clean_comment(comment)
        instance, definition = self._load_for_decision(instance_id, approver, "approve", step)
        decided_step = instance.current_step
        last = definition.is_last(decided_step)

        try:
            record = ApprovalLedger.record(
                instance, decided_step if step is None else step,
                approver.user_id, "approved", comment,
            )
            if last:
                values = {"status": "approved", "finalized_at": _utcnow()}
            else:
                values = {"current_step": decided_step + 1}
            self._compare_and_set(instance, values)
        except ConflictError as exc:
            self._raise_conflict(instance_id, exc)
        db.session.commit()
        db.session.refresh(instance)

        logger.info(
            "Workflow %s step %d approved by %s%s", instance.numero, decided_step,
            approver.user_id, " (final)" if last else "",
            extra={"instance_id": instance.id, "numero": instance.numero},
        )
        if last:
            self._notify(instance, "approved", definition=definition)
        else:
            self._notify(instance, "step_approved", record=record, definition=definition)
        return instance

    @translate_store_errors
    def reject_step(self, instance_id: int, approver, comment: str,
                    step: int | None = None) -> WorkflowInstance:
        """Reject the current step; the instance ends ``rejected`` at any step."""
        comment = clean_comment(comment, required=True)
        instance, definition = self._load_for_decision(instance_id, approver, "reject", step)
        decided_step = instance.current_step

        try:
            ApprovalLedger.record(
                instance, decided_step if step is None else step,
                approver.user_id, "rejected", comment,
            )
            self._compare_and_set(instance, {"status": "rejected", "finalized_at": _utcnow()})
        except ConflictError as exc:
            self._raise_conflict(instance_id, exc)
        db.session.commit()
        db.session.refresh(instance)

        logger.info(
            "Workflow %s rejected at step %d by %s", instance.numero, decided_step,
            approver.user_id,
            extra={"instance_id": instance.id, "numero": instance.numero},
        )
        self._notify(instance, "rejected", definition=definition)
        return instance

    @translate_store_errors
    def cancel(self, instance_id: int, requester) -> WorkflowInstance:
        """Cancel from draft or in_progress. Who may cancel is the caller's policy."""
        instance = self._load_for_update(instance_id)
        self._require(instance, "cancel")

        try:
            self._compare_and_set(instance, {"status": "cancelled", "finalized_at": _utcnow()})
        except ConflictError as exc:
            self._raise_conflict(instance_id, exc)
        db.session.commit()
        db.session.refresh(instance)

        logger.info(
            "Workflow %s cancelled by %s", instance.numero, requester.user_id,
            extra={"instance_id": instance.id, "numero": instance.numero},
        )
        return instance

    # ── Internals ────────────────────────────────────────────────────────

    @staticmethod
    def _load_for_update(instance_id: int) -> WorkflowInstance:
        instance = (
            WorkflowInstance.query
            .filter(WorkflowInstance.id == instance_id)
            .with_for_update()
            .execution_options(populate_existing=True)
            .first()
        )
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    @staticmethod
    def _require(instance: WorkflowInstance, action: str) -> None:
        check = validate_transition(instance, action)
        if not check["valid"]:
            db.session.rollback()
            raise InvalidTransitionError(instance.numero, action, instance.status, check["reason"])

    def _load_for_decision(self, instance_id, approver, action, step):
        instance = self._load_for_update(instance_id)

        # The step the approver saw may have been decided by someone else.
        # Checked before the role gate, which applies to the current step.
        if step is not None:
            if instance.status == "in_progress" and step != instance.current_step:
                self._raise_conflict(
                    instance_id, StepOutOfSequenceError(instance_id, step, instance.current_step),
                )
            if instance.status != "in_progress" and ApprovalLedger.find(instance_id, step) is not None:
                self._raise_conflict(instance_id, DuplicateStepDecisionError(instance_id, step))
        self._require(instance, action)

        definition = self.registry.definition_for(instance.type)
        required = definition.step(instance.current_step).required_role
        if not role_level_at_least(approver.role, required):
            db.session.rollback()
            raise ForbiddenError(
                approver.user_id, f"{action} step {instance.current_step} of {instance.numero}",
                required_role=required,
            )
        return instance, definition

    @staticmethod
    def _compare_and_set(instance: WorkflowInstance, values: dict) -> None:
        """UPDATE guarded by the status and step this transaction read."""
        values = dict(values, updated_at=_utcnow())
        updated = (
            WorkflowInstance.query
            .filter(
                WorkflowInstance.id == instance.id,
                WorkflowInstance.status == instance.status,
                WorkflowInstance.current_step == instance.current_step,
            )
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            raise ConflictError(
                f"Workflow instance {instance.numero} changed concurrently",
                resource="WorkflowInstance",
                resource_id=instance.id,
            )

    @staticmethod
    def _raise_conflict(instance_id: int, error: ConflictError):
        """Roll back, attach the re-read instance and raise ``error``."""
        db.session.rollback()
        current = db.session.get(WorkflowInstance, instance_id)
        error.current_state = current.to_dict() if current is not None else None
        logger.info(
            "Conflict on workflow instance %s: %s", instance_id, error,
            extra={"instance_id": instance_id},
        )
        raise error

    @staticmethod
    def _notify(instance, event, *, record=None, definition=None) -> None:
        try:
            AlertService.notify_workflow_event(
                instance, event, record=record, definition=definition,
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.warning(
                "Workflow alert %s for %s not created", event, instance.numero,
                exc_info=True,
                extra={"instance_id": instance.id, "numero": instance.numero},
            )
