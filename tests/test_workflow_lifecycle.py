"""
Tests — Workflow Instance Lifecycle Manager.

Covers:
    1. create: numero allocation, payload validation, unknown types
    2. submit / approve_step / reject_step / cancel transitions
    3. Role checks on step decisions
    4. Concurrent decisions (duplicate, out of sequence, compare-and-set)
    5. Terminal states
    6. pending_approvals / available_actions
    7. Workflow alerts and their backfill
"""

import re
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError

from holdingmanager.core.exceptions import (
    ConflictError,
    DuplicateStepDecisionError,
    ForbiddenError,
    InstanceNotFoundError,
    InvalidPayloadError,
    InvalidTransitionError,
    StepOutOfSequenceError,
    UnknownWorkflowTypeError,
)
from holdingmanager.models import db
from holdingmanager.models.alert import Alert
from holdingmanager.models.workflow import ApprovalRecord, WorkflowInstance, WorkflowNumeroSequence
from holdingmanager.services.alert_generator import run_alert_scan
from holdingmanager.services.alert_service import AlertService
from holdingmanager.services.approval_ledger import ApprovalLedger
from holdingmanager.services.permission import Actor
from holdingmanager.services.workflow_lifecycle import clean_payload, validate_transition


def _year():
    return datetime.now(timezone.utc).year


@pytest.fixture()
def conge_submitted(manager, employe, conge_payload):
    instance = manager.create("conge", employe, conge_payload)
    return manager.submit(instance.id, employe)


@pytest.fixture()
def achat_submitted(manager, employe, achat_payload):
    instance = manager.create("achat", employe, achat_payload)
    return manager.submit(instance.id, employe)


# ═════════════════════════════════════════════════════════════════════════════
# CREATE
# ═════════════════════════════════════════════════════════════════════════════


class TestCreate:
    def test_creates_draft(self, manager, employe, conge_payload):
        instance = manager.create("conge", employe, conge_payload)

        assert re.fullmatch(rf"CON-{_year()}-\d{{4}}", instance.numero)
        assert instance.status == "draft"
        assert instance.current_step == 0
        assert instance.submitter_id == "emp-1"
        assert instance.priority == "normal"
        assert instance.data["motif"] == "Vacances"
        assert instance.submitted_at is None

    def test_numeros_are_sequential_per_prefix(self, manager, employe, conge_payload, achat_payload):
        first = manager.create("conge", employe, conge_payload)
        second = manager.create("conge", employe, conge_payload)
        achat = manager.create("achat", employe, achat_payload)

        assert first.numero == f"CON-{_year()}-0001"
        assert second.numero == f"CON-{_year()}-0002"
        assert achat.numero == f"ACH-{_year()}-0001"

    def test_skips_taken_numero(self, manager, employe, conge_payload):
        db.session.add(WorkflowInstance(
            numero=f"CON-{_year()}-0001", type="conge", title="Importée", submitter_id="emp-9",
        ))
        db.session.commit()

        instance = manager.create("conge", employe, conge_payload)
        assert instance.numero == f"CON-{_year()}-0002"
        assert WorkflowInstance.query.count() == 2

    def test_amount_is_stored(self, manager, employe, achat_payload):
        instance = manager.create("achat", employe, achat_payload)
        assert instance.to_dict()["amount"] == 4200.0
        assert instance.priority == "high"

    def test_unknown_type(self, manager, employe):
        with pytest.raises(UnknownWorkflowTypeError):
            manager.create("voyage", employe, {"title": "Séminaire"})
        assert WorkflowInstance.query.count() == 0

    def test_invalid_payload_creates_nothing(self, manager, employe):
        with pytest.raises(InvalidPayloadError) as exc:
            manager.create("achat", employe, {"title": "", "data": {"fournisseur": "Dell"}})

        assert set(exc.value.details) == {"title", "justification", "amount"}
        assert WorkflowInstance.query.count() == 0

    def test_non_finite_amount_rejected(self, manager, employe, achat_payload):
        achat_payload["amount"] = "NaN"
        with pytest.raises(InvalidPayloadError) as exc:
            manager.create("achat", employe, achat_payload)
        assert exc.value.details == {"amount": "amount must be a finite number"}
        assert WorkflowInstance.query.count() == 0

    def test_numero_sequence_exhausted(self, manager, employe, conge_payload):
        db.session.add(WorkflowNumeroSequence(prefix="CON", year=_year(), last_value=9999))
        db.session.commit()

        with pytest.raises(ConflictError):
            manager.create("conge", employe, conge_payload)

        assert WorkflowInstance.query.count() == 0
        assert WorkflowNumeroSequence.query.filter_by(prefix="CON").one().last_value == 9999


class TestCleanPayload:
    def _definition(self, manager, workflow_type):
        return manager.registry.definition_for(workflow_type)

    def test_valid(self, manager, conge_payload):
        fields, errors = clean_payload(self._definition(manager, "conge"), conge_payload)
        assert errors == {}
        assert fields["type"] == "conge"
        assert fields["amount"] is None

    @pytest.mark.parametrize("amount", [0, -10, "abc", "NaN", "sNaN", "Infinity", "-Infinity"])
    def test_amount_must_be_positive_number(self, manager, achat_payload, amount):
        achat_payload["amount"] = amount
        _, errors = clean_payload(self._definition(manager, "achat"), achat_payload)
        assert "amount" in errors

    @pytest.mark.parametrize("title", [42, ["Achat"], {"fr": "Achat"}])
    def test_title_must_be_string(self, manager, achat_payload, title):
        achat_payload["title"] = title
        _, errors = clean_payload(self._definition(manager, "achat"), achat_payload)
        assert errors == {"title": "title must be a string"}

    def test_data_must_be_object(self, manager):
        _, errors = clean_payload(self._definition(manager, "autre"), {"title": "X", "data": [1]})
        assert errors["data"] == "data must be an object"
        assert "justification" in errors

    def test_bad_priority(self, manager, conge_payload):
        conge_payload["priority"] = "critique"
        _, errors = clean_payload(self._definition(manager, "conge"), conge_payload)
        assert "priority" in errors

    def test_end_before_start(self, manager, conge_payload):
        conge_payload["data"]["date_fin"] = "2026-08-01"
        _, errors = clean_payload(self._definition(manager, "conge"), conge_payload)
        assert errors == {"date_fin": "date_fin must not be before date_debut"}

    def test_unparseable_date(self, manager, conge_payload):
        conge_payload["data"]["date_debut"] = "bientôt"
        _, errors = clean_payload(self._definition(manager, "conge"), conge_payload)
        assert errors == {"date_debut": "invalid date"}

    def test_french_date_format(self, manager, conge_payload):
        conge_payload["data"].update(date_debut="03/08/2026", date_fin="14/08/2026")
        _, errors = clean_payload(self._definition(manager, "conge"), conge_payload)
        assert errors == {}


# ═════════════════════════════════════════════════════════════════════════════
# TRANSITIONS
# ═════════════════════════════════════════════════════════════════════════════


class TestSubmit:
    def test_submit(self, conge_submitted):
        assert conge_submitted.status == "in_progress"
        assert conge_submitted.current_step == 1
        assert conge_submitted.submitted_at is not None

    def test_submit_creates_alert(self, conge_submitted):
        alert = Alert.query.filter_by(type="workflow_submitted").one()
        assert alert.severity == "medium"
        assert alert.linked_entity_type == "workflow_instance"
        assert alert.linked_entity_id == conge_submitted.id
        assert alert.title == f"Demande {conge_submitted.numero} soumise"

    def test_double_submit(self, manager, employe, conge_submitted):
        with pytest.raises(InvalidTransitionError):
            manager.submit(conge_submitted.id, employe)

    def test_not_found(self, manager, employe):
        with pytest.raises(InstanceNotFoundError):
            manager.submit(999, employe)


class TestApprove:
    def test_single_step_approval(self, manager, responsable, conge_submitted):
        instance = manager.approve_step(conge_submitted.id, responsable, comment="Bonnes vacances")

        assert instance.status == "approved"
        assert instance.finalized_at is not None
        records = manager.history(instance.id)
        assert [(r.step_ordinal, r.decision, r.approver_id) for r in records] == [
            (1, "approved", "resp-1"),
        ]
        alert = Alert.query.filter_by(type="workflow_approved").one()
        assert alert.severity == "low"
        assert alert.linked_entity_id == instance.id

    def test_two_step_approval(self, manager, chef_service, directeur, achat_submitted):
        instance = manager.approve_step(achat_submitted.id, chef_service)
        assert instance.status == "in_progress"
        assert instance.current_step == 2

        record = ApprovalLedger.find(instance.id, 1)
        step_alert = Alert.query.filter_by(type="workflow_step_approved").one()
        assert step_alert.linked_entity_type == "approval_record"
        assert step_alert.linked_entity_id == record.id
        assert "Validation Chef Service" in step_alert.message

        instance = manager.approve_step(instance.id, directeur)
        assert instance.status == "approved"
        assert instance.current_step == 2
        assert len(manager.history(instance.id)) == 2

    def test_approve_comment_must_be_string(self, manager, responsable, conge_submitted):
        with pytest.raises(InvalidPayloadError):
            manager.approve_step(conge_submitted.id, responsable, comment={"text": "OK"})
        assert db.session.get(WorkflowInstance, conge_submitted.id).status == "in_progress"

    def test_employe_cannot_approve(self, manager, other_employe, conge_submitted):
        with pytest.raises(ForbiddenError) as exc:
            manager.approve_step(conge_submitted.id, other_employe)
        assert exc.value.required_role == "responsable"
        assert ApprovalRecord.query.count() == 0

    def test_chef_cannot_approve_direction_step(self, manager, chef_service, achat_submitted):
        manager.approve_step(achat_submitted.id, chef_service)

        with pytest.raises(ForbiddenError) as exc:
            manager.approve_step(achat_submitted.id, chef_service)
        assert exc.value.required_role == "directeur"

    def test_higher_role_may_approve_lower_step(self, manager, admin, conge_submitted):
        instance = manager.approve_step(conge_submitted.id, admin)
        assert instance.status == "approved"

    def test_draft_cannot_be_approved(self, manager, employe, responsable, conge_payload):
        instance = manager.create("conge", employe, conge_payload)
        with pytest.raises(InvalidTransitionError):
            manager.approve_step(instance.id, responsable)


class TestConcurrentDecisions:
    def test_stale_step_on_multi_step(self, manager, chef_service, admin, achat_submitted):
        manager.approve_step(achat_submitted.id, chef_service, step=1)

        with pytest.raises(StepOutOfSequenceError) as exc:
            manager.approve_step(achat_submitted.id, admin, step=1)
        assert exc.value.current_state["current_step"] == 2
        assert len(manager.history(achat_submitted.id)) == 1

    def test_same_role_rival_gets_conflict_not_forbidden(self, manager, chef_service, achat_submitted):
        rival = Actor(user_id="chef-2", role="chef_service")
        manager.approve_step(achat_submitted.id, chef_service, step=1)

        with pytest.raises(StepOutOfSequenceError) as exc:
            manager.approve_step(achat_submitted.id, rival, step=1)

        assert exc.value.retryable is True
        assert exc.value.current_state["current_step"] == 2
        assert len(manager.history(achat_submitted.id)) == 1

    def test_same_role_rival_reject_gets_conflict(self, manager, chef_service, achat_submitted):
        rival = Actor(user_id="chef-2", role="chef_service")
        manager.approve_step(achat_submitted.id, chef_service, step=1)

        with pytest.raises(StepOutOfSequenceError):
            manager.reject_step(achat_submitted.id, rival, "Hors budget", step=1)
        assert db.session.get(WorkflowInstance, achat_submitted.id).status == "in_progress"

    def test_ledger_unique_constraint_is_conflict(self, manager, responsable, conge_submitted):
        """Both approvers passed the existing-record check; the index decides."""
        db.session.add(ApprovalRecord(
            instance_id=conge_submitted.id, step_ordinal=1, approver_id="resp-2",
            decision="approved",
        ))
        db.session.commit()

        with patch.object(ApprovalLedger, "find", return_value=None):
            with pytest.raises(DuplicateStepDecisionError) as exc:
                manager.approve_step(conge_submitted.id, responsable)

        assert exc.value.current_state["status"] == "in_progress"
        assert exc.value.current_state["current_step"] == 1
        assert ApprovalRecord.query.count() == 1

    def test_stale_step_on_finalized(self, manager, responsable, directeur, conge_submitted):
        manager.approve_step(conge_submitted.id, responsable, step=1)

        with pytest.raises(DuplicateStepDecisionError) as exc:
            manager.approve_step(conge_submitted.id, directeur, step=1)
        assert exc.value.current_state["status"] == "approved"

    def test_stale_reject_on_finalized(self, manager, responsable, directeur, conge_submitted):
        manager.approve_step(conge_submitted.id, responsable, step=1)

        with pytest.raises(DuplicateStepDecisionError):
            manager.reject_step(conge_submitted.id, directeur, "Trop tard", step=1)

    def test_without_step_finalized_is_invalid_transition(
        self, manager, responsable, directeur, conge_submitted,
    ):
        manager.approve_step(conge_submitted.id, responsable)
        with pytest.raises(InvalidTransitionError):
            manager.approve_step(conge_submitted.id, directeur)

    def test_compare_and_set_lost(self, manager, chef_service, achat_submitted):
        """A writer that moves the step between read and update wins."""
        original = ApprovalLedger.record

        def record_then_race(instance, *args, **kwargs):
            record = original(instance, *args, **kwargs)
            db.session.execute(
                sa.update(WorkflowInstance)
                .where(WorkflowInstance.id == instance.id)
                .values(current_step=2)
                .execution_options(synchronize_session=False)
            )
            return record

        with patch.object(ApprovalLedger, "record", side_effect=record_then_race):
            with pytest.raises(ConflictError) as exc:
                manager.approve_step(achat_submitted.id, chef_service)

        assert exc.value.retryable is True
        assert exc.value.current_state["current_step"] == 1
        assert exc.value.current_state["status"] == "in_progress"
        assert ApprovalRecord.query.count() == 0


class TestReject:
    def test_reject_first_step(self, manager, chef_service, achat_submitted):
        instance = manager.reject_step(achat_submitted.id, chef_service, "  Budget épuisé ")

        assert instance.status == "rejected"
        assert instance.current_step == 1
        record = ApprovalLedger.find(instance.id, 1)
        assert record.decision == "rejected"
        assert record.comment == "Budget épuisé"
        alert = Alert.query.filter_by(type="workflow_rejected").one()
        assert alert.severity == "high"
        assert alert.linked_entity_id == instance.id

    def test_reject_second_step(self, manager, chef_service, directeur, achat_submitted):
        manager.approve_step(achat_submitted.id, chef_service)
        instance = manager.reject_step(achat_submitted.id, directeur, "Non prioritaire")

        assert instance.status == "rejected"
        assert [r.decision for r in manager.history(instance.id)] == ["approved", "rejected"]

    def test_comment_must_be_string(self, manager, chef_service, achat_submitted):
        with pytest.raises(InvalidPayloadError) as exc:
            manager.reject_step(achat_submitted.id, chef_service, ["non"])
        assert exc.value.details == {"comment": "comment must be a string"}
        assert ApprovalRecord.query.count() == 0

    @pytest.mark.parametrize("comment", ["", "   ", None])
    def test_comment_required(self, manager, chef_service, achat_submitted, comment):
        with pytest.raises(InvalidPayloadError):
            manager.reject_step(achat_submitted.id, chef_service, comment)
        assert db.session.get(WorkflowInstance, achat_submitted.id).status == "in_progress"


class TestCancel:
    def test_cancel_draft(self, manager, employe, conge_payload):
        instance = manager.create("conge", employe, conge_payload)
        instance = manager.cancel(instance.id, employe)
        assert instance.status == "cancelled"
        assert instance.finalized_at is not None

    def test_cancel_in_progress(self, manager, employe, conge_submitted):
        instance = manager.cancel(conge_submitted.id, employe)
        assert instance.status == "cancelled"
        # only the submission alert
        assert Alert.query.count() == 1


class TestTerminalStates:
    @pytest.fixture(params=["approved", "rejected", "cancelled"])
    def finished(self, request, manager, employe, responsable, conge_submitted):
        if request.param == "approved":
            return manager.approve_step(conge_submitted.id, responsable)
        if request.param == "rejected":
            return manager.reject_step(conge_submitted.id, responsable, "Non")
        return manager.cancel(conge_submitted.id, employe)

    def test_no_action_allowed(self, manager, employe, directeur, finished):
        with pytest.raises(InvalidTransitionError):
            manager.submit(finished.id, employe)
        with pytest.raises(InvalidTransitionError):
            manager.cancel(finished.id, employe)
        with pytest.raises(InvalidTransitionError):
            manager.approve_step(finished.id, directeur)
        with pytest.raises(InvalidTransitionError):
            manager.reject_step(finished.id, directeur, "Non")

    def test_no_available_actions(self, manager, directeur, finished):
        assert finished.is_terminal
        assert manager.available_actions(finished) == []
        assert manager.available_actions(finished, directeur) == []


# ═════════════════════════════════════════════════════════════════════════════
# QUERIES
# ═════════════════════════════════════════════════════════════════════════════


class TestValidateTransition:
    def test_unknown_action(self, conge_submitted):
        result = validate_transition(conge_submitted, "archive")
        assert result["valid"] is False
        assert "Unknown action" in result["reason"]

    def test_valid(self, conge_submitted):
        assert validate_transition(conge_submitted, "reject") == {
            "valid": True, "from": "in_progress", "to": "rejected", "reason": None,
        }


class TestAvailableActions:
    def test_draft(self, manager, employe, other_employe, directeur, conge_payload):
        instance = manager.create("conge", employe, conge_payload)
        assert manager.available_actions(instance) == ["submit", "cancel"]
        assert manager.available_actions(instance, employe) == ["submit", "cancel"]
        assert manager.available_actions(instance, other_employe) == []
        assert manager.available_actions(instance, directeur) == ["submit", "cancel"]

    def test_in_progress(self, manager, employe, responsable, directeur, conge_submitted):
        assert manager.available_actions(conge_submitted, employe) == ["cancel"]
        assert manager.available_actions(conge_submitted, responsable) == ["approve", "reject"]
        assert manager.available_actions(conge_submitted, directeur) == [
            "approve", "reject", "cancel",
        ]


class TestPendingApprovals:
    def test_filters_by_role_and_submitter(
        self, manager, employe, responsable, directeur, conge_payload, achat_payload,
    ):
        conge = manager.submit(manager.create("conge", employe, conge_payload).id, employe).id
        achat = manager.submit(manager.create("achat", employe, achat_payload).id, employe).id
        own = manager.submit(
            manager.create("conge", responsable, conge_payload).id, responsable,
        ).id
        manager.create("conge", employe, conge_payload)  # draft, never pending

        assert [i.id for i in manager.pending_approvals(responsable)] == [conge, achat]
        assert [i.id for i in manager.pending_approvals(directeur)] == [conge, achat, own]
        assert manager.pending_approvals(employe) == []

    def test_second_step_needs_directeur(
        self, manager, employe, chef_service, directeur, achat_submitted,
    ):
        manager.approve_step(achat_submitted.id, chef_service)
        assert manager.pending_approvals(chef_service) == []
        assert [i.id for i in manager.pending_approvals(directeur)] == [achat_submitted.id]


# ═════════════════════════════════════════════════════════════════════════════
# WORKFLOW ALERTS
# ═════════════════════════════════════════════════════════════════════════════


class TestWorkflowAlerts:
    def test_failed_notification_does_not_undo_transition(
        self, manager, employe, responsable, conge_payload,
    ):
        instance = manager.create("conge", employe, conge_payload)
        with patch.object(
            AlertService, "notify_workflow_event", side_effect=SQLAlchemyError("boom"),
        ):
            manager.submit(instance.id, employe)
            instance = manager.approve_step(instance.id, responsable)

        assert instance.status == "approved"
        assert Alert.query.count() == 0

        summary = run_alert_scan()
        assert summary["created"]["workflow_events"] == 2
        assert {a.type for a in Alert.query.all()} == {"workflow_submitted", "workflow_approved"}

    def test_scan_does_not_duplicate_emitted_alerts(
        self, manager, chef_service, achat_submitted,
    ):
        manager.approve_step(achat_submitted.id, chef_service)
        assert Alert.query.count() == 2

        summary = run_alert_scan()
        assert summary["created"]["workflow_events"] == 0
        assert Alert.query.count() == 2
