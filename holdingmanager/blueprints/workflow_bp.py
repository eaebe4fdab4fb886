"""
Workflow Blueprint — approval requests.

Routes:
  GET    /workflow-types                  – registered workflow definitions
  GET    /workflows                       – list requests (status, type, mine)
  POST   /workflows                       – create a draft request
  GET    /workflows/pending               – requests awaiting my decision
  GET    /workflows/<id>                  – request + approvals + my actions
  GET    /workflows/<id>/approvals        – approval ledger
  POST   /workflows/<id>/submit           – draft → in_progress
  POST   /workflows/<id>/approve          – approve current step
  POST   /workflows/<id>/reject           – reject current step (comment required)
  POST   /workflows/<id>/cancel           – cancel draft / in-progress request

Caller identity comes from the X-User-Id / X-User-Role headers.
"""

from flask import Blueprint, g, jsonify, request

from holdingmanager.blueprints import actor_required, paginate_query
from holdingmanager.core.exceptions import ForbiddenError, InvalidPayloadError
from holdingmanager.models.workflow import WORKFLOW_STATUSES, WorkflowInstance
from holdingmanager.services.approval_ledger import ApprovalLedger
from holdingmanager.services.permission import can_manage, check_permission
from holdingmanager.services.workflow_lifecycle import WorkflowLifecycleManager
from holdingmanager.services.workflow_registry import get_registry
from holdingmanager.utils.errors import E, api_error, register_domain_error_handlers

workflow_bp = Blueprint("workflows", __name__, url_prefix="/api/v1")
register_domain_error_handlers(workflow_bp)


# ── helpers ──────────────────────────────────────────────────────────────

def _manager():
    return WorkflowLifecycleManager(get_registry())


def _json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _step_from(data):
    """Optional ``step`` in the body: the ordinal the approver was shown."""
    step = data.get("step")
    if step is None:
        return None
    try:
        step = int(step)
    except (TypeError, ValueError):
        raise InvalidPayloadError("step must be an integer", details={"step": "must be an integer"})
    if step < 1:
        raise InvalidPayloadError("step must be >= 1", details={"step": "must be >= 1"})
    return step


def _detail(instance, manager):
    body = instance.to_dict()
    body["approvals"] = [r.to_dict() for r in ApprovalLedger.list_for(instance.id)]
    body["available_actions"] = manager.available_actions(instance, g.actor)
    return body


# ═════════════════════════════════════════════════════════════════════════════
# DEFINITIONS
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/workflow-types", methods=["GET"])
@actor_required
def list_workflow_types():
    return jsonify([d.to_dict() for d in get_registry().types()])


# ═════════════════════════════════════════════════════════════════════════════
# REQUESTS
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/workflows", methods=["GET"])
@actor_required
def list_workflows():
    """List requests. Query: status, type, mine=true, limit, offset."""
    check_permission(g.actor, "workflows", "view")

    q = WorkflowInstance.query
    status = request.args.get("status")
    if status:
        if status not in WORKFLOW_STATUSES:
            return api_error(E.VALIDATION_INVALID,
                             f"status must be one of {list(WORKFLOW_STATUSES)}")
        q = q.filter(WorkflowInstance.status == status)
    wf_type = request.args.get("type")
    if wf_type:
        q = q.filter(WorkflowInstance.type == wf_type)
    if request.args.get("mine") == "true":
        q = q.filter(WorkflowInstance.submitter_id == g.actor.user_id)

    items, total = paginate_query(
        q.order_by(WorkflowInstance.created_at.desc(), WorkflowInstance.id.desc())
    )
    return jsonify({"items": [i.to_dict() for i in items], "total": total})


@workflow_bp.route("/workflows", methods=["POST"])
@actor_required
def create_workflow():
    """Create a draft request.

    Body: { type, title, description?, amount?, priority?, subsidiary_id?, data: {...} }
    """
    check_permission(g.actor, "workflows", "create")

    data = _json_body()
    wf_type = data.get("type")
    if not isinstance(wf_type, str) or not wf_type.strip():
        return api_error(E.VALIDATION_REQUIRED, "type is required")
    wf_type = wf_type.strip()

    manager = _manager()
    instance = manager.create(wf_type, g.actor, data)
    return jsonify(_detail(instance, manager)), 201


@workflow_bp.route("/workflows/pending", methods=["GET"])
@actor_required
def pending_workflows():
    """Requests whose current step the caller may decide."""
    items = _manager().pending_approvals(g.actor)
    return jsonify({"items": [i.to_dict() for i in items], "total": len(items)})


@workflow_bp.route("/workflows/<int:instance_id>", methods=["GET"])
@actor_required
def get_workflow(instance_id):
    check_permission(g.actor, "workflows", "view")
    manager = _manager()
    return jsonify(_detail(manager.get(instance_id), manager))


@workflow_bp.route("/workflows/<int:instance_id>/approvals", methods=["GET"])
@actor_required
def list_approvals(instance_id):
    check_permission(g.actor, "workflows", "view")
    records = _manager().history(instance_id)
    return jsonify([r.to_dict() for r in records])


# ═════════════════════════════════════════════════════════════════════════════
# TRANSITIONS
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/workflows/<int:instance_id>/submit", methods=["POST"])
@actor_required
def submit_workflow(instance_id):
    manager = _manager()
    instance = manager.get(instance_id)
    if not can_manage(g.actor, instance.submitter_id):
        raise ForbiddenError(g.actor.user_id, f"submit {instance.numero}")
    instance = manager.submit(instance_id, g.actor)
    return jsonify(_detail(instance, manager))


@workflow_bp.route("/workflows/<int:instance_id>/approve", methods=["POST"])
@actor_required
def approve_workflow(instance_id):
    """Body: { comment?, step? }"""
    check_permission(g.actor, "workflows", "approve")
    data = _json_body()
    manager = _manager()
    instance = manager.approve_step(
        instance_id, g.actor, comment=data.get("comment"), step=_step_from(data),
    )
    return jsonify(_detail(instance, manager))


@workflow_bp.route("/workflows/<int:instance_id>/reject", methods=["POST"])
@actor_required
def reject_workflow(instance_id):
    """Body: { comment, step? }"""
    check_permission(g.actor, "workflows", "approve")
    data = _json_body()
    manager = _manager()
    instance = manager.reject_step(
        instance_id, g.actor, data.get("comment") or "", step=_step_from(data),
    )
    return jsonify(_detail(instance, manager))


@workflow_bp.route("/workflows/<int:instance_id>/cancel", methods=["POST"])
@actor_required
def cancel_workflow(instance_id):
    manager = _manager()
    instance = manager.get(instance_id)
    if not can_manage(g.actor, instance.submitter_id):
        raise ForbiddenError(g.actor.user_id, f"cancel {instance.numero}")
    instance = manager.cancel(instance_id, g.actor)
    return jsonify(_detail(instance, manager))
