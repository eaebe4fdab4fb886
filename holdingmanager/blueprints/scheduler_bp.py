"""
Scheduler Blueprint — periodic job management.

Routes:
  GET    /scheduler/jobs                   – registered jobs and their last run
  GET    /scheduler/jobs/<name>            – one job
  POST   /scheduler/jobs/<name>/trigger    – run now
  PATCH  /scheduler/jobs/<name>/toggle     – enable / disable
"""

from flask import Blueprint, g, jsonify, request

from holdingmanager.blueprints import actor_required
from holdingmanager.models.scheduling import ScheduledJob
from holdingmanager.services.permission import check_permission
from holdingmanager.services.scheduler_service import SchedulerService
from holdingmanager.utils.errors import E, api_error, register_domain_error_handlers

scheduler_bp = Blueprint("scheduler", __name__, url_prefix="/api/v1")
register_domain_error_handlers(scheduler_bp)


@scheduler_bp.route("/scheduler/jobs", methods=["GET"])
@actor_required
def list_scheduled_jobs():
    check_permission(g.actor, "admin", "view")
    jobs = SchedulerService.list_jobs()
    return jsonify({"jobs": jobs, "total": len(jobs)})


@scheduler_bp.route("/scheduler/jobs/<job_name>", methods=["GET"])
@actor_required
def get_job_status(job_name):
    check_permission(g.actor, "admin", "view")
    job = ScheduledJob.query.filter_by(job_name=job_name).first()
    if not job:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(job.to_dict())


@scheduler_bp.route("/scheduler/jobs/<job_name>/trigger", methods=["POST"])
@actor_required
def trigger_job(job_name):
    check_permission(g.actor, "admin", "view")
    result = SchedulerService.run_job(job_name)
    if result.get("status") == "error" and "Unknown job" in (result.get("error") or ""):
        return api_error(E.NOT_FOUND, result["error"])
    return jsonify(result)


@scheduler_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["PATCH"])
@actor_required
def toggle_job_status(job_name):
    check_permission(g.actor, "admin", "edit")
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if enabled is None:
        return api_error(E.VALIDATION_REQUIRED, "'enabled' field is required (true/false)")

    result = SchedulerService.toggle_job(job_name, bool(enabled))
    if not result:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(result)
