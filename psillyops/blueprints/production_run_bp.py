"""
Production Runs Blueprint.

Endpoints:
  Runs:        GET/POST /production-runs, GET /production-runs/<id>
               GET  /production-runs/attention
               GET  /production-runs/my-work
               GET  /production-runs/<id>/activity
               POST /production-runs/<id>/{cancel,block,unblock}
  Editing:     POST /production-runs/<id>/steps, POST /production-runs/<id>/steps/reorder
               PATCH/DELETE /production-run-steps/<id>
  Steps:       POST /production-run-steps/<id>/{start,stop,complete,skip}
  Assignment:  POST /production-run-steps/<id>/{claim,assign}
  Proposals:   POST /production-runs/<id>/edit-proposals
               POST /run-edit-proposals/<id>/confirm
  Tokens:      GET  /tracking-tokens/<token>

The acting user comes from ``g.actor`` (see middleware.actor_context).
"""

import logging
from datetime import datetime

from flask import Blueprint, g, jsonify, request

from psillyops.blueprints import json_body, register_service_error_handlers
from psillyops.middleware.actor_context import require_actor
from psillyops.services.production_run_service import get_production_run_service
from psillyops.services.run_edit_proposal_service import get_run_edit_proposal_service
from psillyops.services.tracking_token_service import resolve_token
from psillyops.utils.errors import E, api_error

logger = logging.getLogger(__name__)

production_run_bp = Blueprint("production_runs", __name__, url_prefix="/api/v1")
register_service_error_handlers(production_run_bp)


def _optional_bool(data: dict, key: str):
    """Return (value, error). Missing → (None, None); non-bool → 400."""
    if key not in data or data[key] is None:
        return None, None
    if not isinstance(data[key], bool):
        return None, api_error(E.VALIDATION_REQUIRED, f"{key} must be a boolean")
    return data[key], None


# ═════════════════════════════════════════════════════════════════════════════
# Runs
# ═════════════════════════════════════════════════════════════════════════════


@production_run_bp.route("/production-runs", methods=["POST"])
@require_actor
def create_run():
    """Create a production run from the product's step templates."""
    data, err = json_body()
    if err:
        return err
    if not data.get("product_id") or "quantity" not in data:
        return api_error(E.VALIDATION_REQUIRED, "product_id and quantity are required")

    result = get_production_run_service().create_run(data["product_id"], data["quantity"], g.actor)
    return jsonify(result), 201


@production_run_bp.route("/production-runs", methods=["GET"])
def list_runs():
    """List runs newest first. Query: status, limit (1..200, default 50)."""
    items = get_production_run_service().list_runs(
        status=request.args.get("status"),
        limit=request.args.get("limit", 50),
    )
    return jsonify({"items": items, "total": len(items)})


@production_run_bp.route("/production-runs/attention", methods=["GET"])
def runs_needing_attention():
    items = get_production_run_service().runs_needing_attention()
    return jsonify({"items": items, "total": len(items)})


@production_run_bp.route("/production-runs/my-work", methods=["GET"])
@require_actor
def my_work():
    """Steps assigned to the caller plus runs the caller recently worked on."""
    svc = get_production_run_service()
    return jsonify({
        "assigned_steps": svc.my_assigned_steps(g.actor),
        "active_runs": svc.my_active_runs(g.actor),
    })


@production_run_bp.route("/production-runs/<run_id>", methods=["GET"])
def get_run(run_id):
    return jsonify(get_production_run_service().get_run(run_id))


@production_run_bp.route("/production-runs/<run_id>/activity", methods=["GET"])
def run_activity(run_id):
    """Activity log for one run, newest first. Query: since (ISO-8601)."""
    since = request.args.get("since")
    if since:
        try:
            since = datetime.fromisoformat(since)
        except ValueError:
            return api_error(E.VALIDATION_REQUIRED, "since must be an ISO-8601 timestamp")
    items = get_production_run_service().list_run_activity(run_id, since=since or None)
    return jsonify({"items": items, "total": len(items)})


@production_run_bp.route("/production-runs/<run_id>/cancel", methods=["POST"])
@require_actor
def cancel_run(run_id):
    data, err = json_body()
    if err:
        return err
    return jsonify(get_production_run_service().cancel_run(run_id, g.actor, data.get("reason")))


@production_run_bp.route("/production-runs/<run_id>/block", methods=["POST"])
@require_actor
def block_run(run_id):
    data, err = json_body()
    if err:
        return err
    return jsonify(get_production_run_service().block_run(run_id, g.actor, data.get("reason")))


@production_run_bp.route("/production-runs/<run_id>/unblock", methods=["POST"])
@require_actor
def unblock_run(run_id):
    data, err = json_body()
    if err:
        return err
    return jsonify(get_production_run_service().unblock_run(run_id, g.actor, data.get("reason")))


# ═════════════════════════════════════════════════════════════════════════════
# Pre-start editing
# ═════════════════════════════════════════════════════════════════════════════


@production_run_bp.route("/production-runs/<run_id>/steps", methods=["POST"])
@require_actor
def add_step(run_id):
    """Add an ad-hoc step at the end of a run that has not started."""
    data, err = json_body()
    if err:
        return err
    required, err = _optional_bool(data, "required")
    if err:
        return err
    result = get_production_run_service().add_adhoc_step(
        run_id, data.get("label", ""), g.actor,
        required=True if required is None else required,
    )
    return jsonify(result), 201


@production_run_bp.route("/production-runs/<run_id>/steps/reorder", methods=["POST"])
@require_actor
def reorder_steps(run_id):
    data, err = json_body()
    if err:
        return err
    ordered = data.get("ordered_step_ids")
    if not isinstance(ordered, list):
        return api_error(E.VALIDATION_REQUIRED, "ordered_step_ids must be a list of step ids")
    return jsonify(get_production_run_service().reorder_steps(run_id, ordered, g.actor))


@production_run_bp.route("/production-run-steps/<step_id>", methods=["PATCH"])
@require_actor
def update_step(step_id):
    data, err = json_body()
    if err:
        return err
    required, err = _optional_bool(data, "required")
    if err:
        return err
    label = data.get("label")
    if label is not None and not isinstance(label, str):
        return api_error(E.VALIDATION_REQUIRED, "label must be a string")
    result = get_production_run_service().update_step_override(
        step_id, g.actor, label=label, required=required,
    )
    return jsonify(result)


@production_run_bp.route("/production-run-steps/<step_id>", methods=["DELETE"])
@require_actor
def delete_step(step_id):
    return jsonify(get_production_run_service().delete_step(step_id, g.actor))


# ═════════════════════════════════════════════════════════════════════════════
# Step lifecycle + assignment
# ═════════════════════════════════════════════════════════════════════════════


@production_run_bp.route("/production-run-steps/<step_id>/start", methods=["POST"])
@require_actor
def start_step(step_id):
    return jsonify(get_production_run_service().start_step(step_id, g.actor))


@production_run_bp.route("/production-run-steps/<step_id>/stop", methods=["POST"])
@require_actor
def stop_step(step_id):
    return jsonify(get_production_run_service().stop_step(step_id, g.actor))


@production_run_bp.route("/production-run-steps/<step_id>/complete", methods=["POST"])
@require_actor
def complete_step(step_id):
    return jsonify(get_production_run_service().complete_step(step_id, g.actor))


@production_run_bp.route("/production-run-steps/<step_id>/skip", methods=["POST"])
@require_actor
def skip_step(step_id):
    data, err = json_body()
    if err:
        return err
    return jsonify(get_production_run_service().skip_step(step_id, data.get("reason"), g.actor))


@production_run_bp.route("/production-run-steps/<step_id>/claim", methods=["POST"])
@require_actor
def claim_step(step_id):
    return jsonify(get_production_run_service().claim_step(step_id, g.actor))


@production_run_bp.route("/production-run-steps/<step_id>/assign", methods=["POST"])
@require_actor
def assign_step(step_id):
    """Admin: set or clear (``assigned_to: null``) the step assignee."""
    data, err = json_body()
    if err:
        return err
    if "assigned_to" not in data:
        return api_error(E.VALIDATION_REQUIRED, "assigned_to is required (use null to unassign)")
    return jsonify(get_production_run_service().admin_assign_step(step_id, data["assigned_to"], g.actor))


# ═════════════════════════════════════════════════════════════════════════════
# Edit proposals
# ═════════════════════════════════════════════════════════════════════════════


@production_run_bp.route("/production-runs/<run_id>/edit-proposals", methods=["POST"])
@require_actor
def propose_edits(run_id):
    data, err = json_body()
    if err:
        return err
    if not isinstance(data.get("text"), str) or not data["text"].strip():
        return api_error(E.VALIDATION_REQUIRED, "text is required")
    result = get_run_edit_proposal_service().propose(run_id, data["text"], g.actor)
    return jsonify(result), 201


@production_run_bp.route("/run-edit-proposals/<proposal_id>/confirm", methods=["POST"])
@require_actor
def confirm_proposal(proposal_id):
    return jsonify(get_run_edit_proposal_service().confirm(proposal_id, g.actor))


# ═════════════════════════════════════════════════════════════════════════════
# Tracking tokens
# ═════════════════════════════════════════════════════════════════════════════


@production_run_bp.route("/tracking-tokens/<token>", methods=["GET"])
def resolve_tracking_token(token):
    return jsonify(resolve_token(token))
