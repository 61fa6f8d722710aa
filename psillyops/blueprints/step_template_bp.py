"""
Product Step Templates Blueprint.

Endpoints:
    GET/POST     /api/v1/products/<product_id>/step-templates
    PATCH/DELETE /api/v1/products/<product_id>/step-templates/<template_id>
    POST         /api/v1/products/<product_id>/step-templates/reorder
"""

from flask import Blueprint, g, jsonify

from psillyops.blueprints import json_body, register_service_error_handlers
from psillyops.middleware.actor_context import require_actor
from psillyops.services import step_template_service as svc
from psillyops.utils.errors import E, api_error

step_template_bp = Blueprint("step_templates", __name__, url_prefix="/api/v1/products")
register_service_error_handlers(step_template_bp)


@step_template_bp.route("/<product_id>/step-templates", methods=["GET"])
def list_templates(product_id):
    items = svc.list_step_templates(product_id)
    return jsonify({"items": items, "total": len(items)})


@step_template_bp.route("/<product_id>/step-templates", methods=["POST"])
@require_actor
def create_template(product_id):
    data, err = json_body()
    if err:
        return err
    if not data.get("key") or not data.get("label"):
        return api_error(E.VALIDATION_REQUIRED, "key and label are required")
    required = data.get("required", True)
    if not isinstance(required, bool):
        return api_error(E.VALIDATION_REQUIRED, "required must be a boolean")
    result = svc.create_step_template(product_id, data["key"], data["label"], g.actor, required=required)
    return jsonify(result), 201


@step_template_bp.route("/<product_id>/step-templates/<template_id>", methods=["PATCH"])
@require_actor
def update_template(product_id, template_id):
    data, err = json_body()
    if err:
        return err
    required = data.get("required")
    if required is not None and not isinstance(required, bool):
        return api_error(E.VALIDATION_REQUIRED, "required must be a boolean")
    result = svc.update_step_template(
        product_id, template_id, g.actor, label=data.get("label"), required=required,
    )
    return jsonify(result)


@step_template_bp.route("/<product_id>/step-templates/<template_id>", methods=["DELETE"])
@require_actor
def delete_template(product_id, template_id):
    return jsonify(svc.delete_step_template(product_id, template_id, g.actor))


@step_template_bp.route("/<product_id>/step-templates/reorder", methods=["POST"])
@require_actor
def reorder_templates(product_id):
    data, err = json_body()
    if err:
        return err
    ordered = data.get("ordered_template_ids")
    if not isinstance(ordered, list):
        return api_error(E.VALIDATION_REQUIRED, "ordered_template_ids must be a list")
    items = svc.reorder_step_templates(product_id, ordered, g.actor)
    return jsonify({"items": items, "total": len(items)})
