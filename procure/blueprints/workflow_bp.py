"""
Workflow Blueprint — approval definitions and running instances.

Routes:
  GET    /workflows                                   – list definitions
  POST   /workflows                                   – create definition
  GET    /workflows/<id>                              – definition detail
  PUT    /workflows/<id>                              – update definition
  DELETE /workflows/<id>                              – soft-delete definition
  POST   /workflows/<id>/preview                      – required levels + path for a context

  GET    /workflow-instances                          – list instances (filters, paginated)
  POST   /workflow-instances                          – submit a document for approval
  GET    /workflow-instances/<id>                     – instance with history
  POST   /workflow-instances/<id>/actions             – approve / reject / recall / request_changes
  POST   /workflow-instances/<id>/cancel              – cancel a pending instance
  GET    /workflow-instances/<id>/summary             – per-level approval summary
  GET    /workflow-instances/<id>/pending-approvers   – who still has to act
  GET    /workflow-instances/pending/me               – my pending approvals
  GET    /workflow-instances/recent                   – recently completed
  GET    /workflow-instances/statistics               – counts and durations by status
  GET    /workflow-instances/by-document/<type>/<id>  – instance for a document

Document-level permissions are checked against the document type as
resource, e.g. submitting a purchase order needs ``purchase_order:submit``.
"""

import logging

from flask import Blueprint, g, jsonify, request

from procure.blueprints import paginate_query, request_json
from procure.core.exceptions import NotFoundError, ValidationError
from procure.middleware.jwt_auth import current_user
from procure.middleware.permission_required import check_permission, require_permission
from procure.models.workflow import WorkflowInstance
from procure.services import workflow_definition_service as definitions
from procure.services import workflow_engine as engine
from procure.services.approval_router import preview_submission
from procure.utils.errors import E, api_error

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")

# approver action -> permission action on the document resource
ACTION_PERMISSIONS = {
    "approve": "approve",
    "reject": "reject",
    "request_changes": "reject",
    "recall": "recall",
}


def _actor():
    return getattr(g, "jwt_user_id", None)


def _context_arg(data: dict) -> dict:
    context = data.get("context") or {}
    if not isinstance(context, dict):
        raise ValidationError("context must be an object", details={"context": "object required"})
    return context


def _can_view(instance: WorkflowInstance):
    """Submitter and path approvers see their instance; others need workflow:read:all."""
    user = current_user()
    if user is None:
        return api_error(E.UNAUTHENTICATED, "Authentication required")
    involved = {instance.submitted_by_id}
    for entry in instance.approval_path or []:
        involved.update(entry.get("approvers", []))
    if user.id in involved:
        return None
    return check_permission("workflow", "read", "all")


# ═════════════════════════════════════════════════════════════════════════════
# DEFINITIONS
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/workflows", methods=["GET"])
@require_permission("workflow", "read", scope="all")
def list_workflows():
    """List definitions, optionally filtered by document_type / active."""
    items = definitions.list_definitions(
        document_type=request.args.get("document_type"),
        active_only=request.args.get("active") == "true",
    )
    return jsonify({"workflows": [d.to_dict() for d in items], "total": len(items)})


@workflow_bp.route("/workflows", methods=["POST"])
@require_permission("workflow", "create", scope="all")
def create_workflow():
    definition = definitions.create_definition(request_json(), actor_user_id=_actor())
    return jsonify(definition.to_dict()), 201


@workflow_bp.route("/workflows/<int:definition_id>", methods=["GET"])
@require_permission("workflow", "read", scope="all")
def get_workflow(definition_id):
    return jsonify(definitions.get_definition(definition_id).to_dict())


@workflow_bp.route("/workflows/<int:definition_id>", methods=["PUT"])
@require_permission("workflow", "update", scope="all")
def update_workflow(definition_id):
    definition = definitions.update_definition(definition_id, request_json(), actor_user_id=_actor())
    return jsonify(definition.to_dict())


@workflow_bp.route("/workflows/<int:definition_id>", methods=["DELETE"])
@require_permission("workflow", "delete", scope="all")
def delete_workflow(definition_id):
    definitions.delete_definition(definition_id, actor_user_id=_actor())
    return jsonify({"deleted": True})


@workflow_bp.route("/workflows/<int:definition_id>/preview", methods=["POST"])
@require_permission("workflow", "read")
def preview_workflow(definition_id):
    """Body: {context: {...}} — nothing is persisted."""
    definition = definitions.get_definition(definition_id)
    return jsonify(preview_submission(definition, _context_arg(request_json())))


# ═════════════════════════════════════════════════════════════════════════════
# INSTANCES
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/workflow-instances", methods=["GET"])
@require_permission("workflow", "read", scope="all")
def list_instances():
    q = WorkflowInstance.query
    status = request.args.get("status")
    if status:
        q = q.filter(WorkflowInstance.status == status)
    document_type = request.args.get("document_type")
    if document_type:
        q = q.filter(WorkflowInstance.document_type == document_type)
    items, total = paginate_query(q.order_by(WorkflowInstance.id.desc()))
    return jsonify({"instances": [i.to_dict(include_history=False) for i in items], "total": total})


@workflow_bp.route("/workflow-instances", methods=["POST"])
def submit_document():
    """Body: {document_type, document_id, document_number?, context?, definition_id?}"""
    data = request_json()
    document_type = data.get("document_type")
    if not document_type:
        return api_error(E.VALIDATION_REQUIRED, "document_type is required")
    context = _context_arg(data)
    denied = check_permission(document_type, "submit", "own", context)
    if denied:
        return denied

    instance = engine.initiate_workflow(
        document_type=document_type,
        document_id=data.get("document_id"),
        submitted_by_id=_actor(),
        context=context,
        document_number=data.get("document_number"),
        definition_id=data.get("definition_id"),
    )
    return jsonify(instance.to_dict()), 201


@workflow_bp.route("/workflow-instances/<int:instance_id>", methods=["GET"])
def get_instance(instance_id):
    instance = engine.get_instance(instance_id)
    denied = _can_view(instance)
    if denied:
        return denied
    return jsonify(instance.to_dict())


@workflow_bp.route("/workflow-instances/<int:instance_id>/actions", methods=["POST"])
def act_on_instance(instance_id):
    """Body: {action, level?, comments?, metadata?, expected_version?}"""
    data = request_json()
    action = data.get("action")
    if action not in ACTION_PERMISSIONS:
        return api_error(
            E.VALIDATION_INVALID, f"Unknown approval action: {action}",
            details={"action": sorted(ACTION_PERMISSIONS)},
        )
    instance = engine.get_instance(instance_id)
    denied = check_permission(
        instance.document_type, ACTION_PERMISSIONS[action], "own", instance.context or {},
    )
    if denied:
        return denied

    metadata = data.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        return api_error(E.VALIDATION_INVALID, "metadata must be an object")
    instance = engine.record_approval(
        instance_id=instance_id,
        level=data.get("level"),
        approver_id=_actor(),
        action=action,
        comments=data.get("comments"),
        metadata=metadata,
        expected_version=data.get("expected_version"),
    )
    return jsonify(instance.to_dict())


@workflow_bp.route("/workflow-instances/<int:instance_id>/cancel", methods=["POST"])
def cancel_instance(instance_id):
    if current_user() is None:
        return api_error(E.UNAUTHENTICATED, "Authentication required")
    instance = engine.cancel_workflow(instance_id, _actor(), request_json().get("reason"))
    return jsonify(instance.to_dict())


@workflow_bp.route("/workflow-instances/<int:instance_id>/summary", methods=["GET"])
def instance_summary(instance_id):
    instance = engine.get_instance(instance_id)
    denied = _can_view(instance)
    if denied:
        return denied
    return jsonify(engine.get_approval_summary(instance))


@workflow_bp.route("/workflow-instances/<int:instance_id>/pending-approvers", methods=["GET"])
def instance_pending_approvers(instance_id):
    instance = engine.get_instance(instance_id)
    denied = _can_view(instance)
    if denied:
        return denied
    return jsonify({"instance_id": instance.id, "pending_approvers": engine.get_pending_approvers(instance)})


@workflow_bp.route("/workflow-instances/pending/me", methods=["GET"])
def my_pending_approvals():
    user = current_user()
    if user is None:
        return api_error(E.UNAUTHENTICATED, "Authentication required")
    items = engine.get_pending_approvals_for_user(user.id, request.args.get("document_type"))
    return jsonify({"instances": [i.to_dict(include_history=False) for i in items], "total": len(items)})


@workflow_bp.route("/workflow-instances/recent", methods=["GET"])
@require_permission("workflow", "read", scope="all")
def recent_completions():
    days = request.args.get("days", 7, type=int)
    limit = min(request.args.get("limit", 100, type=int), 1000)
    items = engine.find_recent_completions(days=days, limit=limit)
    return jsonify({"instances": [i.to_dict(include_history=False) for i in items], "total": len(items)})


@workflow_bp.route("/workflow-instances/statistics", methods=["GET"])
@require_permission("workflow", "read", scope="all")
def instance_statistics():
    return jsonify(engine.get_statistics(request.args.get("document_type")))


@workflow_bp.route("/workflow-instances/by-document/<document_type>/<document_id>", methods=["GET"])
def instance_by_document(document_type, document_id):
    instance = engine.find_by_document(document_type, document_id)
    if instance is None:
        raise NotFoundError(resource="WorkflowInstance", resource_id=f"{document_type}/{document_id}")
    denied = _can_view(instance)
    if denied:
        return denied
    return jsonify(instance.to_dict())
