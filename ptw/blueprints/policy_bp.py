"""
PTW Engine — Module Policy Blueprint.

  GET  /api/v1/companies/<cid>/policies/<module>   – effective definition
  PUT  /api/v1/companies/<cid>/policies/<module>   – replace (admin only)
"""

from flask import Blueprint, g, jsonify, request

from ptw.auth import require_admin, require_identity
from ptw.blueprints.errors import register_error_handlers
from ptw.core.exceptions import NotFoundError, ValidationError
from ptw.services import policy_store

policy_bp = Blueprint("policy_bp", __name__, url_prefix="/api/v1")
register_error_handlers(policy_bp)


@policy_bp.route("/companies/<int:company_id>/policies/<module>", methods=["GET"])
@require_identity
def get_policy(company_id, module):
    if g.identity.company_id != company_id:
        raise NotFoundError(resource="Company", resource_id=company_id)
    policy = policy_store.get_policy(company_id, module)
    return jsonify({
        "company_id": company_id,
        "module": module,
        "version": policy.version,
        "is_default": policy.version == 0,
        "definition": policy.to_definition(),
    })


@policy_bp.route("/companies/<int:company_id>/policies/<module>", methods=["PUT"])
@require_admin
def put_policy(company_id, module):
    """Validate and store a new definition; bumps the policy version."""
    if g.identity.company_id != company_id:
        raise NotFoundError(resource="Company", resource_id=company_id)
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    definition = data.get("definition", data)
    record = policy_store.save_policy(company_id, definition, module=module, updated_by=g.identity.user_id)
    return jsonify(record.to_dict())
