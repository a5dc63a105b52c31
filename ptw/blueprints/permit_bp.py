"""
PTW Engine — Permit Blueprint.

Routes (all under /api/v1, caller from X-User-Id):
  GET    /companies/<cid>/permits                      – list (visibility + filters)
  POST   /companies/<cid>/permits                      – create (draft)
  GET    /companies/<cid>/permits/stats/dashboard      – counts by status
  GET    /companies/<cid>/permits/<id>                 – read
  DELETE /companies/<cid>/permits/<id>                 – delete (draft only)
  POST   /companies/<cid>/permits/<id>/submit
  POST   /companies/<cid>/permits/<id>/decide          – {decision, comments, step?}
  POST   /companies/<cid>/permits/<id>/activate
  POST   /companies/<cid>/permits/<id>/closure         – {closure payload}
  POST   /companies/<cid>/permits/<id>/closure/decide  – {decision, comments}
  POST   /companies/<cid>/permits/<id>/stop            – {reason, safety_issue, ...}
  POST   /companies/<cid>/permits/<id>/extend          – {hours, reason}
  POST   /companies/<cid>/permits/<id>/reassign        – {step, approver_id, flow?}

Optimistic concurrency: send the permit ``version`` as ``If-Match`` or
``expected_version`` in the body; responses carry it back as ``ETag``.
"""

from flask import Blueprint, g, jsonify, request

from ptw.auth import require_identity
from ptw.blueprints.errors import register_error_handlers
from ptw.core.exceptions import NotFoundError, ValidationError
from ptw.services import permit_service

permit_bp = Blueprint("permit_bp", __name__, url_prefix="/api/v1")
register_error_handlers(permit_bp)


# ── helpers ──────────────────────────────────────────────────────────────

def _check_company(company_id):
    """Callers only ever see their own company; anything else is 'not found'."""
    if g.identity.company_id != company_id:
        raise NotFoundError(resource="Company", resource_id=company_id)


def _body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _expected_version(data):
    raw = request.headers.get("If-Match", "").strip()
    if raw.startswith("W/"):
        raw = raw[2:]
    raw = raw.strip('"') or data.get("expected_version")
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError("expected_version must be an integer",
                              details={"expected_version": repr(raw)}) from None


def _permit_response(permit, status=200):
    resp = jsonify(permit.to_dict())
    resp.status_code = status
    resp.headers["ETag"] = f'"{permit.version}"'
    return resp


# ═════════════════════════════════════════════════════════════════════════════
# READ / CREATE / DELETE
# ═════════════════════════════════════════════════════════════════════════════

@permit_bp.route("/companies/<int:company_id>/permits", methods=["GET"])
@require_identity
def list_permits(company_id):
    """List permits visible to the caller.

    Query: status, plant_id, area_id, type, search, page, per_page
    """
    _check_company(company_id)
    items, total = permit_service.list_permits(
        g.identity,
        status=request.args.get("status"),
        plant_id=request.args.get("plant_id", type=int),
        area_id=request.args.get("area_id", type=int),
        work_type=request.args.get("type"),
        search=request.args.get("search"),
        page=request.args.get("page", 1, type=int),
        per_page=request.args.get("per_page", 20, type=int),
    )
    return jsonify({
        "items": [p.to_dict(include_children=False) for p in items],
        "total": total,
        "page": request.args.get("page", 1, type=int),
    })


@permit_bp.route("/companies/<int:company_id>/permits", methods=["POST"])
@require_identity
def create_permit(company_id):
    _check_company(company_id)
    permit = permit_service.create_permit(company_id, _body(), g.identity)
    return _permit_response(permit, 201)


@permit_bp.route("/companies/<int:company_id>/permits/stats/dashboard", methods=["GET"])
@require_identity
def dashboard(company_id):
    _check_company(company_id)
    return jsonify(permit_service.dashboard_stats(g.identity))


@permit_bp.route("/companies/<int:company_id>/permits/<int:permit_id>", methods=["GET"])
@require_identity
def get_permit(company_id, permit_id):
    _check_company(company_id)
    return _permit_response(permit_service.get_permit(permit_id, g.identity))


@permit_bp.route("/companies/<int:company_id>/permits/<int:permit_id>", methods=["DELETE"])
@require_identity
def delete_permit(company_id, permit_id):
    _check_company(company_id)
    permit_service.delete_permit(permit_id, g.identity)
    return jsonify({"deleted": True, "id": permit_id})


# ═════════════════════════════════════════════════════════════════════════════
# TRANSITIONS
# ═════════════════════════════════════════════════════════════════════════════

@permit_bp.route("/companies/<int:company_id>/permits/<int:permit_id>/submit", methods=["POST"])
@require_identity
def submit_permit(company_id, permit_id):
    _check_company(company_id)
    data = _body()
    permit = permit_service.submit(permit_id, g.identity, expected_version=_expected_version(data))
    return _permit_response(permit)


@permit_bp.route("/companies/<int:company_id>/permits/<int:permit_id>/decide", methods=["POST"])
@require_identity
def decide_permit(company_id, permit_id):
    """Approve or reject the pending approval step.

    Body: { decision: "approve"|"reject", comments?, step? }
    """
    _check_company(company_id)
    data = _body()
    permit = permit_service.decide(
        permit_id,
        g.identity,
        data.get("decision"),
        data.get("comments"),
        step=data.get("step"),
        expected_version=_expected_version(data),
    )
    return _permit_response(permit)


@permit_bp.route("/companies/<int:company_id>/permits/<int:permit_id>/activate", methods=["POST"])
@require_identity
def activate_permit(company_id, permit_id):
    _check_company(company_id)
    data = _body()
    permit = permit_service.activate(permit_id, g.identity, expected_version=_expected_version(data))
    return _permit_response(permit)


@permit_bp.route("/companies/<int:company_id>/permits/<int:permit_id>/closure", methods=["POST"])
@require_identity
def request_closure(company_id, permit_id):
    """Body: { reason, work_completed, safety_checklist_completed, evidence?, comments? }"""
    _check_company(company_id)
    data = _body()
    payload = {k: v for k, v in data.items() if k != "expected_version"}
    permit = permit_service.request_closure(
        permit_id, g.identity, payload, expected_version=_expected_version(data),
    )
    return _permit_response(permit)


@permit_bp.route("/companies/<int:company_id>/permits/<int:permit_id>/closure/decide", methods=["POST"])
@require_identity
def decide_closure(company_id, permit_id):
    _check_company(company_id)
    data = _body()
    permit = permit_service.decide_closure(
        permit_id,
        g.identity,
        data.get("decision"),
        data.get("comments"),
        expected_version=_expected_version(data),
    )
    return _permit_response(permit)


@permit_bp.route("/companies/<int:company_id>/permits/<int:permit_id>/stop", methods=["POST"])
@require_identity
def stop_permit(company_id, permit_id):
    """Body: { reason, safety_issue?, immediate_actions?, comments? }"""
    _check_company(company_id)
    data = _body()
    payload = {k: v for k, v in data.items() if k != "expected_version"}
    permit = permit_service.stop(permit_id, g.identity, payload, expected_version=_expected_version(data))
    return _permit_response(permit)


@permit_bp.route("/companies/<int:company_id>/permits/<int:permit_id>/extend", methods=["POST"])
@require_identity
def extend_permit(company_id, permit_id):
    """Body: { hours, reason? }"""
    _check_company(company_id)
    data = _body()
    if data.get("hours") is None:
        raise ValidationError("hours is required", details={"hours": "required"})
    permit = permit_service.extend(
        permit_id,
        g.identity,
        data.get("hours"),
        data.get("reason"),
        expected_version=_expected_version(data),
    )
    return _permit_response(permit)


@permit_bp.route("/companies/<int:company_id>/permits/<int:permit_id>/reassign", methods=["POST"])
@require_identity
def reassign_approver(company_id, permit_id):
    """Body: { step, approver_id, flow?: "approval"|"closure" }"""
    _check_company(company_id)
    data = _body()
    missing = [f for f in ("step", "approver_id") if data.get(f) is None]
    if missing:
        raise ValidationError("Missing required fields", details={f: "required" for f in missing})
    permit = permit_service.reassign_approver(
        permit_id,
        g.identity,
        data["step"],
        data["approver_id"],
        data.get("flow", "approval"),
        expected_version=_expected_version(data),
    )
    return _permit_response(permit)
