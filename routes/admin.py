from flask import Blueprint, jsonify, g, request, send_file

from models.account import Account, Role
from security.rbac import require_capability
from services import accounts, mfa, registration
from utils.storage import resolve_evidence_token

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


@admin_bp.get("/registration-requests")
@require_capability("registration.review")
def list_registration_requests():
    status = (request.args.get("status") or "").strip().lower() or None
    rows = registration.list_requests(g.user, status=status)
    return jsonify([r.to_dict() for r in rows]), 200


@admin_bp.get("/registration-requests/<int:request_id>")
@require_capability("registration.review")
def get_registration_request(request_id: int):
    return jsonify(registration.get_request(request_id).to_dict()), 200


@admin_bp.post("/registration-requests/<int:request_id>/approve")
@require_capability("registration.review")
def approve_registration_request(request_id: int):
    data = request.get_json(silent=True) or {}
    result = registration.approve(request_id, data.get("role"), g.user)
    return jsonify(
        message="Request approved",
        request=result.request.to_dict(),
        account_id=result.account.id,
        notifications=result.notifications,
    ), 200


@admin_bp.post("/registration-requests/<int:request_id>/reject")
@require_capability("registration.review")
def reject_registration_request(request_id: int):
    data = request.get_json(silent=True) or {}
    req = registration.reject(request_id, data.get("reason"), g.user)
    return jsonify(message="Request rejected", request=req.to_dict()), 200


@admin_bp.get("/registration-requests/<int:request_id>/document")
@require_capability("registration.review")
def registration_document(request_id: int):
    return jsonify(registration.evidence_url(request_id, g.user)), 200


@admin_bp.get("/evidence/<token>")
def download_evidence(token: str):
    # the signed, short-lived token is the authorization
    return send_file(resolve_evidence_token(token), max_age=0)


@admin_bp.get("/accounts")
@require_capability("accounts.manage_roles")
def list_accounts():
    role_filter = (request.args.get("role") or "").strip().lower()
    q = Account.query
    if role_filter:
        q = q.join(Account.roles).filter(Role.name == role_filter)

    rows = q.order_by(Account.created_at.desc()).limit(200).all()
    return jsonify([accounts.account_summary(a) for a in rows]), 200


@admin_bp.post("/accounts")
@require_capability("accounts.create")
def create_account():
    data = request.get_json(silent=True) or {}
    account = accounts.create_account(
        g.user,
        data.get("email"),
        data.get("first_name"),
        data.get("last_name"),
        data.get("roles") or [],
        phone=data.get("phone"),
        password=data.get("password"),
    )
    return jsonify(message="Account created", account=accounts.account_summary(account)), 201


@admin_bp.post("/accounts/<int:account_id>/roles")
@require_capability("accounts.manage_roles")
def update_account_roles(account_id: int):
    data = request.get_json(silent=True) or {}
    roles = data.get("roles")
    if not isinstance(roles, list):
        roles = []
    names = accounts.set_roles(account_id, roles, g.user)
    return jsonify(message="Roles updated", roles=names), 200


@admin_bp.post("/accounts/<int:account_id>/mfa/reset")
@require_capability("mfa.reset_any")
def reset_account_mfa(account_id: int):
    data = request.get_json(silent=True) or {}
    mfa.reset_mfa(account_id, g.user, reason=data.get("reason") or "admin_reset")
    return jsonify(message="Two-factor authentication reset"), 200


@admin_bp.post("/accounts/<int:account_id>/unlock")
@require_capability("accounts.unlock")
def unlock_account(account_id: int):
    accounts.unlock_account(account_id, g.user)
    return jsonify(message="Account unlocked"), 200
