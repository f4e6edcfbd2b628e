from flask import Blueprint, request, jsonify, g

from services import mfa
from models.security_settings import SecuritySettings
from utils.auth_context import login_required

mfa_bp = Blueprint("mfa", __name__, url_prefix="/mfa")


@mfa_bp.get("/status")
@login_required
def status():
    settings = SecuritySettings.for_account(g.user.id)
    return jsonify(
        mfa_status=settings.mfa_status,
        mfa_enabled_at=settings.mfa_enabled_at.isoformat() if settings.mfa_enabled_at else None,
        required=mfa.requires_second_factor(g.user, settings),
        methods=mfa.available_methods(settings),
    ), 200


@mfa_bp.post("/code")
@login_required
def send_code():
    data = request.get_json(silent=True) or {}
    dispatch = mfa.request_code(g.user.id, data.get("purpose") or "password_change")
    return jsonify(
        message="Verification code sent",
        purpose=dispatch.purpose,
        sent_to=dispatch.sent_to,
        expires_at=dispatch.expires_at.isoformat(),
    ), 200


@mfa_bp.post("/totp/enroll")
@login_required
def enroll():
    enrollment = mfa.begin_enrollment(g.user.id)
    return jsonify(
        secret=enrollment.secret,
        provisioning_uri=enrollment.provisioning_uri,
        status=enrollment.status,
    ), 200


@mfa_bp.post("/totp/verify")
@login_required
def verify_totp():
    data = request.get_json(silent=True) or {}
    result = mfa.verify(g.user.id, data.get("code"), mfa.MODE_TOTP)
    return jsonify(
        verified=True,
        enrollment_completed=result.enrollment_completed,
        mfa_status=result.mfa_status,
    ), 200


@mfa_bp.post("/reset")
@login_required
def reset_own():
    data = request.get_json(silent=True) or {}
    enrollment = mfa.reset_own_mfa(g.user, data.get("code"))
    return jsonify(
        message="Two-factor authentication reset",
        secret=enrollment.secret,
        provisioning_uri=enrollment.provisioning_uri,
        status=enrollment.status,
    ), 200
