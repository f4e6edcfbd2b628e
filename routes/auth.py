from flask import Blueprint, request, jsonify, current_app, g

from errors import RateLimitError, ValidationError
from security.csrf import issue_csrf_token
from security.password_policy import password_strength
from security.rate_limit import hit
from security.rbac import can, dashboard_route, is_allowed, roles_for_screen
from services import login as login_service
from services.accounts import account_summary
from services.passwords import SecondFactorProof, change_password as change_account_password
from utils.audit import record_event
from utils.auth_context import login_required
from utils.client import client_ip


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _proof(data: dict) -> SecondFactorProof:
    return SecondFactorProof(mode=(data.get("mode") or "email_otp"), code=data.get("code") or "")


def _login_response(outcome):
    resp = jsonify(outcome.to_dict())
    if outcome.session_token:
        cookie_name = current_app.config.get("AUTH_COOKIE_NAME", "insureportal_session")
        max_age = current_app.config.get("SESSION_LIFETIME_SECONDS", 8 * 60 * 60)
        resp.set_cookie(
            cookie_name,
            outcome.session_token,
            httponly=True,
            secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
            samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
            max_age=max_age,
            path="/",
        )
        resp = issue_csrf_token(resp)
    return resp, 200


@auth_bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    email = data.get("email") or ""
    password = data.get("password") or ""

    allowed, retry_after = hit(
        f"login:{client_ip()}",
        current_app.config.get("LOGIN_RATE_MAX_REQUESTS", 15),
        current_app.config.get("LOGIN_RATE_WINDOW_SECONDS", 60),
    )
    if not allowed:
        raise RateLimitError("Too many login requests. Slow down.", retry_after)

    outcome = login_service.attempt_login(email, password)
    return _login_response(outcome)


@auth_bp.post("/login/code")
def login_code():
    data = request.get_json(silent=True) or {}
    dispatch = login_service.request_login_code(data.get("challenge_token"))
    return jsonify(
        message="Verification code sent",
        sent_to=dispatch.sent_to,
        expires_at=dispatch.expires_at.isoformat(),
    ), 200


@auth_bp.post("/login/mfa")
def login_mfa():
    data = request.get_json(silent=True) or {}
    outcome = login_service.complete_mfa(
        data.get("challenge_token"),
        data.get("code"),
        data.get("mode") or "totp",
    )
    return _login_response(outcome)


@auth_bp.post("/login/password")
def login_password():
    data = request.get_json(silent=True) or {}
    outcome = login_service.complete_password_rotation(
        data.get("challenge_token"),
        data.get("new_password") or "",
        data.get("confirmation") or "",
        _proof(data),
    )
    return _login_response(outcome)


@auth_bp.post("/password_strength")
def check_password_strength():
    data = request.get_json(silent=True) or {}
    password = data.get("password") or ""
    return jsonify(password_strength(password)), 200


@auth_bp.get("/me")
@login_required
def me():
    summary = account_summary(g.user)
    summary["dashboard"] = dashboard_route(g.user.roles)
    return jsonify(summary), 200


@auth_bp.post("/access")
@login_required
def access():
    """Allow/deny for the UI: {"capability": ...}, {"screen": ...} or {"required_roles": [...]}."""
    data = request.get_json(silent=True) or {}
    if data.get("capability"):
        target = data["capability"]
        if not isinstance(target, str):
            raise ValidationError("capability must be a string")
        allowed = can(g.user, target)
    elif data.get("screen"):
        target = data["screen"]
        if not isinstance(target, str):
            raise ValidationError("screen must be a string")
        allowed = is_allowed(roles_for_screen(target), g.user.roles)
    else:
        target = data.get("required_roles") or []
        if not isinstance(target, list) or not all(isinstance(r, str) for r in target):
            raise ValidationError("required_roles must be a list of role names")
        allowed = is_allowed(target, g.user.roles)

    if not allowed:
        record_event(
            "access_denied",
            "high",
            account_id=g.user.id,
            details={
                "attempted_path": target,
                "user_roles": sorted(g.user.role_names),
            },
        )
    return jsonify(allowed=allowed), 200


@auth_bp.post("/logout")
@login_required
def logout():
    cookie_name = current_app.config.get("AUTH_COOKIE_NAME", "insureportal_session")
    raw_token = request.cookies.get(cookie_name)

    login_service.logout(raw_token, g.user.id)

    resp = jsonify(message="Logged out")
    resp.delete_cookie(cookie_name, path="/")
    return resp, 200


@auth_bp.post("/logout_all")
@login_required
def logout_all():
    cookie_name = current_app.config.get("AUTH_COOKIE_NAME", "insureportal_session")

    count = login_service.logout_all(g.user.id)

    resp = jsonify(message="Logged out everywhere", revoked_sessions=count)
    resp.delete_cookie(cookie_name, path="/")
    return resp, 200


@auth_bp.post("/change_password")
@login_required
def change_password():
    data = request.get_json(silent=True) or {}
    change_account_password(
        g.user.id,
        data.get("new_password") or "",
        data.get("confirmation") or "",
        _proof(data),
    )
    return jsonify(message="Password updated"), 200
