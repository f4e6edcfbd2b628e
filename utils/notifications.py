from flask import current_app
from markupsafe import escape

from utils.emailer import dispatch

BRAND = "CNAM Portal"

_PURPOSE_LABELS = {
    "login": "sign in",
    "password_change": "change your password",
    "mfa_reset": "reset your two-factor authentication",
}


def _wrap(title: str, body_html: str) -> str:
    return (
        "<div style=\"font-family:Arial,sans-serif;max-width:560px;margin:0 auto\">"
        f"<h2 style=\"color:#0b5394\">{escape(title)}</h2>"
        f"{body_html}"
        f"<p style=\"color:#888;font-size:12px\">{escape(BRAND)}. This is an automated message.</p>"
        "</div>"
    )


def _code_block(code: str) -> str:
    return (
        "<p style=\"font-size:28px;letter-spacing:6px;font-weight:bold;"
        f"background:#f3f6fa;padding:12px;text-align:center\">{escape(code)}</p>"
    )


def _login_link() -> str:
    url = current_app.config.get("PORTAL_LOGIN_URL")
    if not url:
        return ""
    return f"<p><a href=\"{escape(url)}\">Sign in to the portal</a></p>"


def _minutes(seconds: int) -> int:
    return max(1, int(seconds) // 60)


def send_account_code(account, code: str, purpose: str) -> bool:
    ttl = _minutes(current_app.config.get("OTP_TTL_SECONDS", 600))
    action = _PURPOSE_LABELS.get(purpose, "continue")
    html = _wrap(
        "Your verification code",
        f"<p>Hello {escape(account.display_name)},</p>"
        f"<p>Use this code to {escape(action)}:</p>"
        f"{_code_block(code)}"
        f"<p>The code expires in {ttl} minutes. If you did not ask for it, ignore this email.</p>",
    )
    return dispatch(
        f"otp_{purpose}",
        account.email,
        "Your verification code",
        html,
        text=f"Your verification code is {code}. It expires in {ttl} minutes.",
        account_id=account.id,
    )


def send_registration_code(email: str, first_name: str, code: str) -> bool:
    ttl = _minutes(current_app.config.get("OTP_TTL_SECONDS", 600))
    html = _wrap(
        "Confirm your email address",
        f"<p>Hello {escape(first_name)},</p>"
        "<p>Enter this code to finish your registration request:</p>"
        f"{_code_block(code)}"
        f"<p>The code expires in {ttl} minutes.</p>",
    )
    return dispatch(
        "registration_otp",
        email,
        "Your registration code",
        html,
        text=f"Your registration code is {code}. It expires in {ttl} minutes.",
    )


def send_welcome_credentials(account, temporary_password: str, role: str) -> bool:
    html = _wrap(
        "Your account is ready",
        f"<p>Hello {escape(account.display_name)},</p>"
        f"<p>An account with the role <strong>{escape(role)}</strong> was created for you.</p>"
        f"<p>Email: <strong>{escape(account.email)}</strong><br>"
        f"Temporary password: <code>{escape(temporary_password)}</code></p>"
        "<p>You will be asked to choose a new password at first sign in.</p>"
        f"{_login_link()}",
    )
    return dispatch("welcome", account.email, "Your portal account", html, account_id=account.id)


def send_registration_decision(req, approved: bool) -> bool:
    if approved:
        title = "Registration approved"
        body = "<p>Your registration request was approved. Your sign in details are sent separately.</p>"
    else:
        title = "Registration not approved"
        body = "<p>Your registration request was not approved.</p>"
        if req.rejection_reason:
            body += f"<p>Reason: {escape(req.rejection_reason)}</p>"
        body += "<p>You may submit a new request at any time.</p>"

    html = _wrap(title, f"<p>Hello {escape(req.first_name)},</p>{body}")
    return dispatch(
        "registration_approved" if approved else "registration_rejected",
        req.email,
        title,
        html,
        account_id=req.account_id,
    )


def notify_reviewers(req, reviewer_emails) -> int:
    """Tell reviewers a request is waiting. Returns how many sends succeeded."""
    html = _wrap(
        "New registration request",
        f"<p>{escape(req.first_name)} {escape(req.last_name)} ({escape(req.email)}) "
        f"requested a <strong>{escape(req.request_type)}</strong> account.</p>"
        "<p>Review it from the administration screen.</p>",
    )
    sent = 0
    for email in reviewer_emails:
        if dispatch("registration_admin_notice", email, "New registration request", html):
            sent += 1
    return sent


def send_password_expiry_reminder(account, days_remaining: int) -> bool:
    plural = "s" if days_remaining > 1 else ""
    max_age = current_app.config.get("PASSWORD_MAX_AGE_DAYS", 30)
    html = _wrap(
        "Your password expires soon",
        f"<p>Hello {escape(account.display_name)},</p>"
        f"<p>Passwords on the portal must be changed every {max_age} days.</p>"
        f"<p>Yours expires in <strong>{days_remaining} day{plural}</strong>. "
        "Sign in and change it before then to avoid being asked at your next sign in.</p>"
        f"{_login_link()}",
    )
    return dispatch(
        "password_expiry_reminder",
        account.email,
        f"Your password expires in {days_remaining} day{plural}",
        html,
        account_id=account.id,
    )


def send_new_ip_alert(account, ip: str, location: str = None) -> bool:
    where = escape(ip or "unknown")
    if location:
        where = f"{where} ({escape(location)})"
    html = _wrap(
        "New sign in detected",
        f"<p>Hello {escape(account.display_name)},</p>"
        f"<p>Your account was just used from a new address: <strong>{where}</strong>.</p>"
        "<p>If this was not you, change your password and contact support.</p>",
    )
    return dispatch("security_new_ip", account.email, "New sign in to your account", html, account_id=account.id)


def send_security_alert(event) -> int:
    recipients = current_app.config.get("SECURITY_ALERT_RECIPIENTS") or []
    if not recipients:
        return 0
    subject = f"[{event.severity.upper()}] security event: {event.event_type}"
    html = _wrap(
        "Security alert",
        f"<p>Event: <strong>{escape(event.event_type)}</strong> ({escape(event.severity)})</p>"
        f"<p>Account: {escape(event.account_id or '-')}<br>"
        f"IP: {escape(event.ip or '-')}<br>"
        f"Location: {escape(event.location or '-')}</p>"
        f"<pre>{escape(event.details_json or '')}</pre>",
    )
    sent = 0
    for email in recipients:
        if dispatch("security_alert", email, subject, html):
            sent += 1
    return sent
