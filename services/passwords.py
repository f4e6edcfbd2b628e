import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app

from errors import AccountLockedError, ValidationError, WeakPasswordError
from models import db
from models.otp_challenge import PURPOSE_PASSWORD_CHANGE
from models.password_history import PasswordHistory
from models.security_settings import SecuritySettings
from security.bruteforce import is_locked
from security.password import hash_password, verify_password
from security.password_policy import check_password, missing_rules, validate_password
from services import mfa
from services.accounts import get_account
from utils.audit import record_event
from utils.notifications import send_password_expiry_reminder


@dataclass(frozen=True)
class SecondFactorProof:
    mode: str   # totp | email_otp
    code: str


def needs_rotation(settings: SecuritySettings, now: datetime = None) -> bool:
    if settings.password_must_change:
        return True
    max_age_days = current_app.config.get("PASSWORD_MAX_AGE_DAYS", 30)
    if not max_age_days or settings.password_changed_at is None:
        return False
    now = now or datetime.utcnow()
    return now > settings.password_changed_at + timedelta(days=max_age_days)


def _password_recently_used(account, new_password: str, history_count: int) -> bool:
    if verify_password(new_password, account.password_hash):
        return True

    if history_count <= 0:
        return False

    recent = (
        PasswordHistory.query
        .filter_by(account_id=account.id)
        .order_by(PasswordHistory.created_at.desc())
        .limit(history_count)
        .all()
    )
    return any(verify_password(new_password, row.password_hash) for row in recent)


def change_password(account_id: int, new_password: str, confirmation: str, proof: SecondFactorProof) -> None:
    """
    Replace the password. Never accepted on session trust alone: a fresh
    second-factor proof is required every time.
    """
    requirements = check_password(new_password)
    missing = missing_rules(requirements)
    if missing:
        raise WeakPasswordError(missing, requirements)
    valid, errors = validate_password(new_password)
    if not valid:
        raise ValidationError(errors[0])

    if new_password != confirmation:
        raise ValidationError("Passwords do not match", code="confirmation_mismatch")

    account = get_account(account_id)
    settings = SecuritySettings.for_account(account.id)
    db.session.commit()

    locked, seconds_left = is_locked(settings)
    if locked:
        raise AccountLockedError(seconds_left)

    if proof is None or not proof.code:
        raise ValidationError("A verification code is required to change your password", code="proof_required")

    # checked before the code is spent so a refused password leaves it usable
    history_count = current_app.config.get("PASSWORD_HISTORY_COUNT", 2)
    if _password_recently_used(account, new_password, history_count):
        raise ValidationError("Password was used recently", code="password_reused")

    mfa.verify(account.id, proof.code, proof.mode, purpose=PURPOSE_PASSWORD_CHANGE)

    db.session.add(PasswordHistory(account_id=account.id, password_hash=account.password_hash))
    account.password_hash = hash_password(new_password)
    settings.password_changed_at = datetime.utcnow()
    settings.password_must_change = False
    db.session.commit()

    record_event("password_change", "low", account_id=account.id, details={"method": proof.mode})


def send_expiry_reminders(now: datetime = None) -> dict:
    """
    Mail every account whose password expires within
    PASSWORD_EXPIRY_REMINDER_DAYS. Accounts already flagged must-change are
    skipped. Returns the sent and failed counts.
    """
    now = now or datetime.utcnow()
    max_age_days = current_app.config.get("PASSWORD_MAX_AGE_DAYS", 30)
    window_days = current_app.config.get("PASSWORD_EXPIRY_REMINDER_DAYS", 7)
    cutoff = now - timedelta(days=max_age_days - window_days)

    due = (
        SecuritySettings.query
        .filter_by(password_must_change=False)
        .filter(SecuritySettings.password_changed_at < cutoff)
        .all()
    )

    sent = failed = 0
    for settings in due:
        expires_at = settings.password_changed_at + timedelta(days=max_age_days)
        days_remaining = math.ceil((expires_at - now).total_seconds() / 86400)
        if days_remaining <= 0 or days_remaining > window_days:
            continue
        if send_password_expiry_reminder(settings.account, days_remaining):
            sent += 1
        else:
            failed += 1

    current_app.logger.info("password expiry reminders: %s sent, %s failed", sent, failed)
    return {"sent": sent, "failed": failed}
