"""
Second factor engine: email one-time codes and authenticator (TOTP) codes
behind one ``verify`` call.

Attempt counters are hard ceilings. Every increment is a single conditional
UPDATE (``attempts < max``) so two concurrent wrong guesses can never both
land under the ceiling.
"""
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import pyotp
from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from errors import (
    AttemptsExhaustedError,
    AuthenticationError,
    AuthorizationError,
    CodeExpiredError,
    DependencyError,
    InvalidCodeError,
    StateConflictError,
    ValidationError,
)
from models import db
from models.otp_challenge import OtpChallenge, PURPOSES, PURPOSE_LOGIN, PURPOSE_MFA_RESET
from models.security_settings import (
    SecuritySettings,
    MFA_DISABLED,
    MFA_ENABLED,
    MFA_ENFORCED,
    MFA_PENDING,
)
from security.codes import code_expiry, code_matches, generate_code, hash_code, normalize_code
from security.rbac import can
from services.accounts import get_account
from utils.addresses import mask_email
from utils.audit import record_event
from utils.notifications import send_account_code

MODE_TOTP = "totp"
MODE_EMAIL_OTP = "email_otp"
MODES = (MODE_TOTP, MODE_EMAIL_OTP)


@dataclass(frozen=True)
class CodeDispatch:
    purpose: str
    sent_to: str
    expires_at: datetime


@dataclass(frozen=True)
class Enrollment:
    secret: str
    provisioning_uri: str
    status: str


@dataclass(frozen=True)
class VerifyResult:
    mode: str
    purpose: str
    enrollment_completed: bool = False
    mfa_status: Optional[str] = None


def _max_attempts() -> int:
    return current_app.config.get("OTP_MAX_ATTEMPTS", 5)


def _enforced_by_role(account) -> bool:
    enforced = set(current_app.config.get("MFA_ENFORCED_ROLES", ()))
    return bool(account.role_names & enforced)


def requires_second_factor(account, settings: SecuritySettings) -> bool:
    if current_app.config.get("MFA_REQUIRED_FOR_ALL"):
        return True
    return settings.mfa_active or _enforced_by_role(account)


def available_methods(settings: SecuritySettings) -> list:
    methods = [MODE_EMAIL_OTP]
    if settings.mfa_active and settings.mfa_secret:
        methods.insert(0, MODE_TOTP)
    return methods


# --- email OTP ---------------------------------------------------------------

def _write_slot(account_id: int, purpose: str, code_hash: str) -> OtpChallenge:
    """Latest wins: the (account, purpose) slot is overwritten, never duplicated."""
    fields = dict(
        code_hash=code_hash,
        created_at=datetime.utcnow(),
        expires_at=code_expiry(),
        attempts=0,
        consumed_at=None,
    )
    row = OtpChallenge.query.filter_by(account_id=account_id, purpose=purpose).first()
    if row is None:
        try:
            row = OtpChallenge(account_id=account_id, purpose=purpose, **fields)
            db.session.add(row)
            db.session.commit()
            return row
        except IntegrityError:
            # a concurrent request filled the slot first; overwrite it
            db.session.rollback()
            row = OtpChallenge.query.filter_by(account_id=account_id, purpose=purpose).first()

    for key, value in fields.items():
        setattr(row, key, value)
    db.session.commit()
    return row


def request_code(account_id: int, purpose: str = PURPOSE_LOGIN) -> CodeDispatch:
    if purpose not in PURPOSES:
        raise ValidationError("Unknown code purpose")

    account = get_account(account_id)
    code = generate_code()
    row = _write_slot(account.id, purpose, hash_code(code))

    # slot is committed; a failed send leaves it for the user to overwrite by resending
    if not send_account_code(account, code, purpose):
        raise DependencyError("Could not send the verification code. Try again.")

    record_event("mfa_challenge_sent", "low", account_id=account.id, details={"purpose": purpose})
    return CodeDispatch(purpose=purpose, sent_to=mask_email(account.email), expires_at=row.expires_at)


def _verify_email_otp(account, code: str, purpose: str) -> VerifyResult:
    max_attempts = _max_attempts()
    row = OtpChallenge.query.filter_by(account_id=account.id, purpose=purpose).first()
    if row is None or row.consumed_at is not None:
        raise AuthenticationError("No active verification code. Request a new one.", code="no_active_code")

    if row.attempts >= max_attempts:
        record_event(
            "access_denied",
            "high",
            account_id=account.id,
            details={"reason": "max_otp_attempts_exceeded", "purpose": purpose},
        )
        raise AttemptsExhaustedError()

    if row.expires_at <= datetime.utcnow():
        raise CodeExpiredError()

    if not code_matches(code, row.code_hash):
        result = db.session.execute(
            db.update(OtpChallenge)
            .where(OtpChallenge.id == row.id, OtpChallenge.attempts < max_attempts)
            .values(attempts=OtpChallenge.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        if not result.rowcount:
            raise AttemptsExhaustedError()

        db.session.refresh(row)
        remaining = max(max_attempts - row.attempts, 0)
        record_event(
            "login_failure",
            "medium",
            account_id=account.id,
            details={"reason": "invalid_otp", "purpose": purpose, "attempts": row.attempts},
        )
        raise InvalidCodeError(remaining)

    # one-time use: only the first consumer of this code wins
    result = db.session.execute(
        db.update(OtpChallenge)
        .where(
            OtpChallenge.id == row.id,
            OtpChallenge.consumed_at.is_(None),
            OtpChallenge.code_hash == row.code_hash,
            OtpChallenge.attempts < max_attempts,
        )
        .values(consumed_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    if not result.rowcount:
        raise AuthenticationError("Verification code already used. Request a new one.", code="code_consumed")

    settings = SecuritySettings.for_account(account.id)
    db.session.commit()
    return VerifyResult(mode=MODE_EMAIL_OTP, purpose=purpose, mfa_status=settings.mfa_status)


# --- TOTP --------------------------------------------------------------------

def _provisioning_uri(secret: str, email: str) -> str:
    issuer = current_app.config.get("TOTP_ISSUER", "CNAM")
    return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=issuer)


def begin_enrollment(account_id: int) -> Enrollment:
    """
    Start authenticator enrollment. While pending, repeated calls hand back
    the same secret so a half-scanned QR code stays valid.
    """
    account = get_account(account_id)
    settings = SecuritySettings.for_account(account.id)
    db.session.commit()

    if settings.mfa_active:
        raise StateConflictError(
            "Two-factor authentication is already active. Reset it before enrolling again.",
            code="already_enrolled",
        )

    result = db.session.execute(
        db.update(SecuritySettings)
        .where(SecuritySettings.account_id == account.id, SecuritySettings.mfa_status == MFA_DISABLED)
        .values(mfa_secret=pyotp.random_base32(), mfa_status=MFA_PENDING, totp_attempts=0, totp_last_step=None)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    db.session.refresh(settings)

    if settings.mfa_status != MFA_PENDING or not settings.mfa_secret:
        # completed by a concurrent verify between our read and update
        raise StateConflictError("Two-factor authentication is already active.", code="already_enrolled")

    if result.rowcount:
        record_event("mfa_enabled", "low", account_id=account.id, details={"action": "totp_setup_initiated"})

    return Enrollment(
        secret=settings.mfa_secret,
        provisioning_uri=_provisioning_uri(settings.mfa_secret, account.email),
        status=MFA_PENDING,
    )


def _matched_step(secret: str, code: str, window: int) -> Optional[int]:
    """Time step the code was generated for, searched within +/- window steps."""
    totp = pyotp.TOTP(secret)
    current = totp.timecode(datetime.now())
    for step in range(current - window, current + window + 1):
        if secrets.compare_digest(totp.generate_otp(step), code):
            return step
    return None


def _verify_totp(account, code: str, purpose: str) -> VerifyResult:
    max_attempts = _max_attempts()
    settings = SecuritySettings.for_account(account.id)
    db.session.commit()

    if settings.totp_attempts >= max_attempts:
        record_event(
            "access_denied",
            "high",
            account_id=account.id,
            details={"reason": "max_totp_attempts_exceeded"},
        )
        if settings.mfa_status == MFA_DISABLED:
            raise AttemptsExhaustedError("Too many attempts. Restart authenticator setup.")
        raise AttemptsExhaustedError("Too many attempts. Ask an administrator to reset two-factor authentication.")

    if not settings.mfa_secret or settings.mfa_status == MFA_DISABLED:
        raise StateConflictError("Authenticator app is not set up", code="totp_not_configured")

    window = current_app.config.get("TOTP_VALID_WINDOW", 1)
    step = _matched_step(settings.mfa_secret, code, window)
    if step is not None and settings.totp_last_step is not None and step <= settings.totp_last_step:
        # replayed code
        step = None

    if step is None:
        result = db.session.execute(
            db.update(SecuritySettings)
            .where(SecuritySettings.account_id == account.id, SecuritySettings.totp_attempts < max_attempts)
            .values(totp_attempts=SecuritySettings.totp_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        if not result.rowcount:
            raise AttemptsExhaustedError()

        db.session.refresh(settings)
        remaining = max(max_attempts - settings.totp_attempts, 0)
        if remaining == 0:
            # an unfinished enrollment is thrown away; the counter stays at the ceiling until restarted
            db.session.execute(
                db.update(SecuritySettings)
                .where(SecuritySettings.account_id == account.id, SecuritySettings.mfa_status == MFA_PENDING)
                .values(mfa_secret=None, mfa_status=MFA_DISABLED)
                .execution_options(synchronize_session=False)
            )
            db.session.commit()

        record_event(
            "login_failure",
            "medium",
            account_id=account.id,
            details={"reason": "invalid_totp", "attempts": settings.totp_attempts},
        )
        raise InvalidCodeError(remaining)

    completed = settings.mfa_status == MFA_PENDING
    values = {"totp_attempts": 0, "totp_last_step": step}
    if completed:
        values["mfa_status"] = MFA_ENFORCED if _enforced_by_role(account) else MFA_ENABLED
        values["mfa_enabled_at"] = datetime.utcnow()

    # single winner per time step; status must still match what was read
    result = db.session.execute(
        db.update(SecuritySettings)
        .where(
            SecuritySettings.account_id == account.id,
            SecuritySettings.mfa_status == settings.mfa_status,
            or_(SecuritySettings.totp_last_step.is_(None), SecuritySettings.totp_last_step < step),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    db.session.refresh(settings)
    if not result.rowcount:
        raise InvalidCodeError(max(max_attempts - settings.totp_attempts, 0))

    if completed:
        record_event(
            "mfa_enabled",
            "low",
            account_id=account.id,
            details={"method": MODE_TOTP, "status": settings.mfa_status},
        )
    return VerifyResult(
        mode=MODE_TOTP,
        purpose=purpose,
        enrollment_completed=completed,
        mfa_status=settings.mfa_status,
    )


def verify(account_id: int, code, mode: str, purpose: str = PURPOSE_LOGIN) -> VerifyResult:
    if mode not in MODES:
        raise ValidationError("mode must be totp or email_otp")
    if purpose not in PURPOSES:
        raise ValidationError("Unknown code purpose")

    code = normalize_code(code)
    account = get_account(account_id)
    if mode == MODE_TOTP:
        return _verify_totp(account, code, purpose)
    return _verify_email_otp(account, code, purpose)


# --- reset -------------------------------------------------------------------

def reset_mfa(account_id: int, actor, reason: str = None, reenroll: bool = False) -> Optional[Enrollment]:
    """
    Clear the authenticator secret and counters. Allowed for mfa.reset_any
    holders; owners go through reset_own_mfa. The mfa_disabled event is
    written before any new enrollment starts.
    """
    account = get_account(account_id)
    if actor is None or (actor.id != account.id and not can(actor, "mfa.reset_any")):
        raise AuthorizationError("Insufficient permissions")

    SecuritySettings.for_account(account.id)
    db.session.execute(
        db.update(SecuritySettings)
        .where(SecuritySettings.account_id == account.id)
        .values(mfa_secret=None, mfa_status=MFA_DISABLED, totp_attempts=0, totp_last_step=None, mfa_enabled_at=None)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()

    record_event(
        "mfa_disabled",
        "medium",
        account_id=account.id,
        details={"reset_by": actor.id, "reason": reason or ("self_service" if actor.id == account.id else "admin_reset")},
    )
    if reenroll:
        return begin_enrollment(account.id)
    return None


def reset_own_mfa(account, code) -> Enrollment:
    """Owner path: a fresh emailed code (purpose mfa_reset) proves identity first."""
    verify(account.id, code, MODE_EMAIL_OTP, purpose=PURPOSE_MFA_RESET)
    return reset_mfa(account.id, account, reason="self_service", reenroll=True)
