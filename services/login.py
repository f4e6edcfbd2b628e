"""
Login state machine.

    IP pre-check -> credentials -> rotation gate -> MFA gate -> session

A correct password alone only opens a LoginChallenge; the session token is
issued by ``_grant`` once every gate that applies has passed.
"""
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from flask import current_app

from errors import (
    AccessBlockedError,
    AccountLockedError,
    AuthenticationError,
    InvalidCredentialsError,
    ValidationError,
)
from models import db
from models.account import Account
from models.login_challenge import LoginChallenge, STAGE_MFA, STAGE_PASSWORD_CHANGE
from models.otp_challenge import PURPOSE_LOGIN, PURPOSE_PASSWORD_CHANGE
from models.security_settings import SecuritySettings
from models.session import Session
from security.bruteforce import check_credentials, is_ip_blocked, register_ip_failure, reset_attempts
from security.rbac import dashboard_route
from security.session import create_session, hash_token, revoke_all_sessions, revoke_session
from services import mfa, passwords
from services.accounts import get_account
from utils.addresses import normalize_email
from utils.audit import record_event
from utils.client import ClientContext
from utils.notifications import send_new_ip_alert

STATUS_GRANTED = "granted"
STATUS_MFA_REQUIRED = "mfa_required"
STATUS_PASSWORD_CHANGE_REQUIRED = "password_change_required"


@dataclass(frozen=True)
class LoginOutcome:
    status: str
    account_id: int
    session_token: Optional[str] = None
    challenge_token: Optional[str] = None
    methods: list = field(default_factory=list)
    dashboard: Optional[str] = None

    def to_dict(self) -> dict:
        out = {"status": self.status}
        if self.session_token:
            out["session_token"] = self.session_token
        if self.challenge_token:
            out["challenge_token"] = self.challenge_token
            out["methods"] = list(self.methods)
        if self.dashboard:
            out["dashboard"] = self.dashboard
        return out


def _account_id_for(email: str):
    row = Account.query.with_entities(Account.id).filter_by(email=email).first()
    return row[0] if row else None


def _record_credential_failure(email: str, reason: str, client: ClientContext) -> None:
    record_event(
        "login_failure",
        "medium",
        account_id=_account_id_for(email),
        client=client,
        email=email,
        details={"reason": reason},
    )
    blocked = register_ip_failure(client.ip, email)
    if blocked is not None:
        record_event(
            "ip_blocked",
            "high",
            client=client,
            email=email,
            details={
                "reason": "brute_force",
                "blocked_for_hours": current_app.config.get("IP_BLOCK_HOURS", 24),
            },
        )


def _open_challenge(account, stage: str, client: ClientContext) -> str:
    now = datetime.utcnow()
    # one half-finished login per account
    db.session.execute(
        db.update(LoginChallenge)
        .where(LoginChallenge.account_id == account.id, LoginChallenge.consumed_at.is_(None))
        .values(consumed_at=now)
        .execution_options(synchronize_session=False)
    )

    raw_token = secrets.token_urlsafe(32)
    ttl = current_app.config.get("LOGIN_CHALLENGE_TTL_SECONDS", 900)
    db.session.add(LoginChallenge(
        account_id=account.id,
        stage=stage,
        token_hash=hash_token(raw_token),
        expires_at=now + timedelta(seconds=ttl),
        ip=client.ip,
        user_agent=client.user_agent,
    ))
    db.session.commit()
    return raw_token


def _load_challenge(raw_token: str, stage: str = None) -> LoginChallenge:
    row = None
    if isinstance(raw_token, str) and raw_token:
        row = LoginChallenge.query.filter_by(token_hash=hash_token(raw_token)).first()
    if (
        row is None
        or row.consumed_at is not None
        or row.expires_at <= datetime.utcnow()
        or (stage is not None and row.stage != stage)
    ):
        raise AuthenticationError("Sign-in expired. Please sign in again.", code="login_challenge_invalid")
    return row


def _known_ips(account_id: int) -> set:
    rows = (
        Session.query
        .with_entities(Session.ip)
        .filter(Session.account_id == account_id, Session.ip.isnot(None))
        .distinct()
        .all()
    )
    return {r[0] for r in rows}


def _grant(account, settings: SecuritySettings, client: ClientContext, method: str, challenge: LoginChallenge = None) -> LoginOutcome:
    now = datetime.utcnow()
    if challenge is not None:
        result = db.session.execute(
            db.update(LoginChallenge)
            .where(LoginChallenge.id == challenge.id, LoginChallenge.consumed_at.is_(None))
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            db.session.rollback()
            raise AuthenticationError("Sign-in expired. Please sign in again.", code="login_challenge_invalid")

    known_ips = _known_ips(account.id)
    new_ip = bool(known_ips) and bool(client.ip) and client.ip not in known_ips

    reset_attempts(account.id)
    db.session.commit()

    # Rotate: revoke any existing sessions for this account
    revoked_count = revoke_all_sessions(account.id)
    raw_token = create_session(account.id, client)

    settings.last_login_at = now
    settings.last_login_ip = client.ip
    settings.last_login_location = client.location
    db.session.commit()

    record_event(
        "login_success",
        "low",
        account_id=account.id,
        client=client,
        details={"method": method, "revoked_sessions": revoked_count},
    )
    if new_ip:
        record_event(
            "suspicious_activity",
            "medium",
            account_id=account.id,
            client=client,
            details={"reason": "new_ip_login", "email": account.email},
        )
        send_new_ip_alert(account, client.ip, client.location)

    return LoginOutcome(
        status=STATUS_GRANTED,
        account_id=account.id,
        session_token=raw_token,
        dashboard=dashboard_route(account.roles),
    )


def attempt_login(email: str, password: str, client: ClientContext = None) -> LoginOutcome:
    client = client or ClientContext.from_request()
    email = normalize_email(email)
    if not isinstance(password, str):
        raise ValidationError("Password must be a string")

    blocked, retry_after = is_ip_blocked(client.ip)
    if blocked:
        record_event(
            "access_denied",
            "medium",
            client=client,
            email=email,
            details={"reason": "ip_blocked"},
        )
        raise AccessBlockedError(retry_after)

    try:
        account = check_credentials(email, password)
    except AccountLockedError:
        _record_credential_failure(email, "account_locked", client)
        raise
    except InvalidCredentialsError:
        _record_credential_failure(email, "invalid_credentials", client)
        raise

    settings = SecuritySettings.for_account(account.id)
    db.session.commit()

    # rotation is checked first and wins over MFA
    if passwords.needs_rotation(settings):
        token = _open_challenge(account, STAGE_PASSWORD_CHANGE, client)
        record_event(
            "password_expired",
            "low",
            account_id=account.id,
            client=client,
            details={"reason": "must_change" if settings.password_must_change else "max_age"},
        )
        return LoginOutcome(
            status=STATUS_PASSWORD_CHANGE_REQUIRED,
            account_id=account.id,
            challenge_token=token,
            methods=mfa.available_methods(settings),
        )

    if mfa.requires_second_factor(account, settings):
        token = _open_challenge(account, STAGE_MFA, client)
        return LoginOutcome(
            status=STATUS_MFA_REQUIRED,
            account_id=account.id,
            challenge_token=token,
            methods=mfa.available_methods(settings),
        )

    return _grant(account, settings, client, method="password")


def request_login_code(challenge_token: str) -> mfa.CodeDispatch:
    row = _load_challenge(challenge_token)
    purpose = PURPOSE_LOGIN if row.stage == STAGE_MFA else PURPOSE_PASSWORD_CHANGE
    return mfa.request_code(row.account_id, purpose)


def complete_mfa(challenge_token: str, code, mode: str, client: ClientContext = None) -> LoginOutcome:
    client = client or ClientContext.from_request()
    row = _load_challenge(challenge_token, STAGE_MFA)
    mfa.verify(row.account_id, code, mode, purpose=PURPOSE_LOGIN)

    account = get_account(row.account_id)
    settings = SecuritySettings.for_account(account.id)
    return _grant(account, settings, client, method=mode, challenge=row)


def complete_password_rotation(challenge_token: str, new_password: str, confirmation: str,
                               proof: "passwords.SecondFactorProof", client: ClientContext = None) -> LoginOutcome:
    """Rotation already demands a second factor, so no MFA step follows it."""
    client = client or ClientContext.from_request()
    row = _load_challenge(challenge_token, STAGE_PASSWORD_CHANGE)
    passwords.change_password(row.account_id, new_password, confirmation, proof)

    account = get_account(row.account_id)
    settings = SecuritySettings.for_account(account.id)
    return _grant(account, settings, client, method="password_rotation", challenge=row)


def logout(raw_token: str, account_id: int) -> bool:
    revoked = revoke_session(raw_token)
    record_event("logout", "low", account_id=account_id)
    return revoked


def logout_all(account_id: int) -> int:
    count = revoke_all_sessions(account_id)
    record_event("logout", "low", account_id=account_id, details={"revoked_sessions": count, "scope": "all"})
    return count
