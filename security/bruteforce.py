from datetime import datetime, timedelta
from flask import current_app
from sqlalchemy import case, or_

from errors import AccountLockedError, InvalidCredentialsError
from models import db
from models.account import Account
from models.blocked_ip import BlockedIp
from models.security_event import SecurityEvent
from models.security_settings import SecuritySettings
from security.password import verify_password

# compared against when the email is unknown so both paths cost one bcrypt check
_DUMMY_HASH = "$2b$12$C6UzMDM.H6dfI/f/IKcEeO5sH1E6lIU2N3nD6cU3qjH6B7K1bYd1K"

def _seconds_left(until: datetime, now: datetime) -> int:
    return max(int((until - now).total_seconds()), 1)

def is_locked(settings: SecuritySettings) -> tuple[bool, int]:
    """
    Returns (locked, seconds_remaining)
    """
    now = datetime.utcnow()
    if not settings.locked_until or settings.locked_until <= now:
        return False, 0
    return True, _seconds_left(settings.locked_until, now)

def register_failure(account_id: int) -> tuple[int, bool]:
    """
    Increments the failure counter and, in the same statement, sets the lock
    once the counter reaches the ceiling. Returns (fail_count, locked_now).
    A row that is already locked is left alone.
    """
    now = datetime.utcnow()
    max_attempts = current_app.config.get("MAX_LOGIN_ATTEMPTS", 5)
    lock_minutes = current_app.config.get("LOCKOUT_MINUTES", 15)

    result = db.session.execute(
        db.update(SecuritySettings)
        .where(
            SecuritySettings.account_id == account_id,
            or_(SecuritySettings.locked_until.is_(None), SecuritySettings.locked_until <= now),
        )
        .values(
            failed_login_attempts=SecuritySettings.failed_login_attempts + 1,
            locked_until=case(
                (SecuritySettings.failed_login_attempts + 1 >= max_attempts, now + timedelta(minutes=lock_minutes)),
                else_=None,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()

    row = SecuritySettings.query.filter_by(account_id=account_id).first()
    db.session.refresh(row)
    if not result.rowcount:
        # lost the race to a request that locked the account
        return row.failed_login_attempts, True
    return row.failed_login_attempts, row.locked_until is not None

def reset_attempts(account_id: int):
    """
    Clears failure counter after successful login or an admin unlock. Caller commits.
    """
    db.session.execute(
        db.update(SecuritySettings)
        .where(SecuritySettings.account_id == account_id)
        .values(failed_login_attempts=0, locked_until=None)
        .execution_options(synchronize_session=False)
    )

def check_credentials(email: str, password: str) -> Account:
    """
    The one place a password is compared. Locked accounts fail before the
    password is looked at.
    """
    account = Account.query.filter_by(email=email).first()
    if account is None:
        verify_password(password, _DUMMY_HASH)
        raise InvalidCredentialsError()

    settings = SecuritySettings.for_account(account.id)
    db.session.commit()
    locked, seconds_left = is_locked(settings)
    if locked:
        raise AccountLockedError(seconds_left)

    if not verify_password(password, account.password_hash):
        fail_count, locked_now = register_failure(account.id)
        if locked_now:
            raise AccountLockedError(current_app.config.get("LOCKOUT_MINUTES", 15) * 60)
        raise InvalidCredentialsError()

    return account

def is_ip_blocked(ip: str) -> tuple[bool, int]:
    if not ip:
        return False, 0
    now = datetime.utcnow()
    row = (
        BlockedIp.query
        .filter(BlockedIp.ip == ip, BlockedIp.expires_at > now)
        .order_by(BlockedIp.expires_at.desc())
        .first()
    )
    if not row:
        return False, 0
    return True, _seconds_left(row.expires_at, now)

def register_ip_failure(ip: str, email: str):
    """
    Threat response: too many login failures from one address, or against one
    email, in the window blocks the address. Returns the BlockedIp row or None.
    Call after the failure event is recorded.
    """
    if not ip:
        return None

    window = current_app.config.get("IP_FAILURE_WINDOW_MINUTES", 30)
    threshold = current_app.config.get("IP_FAILURE_THRESHOLD", 5)
    block_hours = current_app.config.get("IP_BLOCK_HOURS", 24)
    now = datetime.utcnow()

    conditions = [SecurityEvent.ip == ip]
    if email:
        conditions.append(SecurityEvent.email == email)
    fail_count = (
        SecurityEvent.query
        .filter(
            SecurityEvent.event_type == "login_failure",
            SecurityEvent.created_at >= now - timedelta(minutes=window),
            or_(*conditions),
        )
        .count()
    )
    if fail_count < threshold:
        return None

    blocked, _ = is_ip_blocked(ip)
    if blocked:
        return None

    row = BlockedIp(
        ip=ip,
        reason=f"brute_force: {fail_count} failed attempts in {window}min",
        blocked_at=now,
        expires_at=now + timedelta(hours=block_hours),
    )
    db.session.add(row)
    db.session.commit()
    current_app.logger.warning("blocked %s for %sh after %s login failures", ip, block_hours, fail_count)
    return row
