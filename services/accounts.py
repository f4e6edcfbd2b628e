from flask import current_app
from sqlalchemy.exc import IntegrityError

from errors import (
    AuthorizationError,
    NotFoundError,
    RateLimitError,
    StateConflictError,
    ValidationError,
    WeakPasswordError,
)
from models import db
from models.account import Account, Role
from models.security_settings import SecuritySettings
from security.bruteforce import is_locked, reset_attempts
from security.password import generate_temporary_password, hash_password
from security.password_policy import check_password, missing_rules, validate_password
from security.rate_limit import hit
from security.rbac import PRIVILEGED_ROLES, SUPER_ADMIN, can
from utils.addresses import is_valid_email, normalize_email
from utils.audit import record_event
from utils.notifications import send_welcome_credentials


def get_account(account_id: int) -> Account:
    account = db.session.get(Account, account_id)
    if account is None:
        raise NotFoundError("Account", account_id)
    return account


def email_taken(email: str) -> bool:
    return Account.query.filter_by(email=email).first() is not None


def _resolve_roles(role_names) -> list:
    if role_names is not None and not isinstance(role_names, (list, tuple, set, frozenset)):
        raise ValidationError("roles must be a list of role names")
    names = []
    for name in role_names or []:
        if isinstance(name, str) and name.strip():
            names.append(name.strip().lower())
    if not names:
        raise ValidationError("roles must include at least one valid role name")

    roles = Role.query.filter(Role.name.in_(set(names))).all()
    missing = set(names) - {r.name for r in roles}
    if missing:
        raise ValidationError("Unknown role(s)", details={"missing": sorted(missing)})
    return roles


def _require_super_for(actor, role_names) -> None:
    if set(role_names) & PRIVILEGED_ROLES and SUPER_ADMIN not in actor.role_names:
        raise AuthorizationError(
            "Only an admin_superieur can grant or remove privileged roles",
            code="privileged_role",
        )


def provision_account(email, first_name, last_name, phone, role_names, password=None):
    """
    Stage a new account with its settings row and roles. Caller commits.
    Returns (account, temporary_password); the temporary password is None
    when the caller supplied one.
    """
    email = normalize_email(email)
    if email_taken(email):
        raise StateConflictError("An account with this email already exists", code="duplicate_email")

    roles = _resolve_roles(role_names)
    temporary = None
    if password is None:
        temporary = generate_temporary_password()
        password = temporary

    account = Account(
        email=email,
        password_hash=hash_password(password),
        first_name=first_name,
        last_name=last_name,
        phone=phone,
    )
    account.roles = roles
    db.session.add(account)
    db.session.flush()

    # provisioned credentials are always rotated at first sign in
    db.session.add(SecuritySettings(account_id=account.id, password_must_change=True))
    return account, temporary


def create_account(actor, email, first_name, last_name, role_names, phone=None, password=None):
    """Direct administrative creation, outside the registration pipeline."""
    if not can(actor, "accounts.create"):
        raise AuthorizationError("Insufficient permissions")

    email = normalize_email(email)
    if not is_valid_email(email):
        raise ValidationError("Invalid email")
    if not isinstance(first_name, str) or not isinstance(last_name, str):
        raise ValidationError("first_name and last_name are required")
    if not first_name.strip() or not last_name.strip():
        raise ValidationError("first_name and last_name are required")

    names = [r.name for r in _resolve_roles(role_names)]
    _require_super_for(actor, names)

    if password is not None:
        requirements = check_password(password)
        missing = missing_rules(requirements)
        if missing:
            raise WeakPasswordError(missing, requirements)
        valid, errors = validate_password(password)
        if not valid:
            raise ValidationError(errors[0])

    allowed, retry_after = hit(
        f"accounts.create:{actor.id}",
        current_app.config.get("ACCOUNT_CREATE_RATE_MAX", 10),
        current_app.config.get("ACCOUNT_CREATE_RATE_WINDOW_SECONDS", 60),
    )
    if not allowed:
        raise RateLimitError("Too many accounts created. Slow down.", retry_after)

    try:
        account, temporary = provision_account(
            email, first_name.strip(), last_name.strip(), phone, names, password=password
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise StateConflictError("An account with this email already exists", code="duplicate_email")

    current_app.logger.info("account %s created by %s", account.id, actor.id)
    record_event(
        "account_created",
        "medium",
        account_id=account.id,
        details={"created_by": actor.id, "roles": names},
    )
    if temporary:
        send_welcome_credentials(account, temporary, names[0])
    return account


def set_roles(account_id: int, role_names, actor) -> list:
    if not can(actor, "accounts.manage_roles"):
        raise AuthorizationError("Insufficient permissions")

    account = get_account(account_id)
    if account.id == actor.id:
        raise AuthorizationError("You cannot change your own roles", code="self_role_change")

    roles = _resolve_roles(role_names)
    new_names = {r.name for r in roles}
    old_names = account.role_names
    _require_super_for(actor, new_names ^ old_names)

    account.roles = roles
    db.session.commit()

    record_event(
        "role_change",
        "medium",
        account_id=account.id,
        details={"changed_by": actor.id, "from": sorted(old_names), "to": sorted(new_names)},
    )
    return sorted(new_names)


def unlock_account(account_id: int, actor) -> None:
    """Administrative reset of the failed-login counter and lock."""
    if not can(actor, "accounts.unlock"):
        raise AuthorizationError("Insufficient permissions")

    account = get_account(account_id)
    SecuritySettings.for_account(account.id)
    reset_attempts(account.id)
    db.session.commit()

    record_event("account_unlocked", "medium", account_id=account.id, details={"unlocked_by": actor.id})


def account_summary(account) -> dict:
    settings = SecuritySettings.for_account(account.id)
    return {
        "id": account.id,
        "email": account.email,
        "first_name": account.first_name,
        "last_name": account.last_name,
        "phone": account.phone,
        "roles": sorted(account.role_names),
        "mfa_status": settings.mfa_status,
        "password_must_change": settings.password_must_change,
        "locked": is_locked(settings)[0],
        "created_at": account.created_at.isoformat(),
    }
