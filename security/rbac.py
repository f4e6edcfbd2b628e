from functools import wraps
from flask import g

from errors import AuthenticationError, AuthorizationError
from utils.audit import record_event

SUPER_ADMIN = "admin_superieur"

# Roles only an admin_superieur may hand out
PRIVILEGED_ROLES = frozenset({"admin_superieur", "admin", "security_engineer"})

_STAFF = frozenset({"admin", "agent", "validator"})

# Screen prefix -> roles. Longest matching prefix wins.
SCREEN_POLICY = {
    "/app/super-admin": frozenset({"admin_superieur"}),
    "/app/admin": _STAFF,
    "/app/admin/utilisateurs": frozenset({"admin"}),
    "/app/admin/securite": frozenset({"admin"}),
    "/app/admin/parametres": frozenset({"admin"}),
    "/app/user": frozenset({"user"}),
    "/app/prestataire": frozenset({"prestataire"}),
    "/app/soc": frozenset({"security_engineer"}),
}

# API capability -> roles
CAPABILITY_POLICY = {
    "registration.review": frozenset({"admin"}),
    "accounts.create": frozenset({"admin"}),
    "accounts.manage_roles": frozenset({"admin"}),
    "accounts.unlock": frozenset({"admin", "security_engineer"}),
    "mfa.reset_any": frozenset({"admin"}),
    "security.events.read": frozenset({"admin", "security_engineer"}),
    "security.blocked_ips.read": frozenset({"admin", "security_engineer"}),
}

# Landing screen, first match wins
DASHBOARD_ROUTES = (
    (frozenset({"admin_superieur"}), "/app/super-admin"),
    (_STAFF, "/app/admin"),
    (frozenset({"user"}), "/app/user"),
    (frozenset({"prestataire"}), "/app/prestataire"),
    (frozenset({"security_engineer"}), "/app/soc"),
)


def _names(roles) -> set:
    return {r if isinstance(r, str) else r.name for r in roles or ()}


def is_allowed(required_roles, current_roles) -> bool:
    """
    The single authorization check. Nothing required means allowed;
    admin_superieur satisfies admin.
    """
    required = _names(required_roles)
    if not required:
        return True
    current = _names(current_roles)
    if SUPER_ADMIN in current and "admin" in required:
        return True
    return bool(required & current)


def roles_for_screen(path: str) -> frozenset:
    path = "/" + (path or "").strip("/")
    best = None
    for prefix in SCREEN_POLICY:
        if path == prefix or path.startswith(prefix + "/"):
            if best is None or len(prefix) > len(best):
                best = prefix
    return SCREEN_POLICY[best] if best else frozenset()


def roles_for_capability(capability: str) -> frozenset:
    if capability not in CAPABILITY_POLICY:
        raise KeyError(capability)
    return CAPABILITY_POLICY[capability]


def can(account, capability: str) -> bool:
    if account is None:
        return False
    try:
        required = roles_for_capability(capability)
    except KeyError:
        return False
    return is_allowed(required, account.roles)


def dashboard_route(roles) -> str:
    names = _names(roles)
    for wanted, route in DASHBOARD_ROUTES:
        if names & wanted:
            return route
    return "/403"


def require_capability(capability: str):
    """
    Usage: @require_capability("registration.review")
    """
    roles_for_capability(capability)

    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, "user", None)
            if user is None:
                raise AuthenticationError("Authentication required", code="authentication_required")

            if not can(user, capability):
                record_event(
                    "access_denied",
                    "high",
                    account_id=user.id,
                    details={
                        "capability": capability,
                        "user_roles": sorted(_names(user.roles)),
                    },
                )
                raise AuthorizationError("Insufficient permissions")

            return fn(*args, **kwargs)
        return wrapper
    return decorator
