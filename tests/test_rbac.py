from datetime import datetime, timedelta

import pytest

from errors import AuthorizationError, RateLimitError, StateConflictError, ValidationError
from models import db
from models.account import Account
from models.security_event import SecurityEvent
from models.security_settings import SecuritySettings
from security.rbac import can, dashboard_route, is_allowed, roles_for_capability, roles_for_screen
from services import accounts


# --- policy tables ---------------------------------------------------------------

def test_nothing_required_means_allowed():
    assert is_allowed([], ["user"])
    assert is_allowed(None, [])


def test_any_matching_role_is_enough():
    assert is_allowed(["admin", "agent"], ["agent"])
    assert not is_allowed(["admin"], ["user", "prestataire"])


def test_superior_satisfies_admin_only():
    assert is_allowed(["admin"], ["admin_superieur"])
    assert not is_allowed(["security_engineer"], ["admin_superieur"])


def test_longest_screen_prefix_wins():
    assert roles_for_screen("/app/admin") == {"admin", "agent", "validator"}
    assert roles_for_screen("/app/admin/reports/2024") == {"admin", "agent", "validator"}
    assert roles_for_screen("/app/admin/utilisateurs") == {"admin"}
    assert roles_for_screen("/app/admin/utilisateurs/12") == {"admin"}
    assert roles_for_screen("/app/adminx") == frozenset()


def test_staff_cannot_open_user_management():
    assert is_allowed(roles_for_screen("/app/admin"), ["agent"])
    assert not is_allowed(roles_for_screen("/app/admin/securite"), ["agent"])


def test_dashboard_routes():
    assert dashboard_route(["admin_superieur", "admin"]) == "/app/super-admin"
    assert dashboard_route(["validator"]) == "/app/admin"
    assert dashboard_route(["user"]) == "/app/user"
    assert dashboard_route(["prestataire"]) == "/app/prestataire"
    assert dashboard_route(["security_engineer"]) == "/app/soc"
    assert dashboard_route([]) == "/403"


def test_unknown_capability():
    with pytest.raises(KeyError):
        roles_for_capability("accounts.delete")


def test_capabilities(ctx, make_account):
    admin = db.session.get(Account, make_account("boss@esprim.tn", roles=("admin",)))
    soc = db.session.get(Account, make_account("soc1@esprim.tn", roles=("security_engineer",)))
    chief = db.session.get(Account, make_account("chief@esprim.tn", roles=("admin_superieur",)))

    assert can(admin, "registration.review")
    assert can(chief, "registration.review")
    assert can(soc, "security.events.read")
    assert not can(soc, "registration.review")
    assert not can(None, "registration.review")
    assert not can(admin, "no.such.capability")


# --- account administration ----------------------------------------------------------

def test_create_account_mails_temporary_password(ctx, make_account, outbox):
    admin = db.session.get(Account, make_account("boss@esprim.tn", roles=("admin",)))
    account = accounts.create_account(admin, "Agent.One@esprim.tn", "Agent", "One", ["agent"])

    assert account.email == "agent.one@esprim.tn"
    assert account.role_names == {"agent"}
    assert SecuritySettings.query.filter_by(account_id=account.id).one().password_must_change
    assert [m for m in outbox.to("agent.one@esprim.tn") if m[1] == "Your portal account"]
    assert SecurityEvent.query.filter_by(event_type="account_created", account_id=account.id).count() == 1


def test_create_account_rejects_duplicates(ctx, make_account):
    admin = db.session.get(Account, make_account("boss@esprim.tn", roles=("admin",)))
    make_account("taken@esprim.tn")
    with pytest.raises(StateConflictError) as exc:
        accounts.create_account(admin, "taken@esprim.tn", "T", "Aken", ["user"])
    assert exc.value.code == "duplicate_email"


def test_create_account_validates_input(ctx, make_account):
    admin = db.session.get(Account, make_account("boss@esprim.tn", roles=("admin",)))
    with pytest.raises(ValidationError):
        accounts.create_account(admin, "not-an-email", "A", "B", ["user"])
    with pytest.raises(ValidationError):
        accounts.create_account(admin, "a@esprim.tn", "A", "B", ["wizard"])


def test_only_superior_creates_privileged_accounts(ctx, make_account):
    admin = db.session.get(Account, make_account("boss@esprim.tn", roles=("admin",)))
    chief = db.session.get(Account, make_account("chief@esprim.tn", roles=("admin_superieur",)))

    with pytest.raises(AuthorizationError):
        accounts.create_account(admin, "soc2@esprim.tn", "S", "Oc", ["security_engineer"])
    account = accounts.create_account(chief, "soc2@esprim.tn", "S", "Oc", ["security_engineer"])
    assert account.role_names == {"security_engineer"}


def test_account_creation_is_rate_limited(ctx, make_account):
    admin = db.session.get(Account, make_account("boss@esprim.tn", roles=("admin",)))
    ctx.config["ACCOUNT_CREATE_RATE_MAX"] = 2
    accounts.create_account(admin, "a1@esprim.tn", "A", "One", ["user"], password="Given-Password1")
    accounts.create_account(admin, "a2@esprim.tn", "A", "Two", ["user"], password="Given-Password1")
    with pytest.raises(RateLimitError):
        accounts.create_account(admin, "a3@esprim.tn", "A", "Three", ["user"], password="Given-Password1")


def test_set_roles_logs_the_change(ctx, make_account):
    admin = db.session.get(Account, make_account("boss@esprim.tn", roles=("admin",)))
    target_id = make_account("agent@esprim.tn", roles=("agent",))

    assert accounts.set_roles(target_id, ["validator"], admin) == ["validator"]
    event = SecurityEvent.query.filter_by(event_type="role_change").one()
    assert '"from": ["agent"]' in event.details_json


def test_cannot_change_own_roles(ctx, make_account):
    admin = db.session.get(Account, make_account("boss@esprim.tn", roles=("admin",)))
    with pytest.raises(AuthorizationError):
        accounts.set_roles(admin.id, ["admin", "agent"], admin)


def test_unlock_clears_lock(ctx, make_account):
    soc = db.session.get(Account, make_account("soc1@esprim.tn", roles=("security_engineer",)))
    target_id = make_account(
        "amal@example.tn",
        failed_login_attempts=5,
        locked_until=datetime.utcnow() + timedelta(minutes=10),
    )
    accounts.unlock_account(target_id, soc)

    settings = SecuritySettings.query.filter_by(account_id=target_id).one()
    db.session.refresh(settings)
    assert settings.failed_login_attempts == 0
    assert settings.locked_until is None
