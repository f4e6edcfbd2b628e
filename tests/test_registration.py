import html
import re
from datetime import datetime, timedelta

import pytest

from errors import (
    AlreadyApprovedError,
    AttemptsExhaustedError,
    AuthorizationError,
    CodeExpiredError,
    DependencyError,
    InvalidCodeError,
    RateLimitError,
    StateConflictError,
    ValidationError,
)
from models import db
from models.account import Account
from models.registration_otp import RegistrationOtp
from models.registration_request import RegistrationRequest
from models.security_event import SecurityEvent
from models.security_settings import SecuritySettings
from services import login, registration
from utils.client import ClientContext

APPLICANT = "sami@example.tn"
PROFILE = {"insurance_number": "INS-2024-0042", "phone": "+21620000000"}


def _submit(outbox, email=APPLICANT, request_type="user", profile=PROFILE):
    registration.request_registration_code(email, "Sami", "Ben Salah", request_type)
    return registration.verify_registration_code(email, outbox.last_code(email), profile)


def _temporary_password(outbox, email):
    for to, subject, body, _text in reversed(outbox):
        if to == email and subject == "Your portal account":
            return html.unescape(re.search(r"<code>(.*?)</code>", body).group(1))
    raise AssertionError(f"no credentials mailed to {email}")


@pytest.fixture
def reviewer(ctx, make_account):
    return db.session.get(Account, make_account("boss@esprim.tn", roles=("admin",)))


@pytest.fixture
def superior(ctx, make_account):
    return db.session.get(Account, make_account("chief@esprim.tn", roles=("admin_superieur",)))


# --- Phase A -------------------------------------------------------------------

def test_code_then_request(ctx, reviewer, outbox):
    result = registration.request_registration_code(" Sami@Example.tn ", "Sami", "Ben Salah")
    assert result["email"] == APPLICANT

    req = registration.verify_registration_code(APPLICANT, outbox.last_code(APPLICANT), PROFILE)
    assert req.status == "pending"
    assert req.insurance_number == "INS-2024-0042"
    assert req.request_type == "user"
    assert RegistrationOtp.query.count() == 0
    assert SecurityEvent.query.filter_by(event_type="registration_submitted").count() == 1

    notices = [m for m in outbox.to("boss@esprim.tn") if m[1] == "New registration request"]
    assert len(notices) == 1


def test_missing_profile_field_keeps_the_code(ctx, outbox):
    registration.request_registration_code(APPLICANT, "Sami", "Ben Salah")
    code = outbox.last_code(APPLICANT)

    with pytest.raises(ValidationError):
        registration.verify_registration_code(APPLICANT, code, {})

    req = registration.verify_registration_code(APPLICANT, code, PROFILE)
    assert req.status == "pending"


def test_prestataire_needs_organization_and_license(ctx, outbox):
    with pytest.raises(ValidationError):
        _submit(outbox, request_type="prestataire", profile={"organization_name": "Clinique Ennasr"})

    req = registration.verify_registration_code(
        APPLICANT,
        outbox.last_code(APPLICANT),
        {"organization_name": "Clinique Ennasr", "license_number": "LIC-77"},
    )
    assert req.organization_name == "Clinique Ennasr"


def test_staff_requests_need_institutional_domain(ctx, outbox):
    with pytest.raises(ValidationError) as exc:
        registration.request_registration_code("it.person@gmail.com", "It", "Person", "it_engineer")
    assert exc.value.code == "institutional_email_required"

    req = _submit(outbox, email="it.person@esprim.tn", request_type="it_engineer", profile={})
    assert req.request_type == "it_engineer"


def test_unknown_request_type_rejected(ctx):
    with pytest.raises(ValidationError):
        registration.request_registration_code(APPLICANT, "Sami", "Ben Salah", "superuser")


def test_code_requests_are_rate_limited(ctx):
    for _ in range(3):
        registration.request_registration_code(APPLICANT, "Sami", "Ben Salah")
    with pytest.raises(RateLimitError) as exc:
        registration.request_registration_code(APPLICANT, "Sami", "Ben Salah")
    assert exc.value.retry_after_seconds > 0


def test_wrong_codes_count_down(ctx, outbox):
    registration.request_registration_code(APPLICANT, "Sami", "Ben Salah")
    code = outbox.last_code(APPLICANT)
    wrong = "000000" if code != "000000" else "111111"

    remaining = []
    for _ in range(5):
        with pytest.raises(InvalidCodeError) as exc:
            registration.verify_registration_code(APPLICANT, wrong, PROFILE)
        remaining.append(exc.value.remaining_attempts)
    assert remaining == [4, 3, 2, 1, 0]

    with pytest.raises(AttemptsExhaustedError):
        registration.verify_registration_code(APPLICANT, code, PROFILE)
    assert RegistrationRequest.query.count() == 0


def test_expired_code_is_removed(ctx, outbox):
    registration.request_registration_code(APPLICANT, "Sami", "Ben Salah")
    code = outbox.last_code(APPLICANT)
    row = RegistrationOtp.query.filter_by(email=APPLICANT).one()
    row.expires_at = datetime.utcnow() - timedelta(seconds=1)
    db.session.commit()

    with pytest.raises(CodeExpiredError):
        registration.verify_registration_code(APPLICANT, code, PROFILE)
    assert RegistrationOtp.query.count() == 0


def test_send_failure_is_reported(ctx, outbox):
    outbox.fail = True
    with pytest.raises(DependencyError):
        registration.request_registration_code(APPLICANT, "Sami", "Ben Salah")


def test_existing_account_cannot_apply(ctx, make_account):
    make_account(APPLICANT)
    with pytest.raises(AlreadyApprovedError):
        registration.request_registration_code(APPLICANT, "Sami", "Ben Salah")


def test_one_pending_request_per_email(ctx, outbox):
    _submit(outbox)
    with pytest.raises(StateConflictError) as exc:
        registration.request_registration_code(APPLICANT, "Sami", "Ben Salah")
    assert exc.value.code == "request_pending"


# --- Phase B -------------------------------------------------------------------

def test_approve_provisions_account_and_mails_credentials(ctx, reviewer, outbox):
    req = _submit(outbox)
    result = registration.approve(req.id, None, reviewer)

    assert result.request.status == "approved"
    assert result.request.reviewed_by == reviewer.id
    assert result.request.account_id == result.account.id
    assert result.account.role_names == {"user"}
    assert result.notifications == {"credentials": True, "decision": True}

    settings = SecuritySettings.query.filter_by(account_id=result.account.id).one()
    assert settings.password_must_change

    temporary = _temporary_password(outbox, APPLICANT)
    assert temporary.startswith("CNAM_")
    outcome = login.attempt_login(APPLICANT, temporary, ClientContext(ip="198.51.100.7"))
    assert outcome.status == login.STATUS_PASSWORD_CHANGE_REQUIRED


def test_request_is_reviewed_exactly_once(ctx, reviewer, outbox):
    req = _submit(outbox)
    registration.approve(req.id, "user", reviewer)
    db.session.refresh(req)
    reviewed_by, reviewed_at = req.reviewed_by, req.reviewed_at

    with pytest.raises(StateConflictError):
        registration.approve(req.id, "user", reviewer)
    with pytest.raises(StateConflictError):
        registration.reject(req.id, "changed my mind", reviewer)
    assert Account.query.filter_by(email=APPLICANT).count() == 1

    db.session.refresh(req)
    assert req.status == "approved"
    assert (req.reviewed_by, req.reviewed_at) == (reviewed_by, reviewed_at)
    assert req.rejection_reason is None


def test_approval_survives_mail_outage(ctx, reviewer, outbox):
    req = _submit(outbox)
    outbox.fail = True
    result = registration.approve(req.id, None, reviewer)
    assert result.request.status == "approved"
    assert result.notifications == {"credentials": False, "decision": False}


def test_duplicate_email_blocks_approval(ctx, reviewer, make_account, outbox):
    req = _submit(outbox)
    make_account(APPLICANT)

    with pytest.raises(StateConflictError) as exc:
        registration.approve(req.id, None, reviewer)
    assert exc.value.code == "duplicate_email"
    db.session.refresh(req)
    assert req.status == "pending"


def _assert_still_pending_with_one_account(req):
    db.session.refresh(req)
    assert req.status == "pending"
    assert req.reviewed_by is None
    assert req.reviewed_at is None
    assert req.account_id is None
    assert Account.query.filter_by(email=APPLICANT).count() == 1


def test_concurrent_approval_loses_on_unique_email(ctx, reviewer, make_account, outbox, monkeypatch):
    req = _submit(outbox)
    # a parallel approval commits the account after both existence checks passed
    make_account(APPLICANT)
    monkeypatch.setattr("services.registration.email_taken", lambda email: False)
    monkeypatch.setattr("services.accounts.email_taken", lambda email: False)

    with pytest.raises(StateConflictError) as exc:
        registration.approve(req.id, None, reviewer)
    assert exc.value.code == "duplicate_email"
    _assert_still_pending_with_one_account(req)
    assert not [m for m in outbox.to(APPLICANT) if m[1] == "Your portal account"]


def test_account_appearing_after_claim_rolls_the_claim_back(ctx, reviewer, make_account, outbox, monkeypatch):
    req = _submit(outbox)
    make_account(APPLICANT)
    monkeypatch.setattr("services.registration.email_taken", lambda email: False)

    with pytest.raises(StateConflictError) as exc:
        registration.approve(req.id, None, reviewer)
    assert exc.value.code == "duplicate_email"
    _assert_still_pending_with_one_account(req)
    assert not SecurityEvent.query.filter_by(event_type="registration_approved").count()


def test_reject_needs_a_reason_and_allows_reapplying(ctx, reviewer, outbox):
    req = _submit(outbox)
    with pytest.raises(ValidationError):
        registration.reject(req.id, "   ", reviewer)

    rejected = registration.reject(req.id, "Insurance number not found", reviewer)
    assert rejected.status == "rejected"
    assert rejected.rejection_reason == "Insurance number not found"
    decision = [m for m in outbox.to(APPLICANT) if m[1] == "Registration not approved"]
    assert decision and "Insurance number not found" in decision[0][2]

    again = _submit(outbox)
    assert again.status == "pending"


def test_admin_cannot_hand_out_privileged_roles(ctx, reviewer, outbox):
    req = _submit(outbox, email="new.admin@esprim.tn", request_type="admin", profile={})
    with pytest.raises(AuthorizationError) as exc:
        registration.approve(req.id, "admin", reviewer)
    assert exc.value.code == "privileged_role"

    # agent is compatible with an admin request and not privileged
    result = registration.approve(req.id, "agent", reviewer)
    assert result.account.role_names == {"agent"}


def test_role_must_match_request_type(ctx, reviewer, outbox):
    req = _submit(outbox)
    with pytest.raises(ValidationError) as exc:
        registration.approve(req.id, "prestataire", reviewer)
    assert exc.value.code == "incompatible_role"


def test_superior_may_assign_any_role(ctx, superior, outbox):
    req = _submit(outbox, email="new.admin@esprim.tn", request_type="admin", profile={})
    result = registration.approve(req.id, "admin", superior)
    assert result.account.role_names == {"admin"}


def test_only_reviewers_see_requests(ctx, make_account, outbox):
    _submit(outbox)
    plain = db.session.get(Account, make_account("plain@example.tn"))
    with pytest.raises(AuthorizationError):
        registration.list_requests(plain)


def test_list_filters_by_status(ctx, reviewer, outbox):
    first = _submit(outbox)
    registration.reject(first.id, "incomplete", reviewer)
    _submit(outbox, email="other@example.tn")

    pending = registration.list_requests(reviewer, status="pending")
    assert [r.email for r in pending] == ["other@example.tn"]
    assert len(registration.list_requests(reviewer)) == 2
    with pytest.raises(ValidationError):
        registration.list_requests(reviewer, status="archived")
