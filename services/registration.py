"""
Registration pipeline.

Phase A (anonymous): prove ownership of an email with a mailed code, then
file a pending RegistrationRequest.
Phase B (reviewer): approve -> provision an account, or reject. A request
leaves ``pending`` exactly once.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from errors import (
    AlreadyApprovedError,
    AttemptsExhaustedError,
    AuthenticationError,
    AuthorizationError,
    CodeExpiredError,
    DependencyError,
    InvalidCodeError,
    NotFoundError,
    RateLimitError,
    StateConflictError,
    ValidationError,
)
from models import db
from models.account import Account, Role
from models.registration_otp import RegistrationOtp
from models.registration_request import (
    RegistrationRequest,
    REQUEST_TYPES,
    STATUS_APPROVED,
    STATUS_PENDING,
    STATUS_REJECTED,
)
from security.codes import code_expiry, code_matches, generate_code, hash_code, normalize_code
from security.rate_limit import hit
from security.rbac import PRIVILEGED_ROLES, SUPER_ADMIN, can
from services.accounts import email_taken, provision_account
from utils.addresses import email_domain, is_valid_email, normalize_email
from utils.audit import record_event
from utils.client import ClientContext
from utils.notifications import (
    notify_reviewers,
    send_registration_code,
    send_registration_decision,
    send_welcome_credentials,
)
from utils.storage import signed_evidence_url

# request_type -> roles a reviewer may assign without admin_superieur rights
COMPATIBLE_ROLES = {
    "user": frozenset({"user"}),
    "prestataire": frozenset({"prestataire"}),
    "admin": frozenset({"admin", "agent", "validator"}),
    "it_engineer": frozenset({"security_engineer"}),
}

DEFAULT_ROLE = {
    "user": "user",
    "prestataire": "prestataire",
    "admin": "admin",
    "it_engineer": "security_engineer",
}

INSTITUTIONAL_TYPES = ("admin", "it_engineer")

REVIEWER_ROLES = ("admin", "admin_superieur")

# request_type -> (profile field, required)
PROFILE_FIELDS = {
    "user": (("insurance_number", True),),
    "prestataire": (
        ("organization_name", True),
        ("organization_type", False),
        ("license_number", True),
    ),
    "admin": (),
    "it_engineer": (),
}


@dataclass(frozen=True)
class ApprovalResult:
    request: RegistrationRequest
    account: Account
    notifications: dict = field(default_factory=dict)


def _clean(value, limit: int) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError("Invalid field value")
    value = value.strip()
    if len(value) > limit:
        raise ValidationError(f"Field too long (max {limit} characters)")
    return value or None


def _latest_request(email: str) -> Optional[RegistrationRequest]:
    return (
        RegistrationRequest.query
        .filter_by(email=email)
        .order_by(RegistrationRequest.created_at.desc(), RegistrationRequest.id.desc())
        .first()
    )


def _ensure_can_apply(email: str) -> None:
    if email_taken(email):
        raise AlreadyApprovedError()
    latest = _latest_request(email)
    if latest is None or latest.status == STATUS_REJECTED:
        return
    if latest.status == STATUS_APPROVED:
        raise AlreadyApprovedError()
    raise StateConflictError("A request with this email is already awaiting review", code="request_pending")


# --- Phase A ---------------------------------------------------------------

def request_registration_code(email: str, first_name: str, last_name: str, request_type: str = "user") -> dict:
    email = normalize_email(email)
    first_name = _clean(first_name, 120)
    last_name = _clean(last_name, 120)
    request_type = (_clean(request_type, 32) or "user").lower()

    if not email or not first_name or not last_name:
        raise ValidationError("email, first_name and last_name are required")
    if not is_valid_email(email):
        raise ValidationError("Invalid email")
    if request_type not in REQUEST_TYPES:
        raise ValidationError("Unknown request_type")

    domain = current_app.config.get("INSTITUTIONAL_EMAIL_DOMAIN", "esprim.tn").lower().lstrip("@")
    if request_type in INSTITUTIONAL_TYPES and email_domain(email) != domain:
        raise ValidationError(
            f"{request_type} requests need an @{domain} email address",
            code="institutional_email_required",
        )

    allowed, retry_after = hit(
        f"registration_code:{email}",
        current_app.config.get("REGISTRATION_CODE_RATE_MAX", 3),
        current_app.config.get("REGISTRATION_CODE_RATE_WINDOW_SECONDS", 900),
    )
    if not allowed:
        raise RateLimitError("Too many codes requested. Try again in 15 minutes.", retry_after)

    _ensure_can_apply(email)

    code = generate_code()
    fields = dict(
        first_name=first_name,
        last_name=last_name,
        request_type=request_type,
        code_hash=hash_code(code),
        created_at=datetime.utcnow(),
        expires_at=code_expiry(),
        attempts=0,
    )
    row = RegistrationOtp.query.filter_by(email=email).first()
    if row is None:
        try:
            row = RegistrationOtp(email=email, **fields)
            db.session.add(row)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            row = RegistrationOtp.query.filter_by(email=email).first()
    for key, value in fields.items():
        setattr(row, key, value)
    db.session.commit()

    # the slot stays if the send fails; resending overwrites it
    if not send_registration_code(email, first_name, code):
        raise DependencyError("Could not send the verification code. Try again.")

    record_event("registration_code_sent", "low", email=email, details={"request_type": request_type})
    return {"email": email, "expires_at": row.expires_at.isoformat()}


def pending_request_type(email: str) -> str:
    """request_type carried by the live code for `email`; picks the storage prefix for uploads."""
    row = RegistrationOtp.query.filter_by(email=normalize_email(email)).first()
    if row is None:
        raise AuthenticationError("No active verification code. Request a new one.", code="no_active_code")
    return row.request_type


def verify_registration_code(email: str, code, profile: dict = None, document_ref: str = None,
                             client: ClientContext = None) -> RegistrationRequest:
    email = normalize_email(email)
    profile = profile or {}
    max_attempts = current_app.config.get("OTP_MAX_ATTEMPTS", 5)
    code = normalize_code(code)

    row = RegistrationOtp.query.filter_by(email=email).first()
    if row is None:
        raise AuthenticationError("No active verification code. Request a new one.", code="no_active_code")

    if row.attempts >= max_attempts:
        raise AttemptsExhaustedError()

    if row.expires_at <= datetime.utcnow():
        db.session.delete(row)
        db.session.commit()
        raise CodeExpiredError()

    if not code_matches(code, row.code_hash):
        result = db.session.execute(
            db.update(RegistrationOtp)
            .where(RegistrationOtp.id == row.id, RegistrationOtp.attempts < max_attempts)
            .values(attempts=RegistrationOtp.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        if not result.rowcount:
            raise AttemptsExhaustedError()
        db.session.refresh(row)
        raise InvalidCodeError(max(max_attempts - row.attempts, 0))

    extra = {}
    for name, required in PROFILE_FIELDS[row.request_type]:
        value = _clean(profile.get(name), 200)
        if required and not value:
            raise ValidationError(f"{name} is required for {row.request_type} requests")
        extra[name] = value

    _ensure_can_apply(email)

    # one-time use: only the first caller to remove the slot files a request
    result = db.session.execute(
        db.delete(RegistrationOtp)
        .where(
            RegistrationOtp.id == row.id,
            RegistrationOtp.code_hash == row.code_hash,
            RegistrationOtp.attempts < max_attempts,
        )
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        db.session.rollback()
        raise AuthenticationError("Verification code already used. Request a new one.", code="code_consumed")

    req = RegistrationRequest(
        first_name=row.first_name,
        last_name=row.last_name,
        email=email,
        phone=_clean(profile.get("phone"), 30),
        message=_clean(profile.get("message"), 2000),
        request_type=row.request_type,
        document_ref=document_ref,
        status=STATUS_PENDING,
        **extra,
    )
    db.session.add(req)
    db.session.commit()

    record_event(
        "registration_submitted",
        "low",
        client=client,
        email=email,
        details={"request_id": req.id, "request_type": req.request_type},
    )
    reviewers = (
        Account.query
        .join(Account.roles)
        .filter(Role.name.in_(REVIEWER_ROLES))
        .distinct()
        .all()
    )
    notify_reviewers(req, [a.email for a in reviewers])
    return req


# --- Phase B ---------------------------------------------------------------

def _require_reviewer(reviewer) -> None:
    if not can(reviewer, "registration.review"):
        raise AuthorizationError("Insufficient permissions")


def get_request(request_id: int) -> RegistrationRequest:
    req = db.session.get(RegistrationRequest, request_id)
    if req is None:
        raise NotFoundError("Registration request", request_id)
    return req


def list_requests(reviewer, status: str = None, limit: int = 200) -> list:
    _require_reviewer(reviewer)
    q = RegistrationRequest.query
    if status:
        if status not in (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED):
            raise ValidationError("Unknown status")
        q = q.filter(RegistrationRequest.status == status)
    return q.order_by(RegistrationRequest.created_at.desc()).limit(limit).all()


def _check_assignable(req: RegistrationRequest, role: str, reviewer) -> None:
    if not Role.query.filter_by(name=role).first():
        raise ValidationError("Unknown role", details={"missing": [role]})

    is_super = SUPER_ADMIN in reviewer.role_names
    if role in PRIVILEGED_ROLES and not is_super:
        raise AuthorizationError(
            "Only an admin_superieur can assign privileged roles",
            code="privileged_role",
        )
    if role not in COMPATIBLE_ROLES[req.request_type] and not is_super:
        raise ValidationError(
            f"Role {role} is not compatible with a {req.request_type} request",
            code="incompatible_role",
        )


def _claim(req: RegistrationRequest, **values) -> None:
    """pending -> terminal, exactly once. Not committed."""
    result = db.session.execute(
        db.update(RegistrationRequest)
        .where(RegistrationRequest.id == req.id, RegistrationRequest.status == STATUS_PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        db.session.rollback()
        raise StateConflictError("This request has already been reviewed", code="already_reviewed")


def approve(request_id: int, assigned_role: str, reviewer) -> ApprovalResult:
    _require_reviewer(reviewer)
    req = get_request(request_id)
    if req.status != STATUS_PENDING:
        raise StateConflictError("This request has already been reviewed", code="already_reviewed")

    role = (_clean(assigned_role, 32) or DEFAULT_ROLE[req.request_type]).lower()
    _check_assignable(req, role, reviewer)

    if email_taken(req.email):
        raise StateConflictError("An account with this email already exists", code="duplicate_email")

    now = datetime.utcnow()
    _claim(req, status=STATUS_APPROVED, reviewed_by=reviewer.id, reviewed_at=now)
    try:
        account, temporary = provision_account(
            req.email, req.first_name, req.last_name, req.phone, [role]
        )
        db.session.execute(
            db.update(RegistrationRequest)
            .where(RegistrationRequest.id == req.id)
            .values(account_id=account.id)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    except StateConflictError:
        db.session.rollback()
        raise
    except IntegrityError:
        # unique email: a concurrent approval already provisioned this account
        db.session.rollback()
        raise StateConflictError("An account with this email already exists", code="duplicate_email")

    db.session.refresh(req)
    current_app.logger.info("registration %s approved by %s as %s", req.id, reviewer.id, role)
    record_event(
        "registration_approved",
        "medium",
        account_id=account.id,
        details={"request_id": req.id, "role": role, "reviewed_by": reviewer.id},
    )

    # committed; mail failures are logged in email_logs and never undo the approval
    sent = {
        "credentials": send_welcome_credentials(account, temporary, role),
        "decision": send_registration_decision(req, approved=True),
    }
    return ApprovalResult(request=req, account=account, notifications=sent)


def reject(request_id: int, reason: str, reviewer) -> RegistrationRequest:
    _require_reviewer(reviewer)
    reason = _clean(reason, 500)
    if not reason:
        raise ValidationError("A rejection reason is required")

    req = get_request(request_id)
    _claim(
        req,
        status=STATUS_REJECTED,
        reviewed_by=reviewer.id,
        reviewed_at=datetime.utcnow(),
        rejection_reason=reason,
    )
    db.session.commit()
    db.session.refresh(req)

    record_event(
        "registration_rejected",
        "low",
        details={"request_id": req.id, "reviewed_by": reviewer.id},
        email=req.email,
    )
    send_registration_decision(req, approved=False)
    return req


def evidence_url(request_id: int, reviewer) -> dict:
    _require_reviewer(reviewer)
    req = get_request(request_id)
    if not req.document_ref:
        raise NotFoundError("Document")
    return signed_evidence_url(req.document_ref)
