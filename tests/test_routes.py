"""
HTTP surface: status codes, cookies, CSRF and the capability guard.
"""
import io
import os

import pyotp

from models.security_event import SecurityEvent

from conftest import PASSWORD

PDF = b"%PDF-1.4 test document"


def _login(client, email, password=PASSWORD):
    return client.post("/auth/login", json={"email": email, "password": password})


def _login_with_code(client, outbox, email):
    first = _login(client, email)
    assert first.get_json()["status"] == "mfa_required"
    token = first.get_json()["challenge_token"]
    client.post("/auth/login/code", json={"challenge_token": token})
    return client.post("/auth/login/mfa", json={
        "challenge_token": token,
        "code": outbox.last_code(email),
        "mode": "email_otp",
    })


def _csrf(client):
    return {"X-CSRF-Token": client.get_cookie("csrf_token").value}


def test_health_has_security_headers(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_bad_credentials_are_401(client, make_account):
    make_account("amal@example.tn")
    resp = _login(client, "amal@example.tn", "Wrong-password1")
    assert resp.status_code == 401
    assert resp.get_json() == {"error": "Invalid email or password", "code": "invalid_credentials"}


def test_login_sets_session_and_csrf_cookies(client, make_account):
    make_account("amal@example.tn")
    resp = _login(client, "amal@example.tn")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "granted"
    assert body["dashboard"] == "/app/user"
    assert client.get_cookie("insureportal_session").value == body["session_token"]
    assert client.get_cookie("csrf_token") is not None

    me = client.get("/auth/me")
    assert me.status_code == 200
    assert me.get_json()["email"] == "amal@example.tn"
    assert me.get_json()["dashboard"] == "/app/user"


def test_me_requires_a_session(client):
    assert client.get("/auth/me").status_code == 401


def test_state_change_needs_csrf_header(client, make_account):
    make_account("amal@example.tn")
    _login(client, "amal@example.tn")

    resp = client.post("/auth/logout")
    assert resp.status_code == 403
    assert resp.get_json()["code"] == "csrf_failed"

    assert client.post("/auth/logout", headers=_csrf(client)).status_code == 200
    assert client.get("/auth/me").status_code == 401


def test_login_endpoint_is_rate_limited(app, client, make_account):
    app.config["LOGIN_RATE_MAX_REQUESTS"] = 2
    make_account("amal@example.tn")
    _login(client, "amal@example.tn", "Wrong-password1")
    _login(client, "amal@example.tn", "Wrong-password1")

    resp = _login(client, "amal@example.tn", "Wrong-password1")
    assert resp.status_code == 429
    assert resp.get_json()["retry_after_seconds"] > 0


def test_locked_account_is_429(client, make_account):
    make_account("amal@example.tn")
    for _ in range(4):
        assert _login(client, "amal@example.tn", "Wrong-password1").status_code == 401
    resp = _login(client, "amal@example.tn", "Wrong-password1")
    assert resp.status_code == 429
    assert resp.get_json()["code"] == "account_locked"


def test_admin_login_goes_through_email_code(client, make_account, outbox):
    make_account("boss@esprim.tn", roles=("admin",))
    resp = _login_with_code(client, outbox, "boss@esprim.tn")
    assert resp.status_code == 200
    assert resp.get_json()["dashboard"] == "/app/admin"
    assert client.get("/auth/me").status_code == 200


def test_wrong_code_reports_remaining_attempts(client, make_account, outbox):
    make_account("boss@esprim.tn", roles=("admin",))
    token = _login(client, "boss@esprim.tn").get_json()["challenge_token"]
    client.post("/auth/login/code", json={"challenge_token": token})
    code = outbox.last_code("boss@esprim.tn")

    resp = client.post("/auth/login/mfa", json={
        "challenge_token": token,
        "code": "000000" if code != "000000" else "111111",
        "mode": "email_otp",
    })
    assert resp.status_code == 401
    assert resp.get_json()["remaining_attempts"] == 4


def test_password_strength_endpoint(client):
    resp = client.post("/auth/password_strength", json={"password": "short"})
    body = resp.get_json()
    assert body["strength"] == "weak"
    assert body["requirements"]["min_length"] is False


def test_capability_guard(app, client, make_account):
    make_account("amal@example.tn")
    assert client.get("/admin/registration-requests").status_code == 401

    _login(client, "amal@example.tn")
    assert client.get("/admin/registration-requests").status_code == 403

    with app.app_context():
        event = SecurityEvent.query.filter_by(event_type="access_denied").one()
        assert event.severity == "high"
        assert "registration.review" in event.details_json


def test_access_check_logs_denials(app, client, make_account):
    make_account("amal@example.tn")
    _login(client, "amal@example.tn")

    allowed = client.post("/auth/access", json={"screen": "/app/user/claims"}, headers=_csrf(client))
    assert allowed.get_json() == {"allowed": True}

    denied = client.post("/auth/access", json={"screen": "/app/admin/utilisateurs"}, headers=_csrf(client))
    assert denied.get_json() == {"allowed": False}
    with app.app_context():
        event = SecurityEvent.query.filter_by(event_type="access_denied").one()
        assert "/app/admin/utilisateurs" in event.details_json


def test_registration_with_document_end_to_end(client, make_account, outbox):
    make_account("boss@esprim.tn", roles=("admin",))

    resp = client.post("/register/code", json={
        "email": "sami@example.tn",
        "first_name": "Sami",
        "last_name": "Ben Salah",
        "request_type": "user",
    })
    assert resp.status_code == 200

    resp = client.post(
        "/register/verify",
        data={
            "email": "sami@example.tn",
            "code": outbox.last_code("sami@example.tn"),
            "insurance_number": "INS-2024-0042",
            "document": (io.BytesIO(PDF), "card.pdf", "application/pdf"),
        },
        content_type="multipart/form-data",
    )
    assert resp.status_code == 201
    request_id = resp.get_json()["request_id"]

    _login_with_code(client, outbox, "boss@esprim.tn")
    listing = client.get("/admin/registration-requests?status=pending").get_json()
    assert [r["id"] for r in listing] == [request_id]
    assert listing[0]["has_document"] is True

    link = client.get(f"/admin/registration-requests/{request_id}/document").get_json()
    download = client.get(link["url"])
    assert download.status_code == 200
    assert download.data == PDF

    approved = client.post(
        f"/admin/registration-requests/{request_id}/approve",
        json={"role": "user"},
        headers=_csrf(client),
    )
    assert approved.status_code == 200
    assert approved.get_json()["request"]["status"] == "approved"

    again = client.post(
        f"/admin/registration-requests/{request_id}/approve",
        json={"role": "user"},
        headers=_csrf(client),
    )
    assert again.status_code == 409


def test_rejected_upload_is_not_kept(app, client, outbox):
    client.post("/register/code", json={
        "email": "sami@example.tn",
        "first_name": "Sami",
        "last_name": "Ben Salah",
    })
    resp = client.post(
        "/register/verify",
        data={
            "email": "sami@example.tn",
            "code": outbox.last_code("sami@example.tn"),
            "document": (io.BytesIO(PDF), "card.pdf", "application/pdf"),
        },
        content_type="multipart/form-data",
    )
    # insurance_number missing
    assert resp.status_code == 400

    stored = os.path.join(app.config["EVIDENCE_STORAGE_DIR"], "user")
    assert not os.path.isdir(stored) or os.listdir(stored) == []


def test_security_events_for_soc(client, make_account, outbox):
    make_account("soc1@esprim.tn", roles=("security_engineer",))
    _login(client, "ghost@example.tn", "Whatever-123")
    _login_with_code(client, outbox, "soc1@esprim.tn")

    resp = client.get("/security/events?event_type=login_failure")
    assert resp.status_code == 200
    events = resp.get_json()
    assert len(events) == 1
    assert events[0]["email"] == "ghost@example.tn"

    assert client.get("/security/blocked-ips").get_json() == []


def test_mfa_enrollment_over_http(client, make_account):
    make_account("amal@example.tn")
    _login(client, "amal@example.tn")

    enrolled = client.post("/mfa/totp/enroll", headers=_csrf(client)).get_json()
    assert enrolled["status"] == "pending"

    resp = client.post(
        "/mfa/totp/verify",
        json={"code": pyotp.TOTP(enrolled["secret"]).now()},
        headers=_csrf(client),
    )
    assert resp.get_json()["mfa_status"] == "enabled"
    assert client.get("/mfa/status").get_json()["methods"] == ["totp", "email_otp"]


def test_wrong_json_types_are_validation_errors(client, make_account):
    make_account("amal@example.tn")

    resp = client.post("/auth/login", json={"email": 123, "password": PASSWORD})
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "validation_error"

    resp = client.post("/auth/login", json={"email": "amal@example.tn", "password": ["x"]})
    assert resp.status_code == 400

    resp = client.post("/auth/login/code", json={"challenge_token": ["abc"]})
    assert resp.status_code == 401

    resp = client.post("/register/code", json={
        "email": ["sami@example.tn"],
        "first_name": "Sami",
        "last_name": "Ben Salah",
    })
    assert resp.status_code == 400

    resp = client.post("/register/code", json={
        "email": "sami@example.tn",
        "first_name": "Sami",
        "last_name": "Ben Salah",
        "request_type": 7,
    })
    assert resp.status_code == 400


def test_access_check_rejects_malformed_targets(client, make_account):
    make_account("amal@example.tn")
    _login(client, "amal@example.tn")

    for body in ({"capability": ["registration.review"]}, {"screen": 5}, {"required_roles": "admin"}):
        resp = client.post("/auth/access", json=body, headers=_csrf(client))
        assert resp.status_code == 400
