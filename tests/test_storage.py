import io
import os

import pytest

from errors import AuthorizationError, NotFoundError, ValidationError
from utils.storage import (
    discard_evidence,
    prefix_for_request_type,
    resolve_evidence_token,
    signed_evidence_token,
    signed_evidence_url,
    store_evidence,
)

PDF = b"%PDF-1.4 test document"


def test_prefix_by_request_type():
    assert prefix_for_request_type("user") == "user"
    assert prefix_for_request_type("prestataire") == "prestataire"
    assert prefix_for_request_type("admin") == "internal"
    assert prefix_for_request_type("it_engineer") == "internal"


def test_store_and_resolve(ctx):
    ref = store_evidence(io.BytesIO(PDF), "card.pdf", "application/pdf", "user")
    assert ref.startswith("user/")
    assert ref.endswith(".pdf")
    # the uploaded filename never reaches the disk
    assert "card" not in ref

    path = resolve_evidence_token(signed_evidence_token(ref))
    with open(path, "rb") as fh:
        assert fh.read() == PDF


def test_rejects_unsupported_type(ctx):
    with pytest.raises(ValidationError):
        store_evidence(io.BytesIO(b"MZ..."), "tool.exe", "application/x-msdownload", "user")


def test_rejects_empty_and_oversized(ctx):
    with pytest.raises(ValidationError):
        store_evidence(io.BytesIO(b""), "empty.pdf", "application/pdf", "user")

    ctx.config["EVIDENCE_MAX_BYTES"] = 8
    with pytest.raises(ValidationError):
        store_evidence(io.BytesIO(PDF), "big.pdf", "application/pdf", "user")


def test_rejects_unknown_prefix(ctx):
    with pytest.raises(ValidationError):
        store_evidence(io.BytesIO(PDF), "card.pdf", "application/pdf", "../etc")


def test_signed_url_is_short_lived(app):
    with app.test_request_context("/"):
        ref = store_evidence(io.BytesIO(PDF), "card.pdf", "application/pdf", "prestataire")
        link = signed_evidence_url(ref)
    assert "/admin/evidence/" in link["url"]
    assert link["expires_in"] == 300


def test_expired_link(ctx):
    ref = store_evidence(io.BytesIO(PDF), "card.pdf", "application/pdf", "user")
    token = signed_evidence_token(ref)
    ctx.config["EVIDENCE_URL_TTL_SECONDS"] = -1
    with pytest.raises(AuthorizationError) as exc:
        resolve_evidence_token(token)
    assert exc.value.code == "link_expired"


def test_tampered_link(ctx):
    token = signed_evidence_token("user/abc.pdf")
    with pytest.raises(AuthorizationError) as exc:
        resolve_evidence_token(token[:-2] + "xx")
    assert exc.value.code == "link_invalid"


def test_discarded_document_is_gone(ctx):
    ref = store_evidence(io.BytesIO(PDF), "card.pdf", "image/png", "user")
    token = signed_evidence_token(ref)
    discard_evidence(ref)
    with pytest.raises(NotFoundError):
        resolve_evidence_token(token)
    assert not os.path.exists(os.path.join(ctx.config["EVIDENCE_STORAGE_DIR"], ref))
