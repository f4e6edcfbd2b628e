import os
import uuid

from flask import current_app, url_for
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired

from errors import ValidationError, DependencyError, AuthorizationError, NotFoundError

SALT_EVIDENCE = "evidence-doc-v1"

PREFIXES = ("user", "prestataire", "internal")


def _serializer():
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=SALT_EVIDENCE)


def _root() -> str:
    return current_app.config["EVIDENCE_STORAGE_DIR"]


def _path_for(ref: str) -> str:
    prefix, _, name = (ref or "").partition("/")
    if prefix not in PREFIXES or not name or "/" in name or name.startswith("."):
        raise ValidationError("Invalid document reference")
    return os.path.join(_root(), prefix, name)


def prefix_for_request_type(request_type: str) -> str:
    if request_type in ("user", "prestataire"):
        return request_type
    return "internal"


def store_evidence(stream, filename: str, content_type: str, prefix: str) -> str:
    """
    Save an uploaded document and return its opaque reference "<prefix>/<name>".
    """
    if prefix not in PREFIXES:
        raise ValidationError("Invalid storage prefix")

    allowed = current_app.config.get("EVIDENCE_ALLOWED_TYPES", {})
    ext = allowed.get((content_type or "").lower())
    if not ext:
        raise ValidationError("Unsupported document type. Use PDF, JPEG, PNG or WEBP.")

    max_bytes = current_app.config.get("EVIDENCE_MAX_BYTES", 10 * 1024 * 1024)
    blob = stream.read(max_bytes + 1)
    if not blob:
        raise ValidationError("Document is empty")
    if len(blob) > max_bytes:
        raise ValidationError(f"Document exceeds {max_bytes // (1024 * 1024)} MB")

    ref = f"{prefix}/{uuid.uuid4().hex}{ext}"
    path = _path_for(ref)
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as fh:
            fh.write(blob)
    except OSError as exc:
        current_app.logger.error("evidence upload %s failed: %s", filename, exc)
        raise DependencyError("Document storage unavailable. Try again later.")
    return ref


def discard_evidence(ref: str) -> None:
    if not ref:
        return
    try:
        os.remove(_path_for(ref))
    except OSError as exc:
        current_app.logger.warning("evidence %s not removed: %s", ref, exc)


def signed_evidence_token(ref: str) -> str:
    return _serializer().dumps({"ref": ref})


def signed_evidence_url(ref: str) -> dict:
    ttl = current_app.config.get("EVIDENCE_URL_TTL_SECONDS", 300)
    token = signed_evidence_token(ref)
    return {
        "url": url_for("admin.download_evidence", token=token, _external=True),
        "expires_in": ttl,
    }


def resolve_evidence_token(token: str) -> str:
    """Return the on-disk path for a still-valid signed token."""
    ttl = current_app.config.get("EVIDENCE_URL_TTL_SECONDS", 300)
    try:
        data = _serializer().loads(token, max_age=ttl)
    except SignatureExpired:
        raise AuthorizationError("Document link expired", code="link_expired")
    except BadSignature:
        raise AuthorizationError("Invalid document link", code="link_invalid")

    path = _path_for(data.get("ref"))
    if not os.path.isfile(path):
        raise NotFoundError("Document")
    return path
