from flask import Blueprint, request, jsonify

from errors import PortalError
from services import registration
from utils.storage import discard_evidence, prefix_for_request_type, store_evidence

registration_bp = Blueprint("registration", __name__, url_prefix="/register")

PROFILE_KEYS = (
    "phone",
    "message",
    "insurance_number",
    "organization_name",
    "organization_type",
    "license_number",
)


@registration_bp.post("/code")
def request_code():
    data = request.get_json(silent=True) or {}
    result = registration.request_registration_code(
        data.get("email"),
        data.get("first_name"),
        data.get("last_name"),
        data.get("request_type") or "user",
    )
    return jsonify(message="Verification code sent", **result), 200


@registration_bp.post("/verify")
def verify_code():
    # multipart when a document is attached, JSON otherwise
    if request.files or request.form:
        data = request.form.to_dict()
    else:
        data = request.get_json(silent=True) or {}

    email = data.get("email")
    profile = {key: data.get(key) for key in PROFILE_KEYS}

    document_ref = None
    upload = request.files.get("document")
    if upload is not None and upload.filename:
        request_type = registration.pending_request_type(email)
        document_ref = store_evidence(
            upload.stream,
            upload.filename,
            upload.mimetype,
            prefix_for_request_type(request_type),
        )

    try:
        req = registration.verify_registration_code(email, data.get("code"), profile, document_ref)
    except PortalError:
        discard_evidence(document_ref)
        raise

    return jsonify(
        message="Registration request submitted",
        request_id=req.id,
        status=req.status,
    ), 201
