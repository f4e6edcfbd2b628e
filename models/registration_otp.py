from datetime import datetime
from models.db import db


class RegistrationOtp(db.Model):
    """At most one live code per applicant email."""
    __tablename__ = "registration_otps"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)

    # carried through to the request
    first_name = db.Column(db.String(120), nullable=False)
    last_name = db.Column(db.String(120), nullable=False)
    request_type = db.Column(db.String(32), nullable=False)

    code_hash = db.Column(db.String(128), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    attempts = db.Column(db.Integer, default=0, nullable=False)
