from datetime import datetime
from models.db import db

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"

REQUEST_TYPES = ("user", "prestataire", "admin", "it_engineer")


class RegistrationRequest(db.Model):
    __tablename__ = "registration_requests"

    id = db.Column(db.Integer, primary_key=True)

    first_name = db.Column(db.String(120), nullable=False)
    last_name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), nullable=False, index=True)
    phone = db.Column(db.String(30), nullable=True)
    message = db.Column(db.Text, nullable=True)
    request_type = db.Column(db.String(32), nullable=False)

    # type specific proof
    insurance_number = db.Column(db.String(64), nullable=True)      # user
    organization_name = db.Column(db.String(200), nullable=True)    # prestataire
    organization_type = db.Column(db.String(64), nullable=True)
    license_number = db.Column(db.String(64), nullable=True)
    document_ref = db.Column(db.String(255), nullable=True)

    # pending -> approved | rejected, exactly once
    status = db.Column(db.String(16), default=STATUS_PENDING, nullable=False, index=True)
    reviewed_by = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True)
    reviewed_at = db.Column(db.DateTime, nullable=True)
    rejection_reason = db.Column(db.String(500), nullable=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "message": self.message,
            "request_type": self.request_type,
            "insurance_number": self.insurance_number,
            "organization_name": self.organization_name,
            "organization_type": self.organization_type,
            "license_number": self.license_number,
            "has_document": bool(self.document_ref),
            "status": self.status,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "rejection_reason": self.rejection_reason,
            "account_id": self.account_id,
            "created_at": self.created_at.isoformat(),
        }
