from datetime import datetime
from models.db import db

MFA_DISABLED = "disabled"
MFA_PENDING = "pending"
MFA_ENABLED = "enabled"
MFA_ENFORCED = "enforced"

class SecuritySettings(db.Model):
    __tablename__ = "security_settings"

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), unique=True, nullable=False, index=True)

    # TOTP enrollment
    mfa_status = db.Column(db.String(16), default=MFA_DISABLED, nullable=False)
    mfa_secret = db.Column(db.String(64), nullable=True)
    mfa_enabled_at = db.Column(db.DateTime, nullable=True)
    totp_attempts = db.Column(db.Integer, default=0, nullable=False)
    totp_last_step = db.Column(db.BigInteger, nullable=True)  # last accepted time step; codes are single-use

    # Brute-force state, only ever changed through conditional UPDATEs
    failed_login_attempts = db.Column(db.Integer, default=0, nullable=False)
    locked_until = db.Column(db.DateTime, nullable=True)

    password_changed_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    password_must_change = db.Column(db.Boolean, default=False, nullable=False)

    last_login_at = db.Column(db.DateTime, nullable=True)
    last_login_ip = db.Column(db.String(64), nullable=True)
    last_login_location = db.Column(db.String(120), nullable=True)

    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    account = db.relationship("Account", back_populates="settings")

    @property
    def mfa_active(self) -> bool:
        return self.mfa_status in (MFA_ENABLED, MFA_ENFORCED)

    @classmethod
    def for_account(cls, account_id: int) -> "SecuritySettings":
        """Fetch the 1:1 row, creating it on first use. Caller commits."""
        row = cls.query.filter_by(account_id=account_id).first()
        if row is None:
            row = cls(account_id=account_id)
            db.session.add(row)
            db.session.flush()
        return row
