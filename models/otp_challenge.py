from datetime import datetime
from models.db import db

PURPOSE_LOGIN = "login"
PURPOSE_PASSWORD_CHANGE = "password_change"
PURPOSE_MFA_RESET = "mfa_reset"
PURPOSES = (PURPOSE_LOGIN, PURPOSE_PASSWORD_CHANGE, PURPOSE_MFA_RESET)


class OtpChallenge(db.Model):
    """One live email code per (account, purpose). Reissue overwrites the slot."""
    __tablename__ = "otp_challenges"
    __table_args__ = (
        db.UniqueConstraint("account_id", "purpose", name="uq_otp_challenges_account_purpose"),
    )

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False, index=True)
    purpose = db.Column(db.String(32), nullable=False, default=PURPOSE_LOGIN)

    code_hash = db.Column(db.String(128), nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    consumed_at = db.Column(db.DateTime, nullable=True)

    attempts = db.Column(db.Integer, default=0, nullable=False)
