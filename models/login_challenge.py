from datetime import datetime
from models.db import db

STAGE_MFA = "mfa"
STAGE_PASSWORD_CHANGE = "password_change"


class LoginChallenge(db.Model):
    """Password already checked; session withheld until the remaining gate passes."""
    __tablename__ = "login_challenges"

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False, index=True)
    stage = db.Column(db.String(32), nullable=False)

    token_hash = db.Column(db.String(128), unique=True, nullable=False, index=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    consumed_at = db.Column(db.DateTime, nullable=True)

    ip = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
