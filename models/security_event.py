from datetime import datetime
from models.db import db

SEVERITIES = ("low", "medium", "high", "critical")

class SecurityEvent(db.Model):
    __tablename__ = "security_events"

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(64), nullable=False, index=True)  # e.g. login_failure, ip_blocked
    severity = db.Column(db.String(16), default="low", nullable=False)
    account_id = db.Column(db.Integer, nullable=True, index=True)  # nullable for anonymous events
    email = db.Column(db.String(255), nullable=True, index=True)    # subject of anonymous failures

    ip = db.Column(db.String(64), nullable=True, index=True)
    location = db.Column(db.String(120), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    details_json = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
