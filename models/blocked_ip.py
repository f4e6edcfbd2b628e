from datetime import datetime
from models.db import db


class BlockedIp(db.Model):
    __tablename__ = "blocked_ips"

    id = db.Column(db.Integer, primary_key=True)
    ip = db.Column(db.String(64), nullable=False, index=True)
    reason = db.Column(db.String(255), nullable=True)
    blocked_by = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True)  # null = automatic
    blocked_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
