from datetime import datetime
from models.db import db


class EmailLog(db.Model):
    __tablename__ = "email_logs"

    id = db.Column(db.Integer, primary_key=True)
    email_type = db.Column(db.String(64), nullable=False)  # e.g. otp, welcome, decision
    recipient = db.Column(db.String(255), nullable=False, index=True)
    account_id = db.Column(db.Integer, nullable=True)
    subject = db.Column(db.String(255), nullable=True)

    status = db.Column(db.String(16), nullable=False)  # sent | failed
    error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    sent_at = db.Column(db.DateTime, nullable=True)
