import json

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.security_event import SecurityEvent, SEVERITIES
from utils.client import ClientContext

ALERT_SEVERITIES = ("high", "critical")


def record_event(event_type: str, severity: str = "low", account_id=None, client: ClientContext = None, details=None, email=None):
    """
    Append one security event. Callers commit their own state first.
    A failure here is logged and swallowed; it never undoes an auth decision.
    """
    if severity not in SEVERITIES:
        severity = "low"
    client = client or ClientContext.from_request()

    row = SecurityEvent(
        event_type=event_type,
        severity=severity,
        account_id=account_id,
        email=email,
        ip=client.ip,
        location=client.location,
        user_agent=client.user_agent,
        details_json=json.dumps(details, default=str) if details else None,
    )
    try:
        db.session.add(row)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.warning("security event %s not recorded: %s", event_type, exc)
        return None

    if severity in ALERT_SEVERITIES:
        # imported here: notifications records events through this module
        from utils.notifications import send_security_alert
        send_security_alert(row)
    return row
