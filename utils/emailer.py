import smtplib
from datetime import datetime
from email.message import EmailMessage

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.email_log import EmailLog


def send_email(to_email: str, subject: str, html: str, text: str = None):
    host = current_app.config.get("SMTP_HOST")
    port = current_app.config.get("SMTP_PORT", 587)
    username = current_app.config.get("SMTP_USERNAME")
    password = current_app.config.get("SMTP_PASSWORD")
    from_email = current_app.config.get("SMTP_FROM_EMAIL") or username
    use_tls = current_app.config.get("SMTP_USE_TLS", True)

    if not host or not from_email:
        return False, "Email not configured"

    msg = EmailMessage()
    msg["From"] = from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(text or "This message requires an HTML capable mail client.")
    msg.add_alternative(html, subtype="html")

    try:
        with smtplib.SMTP(host, port, timeout=10) as server:
            if use_tls:
                server.starttls()
            if username and password:
                server.login(username, password)
            server.send_message(msg)
        return True, None
    except (smtplib.SMTPException, OSError) as exc:
        return False, str(exc)


def dispatch(email_type: str, to_email: str, subject: str, html: str, text: str = None, account_id=None) -> bool:
    """
    Send one message and write its email_logs row. Never raises;
    the caller decides what a False means.
    """
    ok, error = send_email(to_email, subject, html, text)
    if not ok:
        current_app.logger.warning("%s email to %s failed: %s", email_type, to_email, error)

    try:
        db.session.add(EmailLog(
            email_type=email_type,
            recipient=to_email,
            account_id=account_id,
            subject=subject[:255],
            status="sent" if ok else "failed",
            error=error,
            sent_at=datetime.utcnow() if ok else None,
        ))
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.warning("email log for %s not written: %s", to_email, exc)
    return ok
