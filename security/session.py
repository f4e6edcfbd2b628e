import hashlib
import secrets
from datetime import datetime, timedelta
from flask import request, current_app

from models import db
from models.session import Session
from utils.client import ClientContext

def hash_token(token: str) -> str:
    # SHA-256 is fine for hashing random session / challenge tokens
    return hashlib.sha256(token.encode("utf-8")).hexdigest()

def create_session(account_id: int, client: ClientContext = None) -> str:
    """
    Creates a server-side session and returns the RAW token (to set as cookie).
    Only the hash is stored in DB. Caller commits.
    """
    client = client or ClientContext.from_request()
    raw_token = secrets.token_urlsafe(32)

    lifetime = current_app.config.get("SESSION_LIFETIME_SECONDS", 28800)
    expires_at = datetime.utcnow() + timedelta(seconds=lifetime)

    db.session.add(Session(
        account_id=account_id,
        token_hash=hash_token(raw_token),
        expires_at=expires_at,
        ip=client.ip,
        user_agent=client.user_agent,
    ))
    return raw_token

def get_session_from_request():
    cookie_name = current_app.config.get("AUTH_COOKIE_NAME", "insureportal_session")
    raw_token = request.cookies.get(cookie_name)
    if not raw_token:
        return None

    now = datetime.utcnow()
    sess = (
        Session.query
        .filter_by(token_hash=hash_token(raw_token), revoked=False)
        .first()
    )
    if not sess:
        return None

    idle_seconds = current_app.config.get("IDLE_TIMEOUT_SECONDS", 1200)
    last_seen = sess.last_seen_at or sess.created_at
    # Absolute expiry, then idle timeout
    if sess.expires_at <= now or (last_seen + timedelta(seconds=idle_seconds)) <= now:
        sess.revoked = True
        db.session.commit()

        from utils.audit import record_event
        record_event("session_expired", "low", account_id=sess.account_id)
        return None

    # Update activity timestamp (touch)
    sess.last_seen_at = now
    db.session.commit()

    return sess


def revoke_session(raw_token: str) -> bool:
    if not raw_token:
        return False
    result = db.session.execute(
        db.update(Session)
        .where(Session.token_hash == hash_token(raw_token), Session.revoked.is_(False))
        .values(revoked=True)
    )
    db.session.commit()
    return result.rowcount > 0

def revoke_all_sessions(account_id: int) -> int:
    result = db.session.execute(
        db.update(Session)
        .where(Session.account_id == account_id, Session.revoked.is_(False))
        .values(revoked=True)
    )
    db.session.commit()
    return result.rowcount
