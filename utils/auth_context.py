from functools import wraps
from flask import g

from errors import AuthenticationError
from models import db
from models.account import Account
from security.session import get_session_from_request

def load_current_user():
    """Resolve the session cookie to g.user / g.session (both None when anonymous)."""
    sess = get_session_from_request()
    if not sess:
        g.user = None
        g.session = None
        return
    g.session = sess
    g.user = db.session.get(Account, sess.account_id)

def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user", None) is None:
            raise AuthenticationError("Authentication required", code="authentication_required")
        return fn(*args, **kwargs)
    return wrapper
