import secrets
import string

import bcrypt
from flask import current_app

SPECIAL_CHARS = "!@#$%^&*_-+="

def hash_password(plain_password: str) -> str:
    if not isinstance(plain_password, str) or len(plain_password) == 0:
        raise ValueError("Password must be a non-empty string")

    # bcrypt expects bytes
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(plain_password.encode("utf-8"), salt)
    return hashed.decode("utf-8")

def verify_password(plain_password: str, password_hash: str) -> bool:
    if not isinstance(plain_password, str) or not isinstance(password_hash, str):
        return False
    if not plain_password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(
            plain_password.encode("utf-8"),
            password_hash.encode("utf-8")
        )
    except ValueError:
        # malformed stored hash
        return False

def generate_temporary_password() -> str:
    """
    Random credential handed out at provisioning. Always passes the policy:
    prefix + 4 lower + 3 upper + 2 digits + 1 special, body shuffled.
    """
    prefix = current_app.config.get("TEMP_PASSWORD_PREFIX", "CNAM_")
    body = (
        [secrets.choice(string.ascii_lowercase) for _ in range(4)]
        + [secrets.choice(string.ascii_uppercase) for _ in range(3)]
        + [secrets.choice(string.digits) for _ in range(2)]
        + [secrets.choice(SPECIAL_CHARS)]
    )
    secrets.SystemRandom().shuffle(body)
    return prefix + "".join(body)
