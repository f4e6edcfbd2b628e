import hashlib
import re
import secrets
from datetime import datetime, timedelta

from flask import current_app

from errors import ValidationError

_SEPARATORS = re.compile(r"[\s-]")


def generate_code() -> str:
    length = current_app.config.get("OTP_LENGTH", 6)
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def hash_code(code: str) -> str:
    pepper = current_app.config.get("OTP_PEPPER", "")
    return hashlib.sha256((pepper + code).encode("utf-8")).hexdigest()


def code_matches(code: str, code_hash: str) -> bool:
    return secrets.compare_digest(code_hash or "", hash_code(code))


def code_expiry() -> datetime:
    return datetime.utcnow() + timedelta(seconds=current_app.config.get("OTP_TTL_SECONDS", 600))


def normalize_code(code) -> str:
    """Strip spaces/dashes users paste in; anything but N digits is rejected."""
    length = current_app.config.get("OTP_LENGTH", 6)
    digits = _SEPARATORS.sub("", code if isinstance(code, str) else str(code or ""))
    if len(digits) != length or not (digits.isascii() and digits.isdigit()):
        raise ValidationError(f"Enter the {length} digit code", code="malformed_code")
    return digits
