import re

from errors import ValidationError

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_email(value: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError("Email must be a string")
    return value.strip().lower()


def is_valid_email(email: str) -> bool:
    return isinstance(email, str) and len(email) <= 255 and bool(_EMAIL_RE.match(email))


def email_domain(email: str) -> str:
    return normalize_email(email).rsplit("@", 1)[-1]


def mask_email(email: str) -> str:
    local, _, domain = (email or "").partition("@")
    if not domain:
        return "***"
    return f"{local[:2]}***@{domain}"
