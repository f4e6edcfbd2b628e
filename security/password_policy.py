import re
from typing import Dict, List, Tuple

from flask import current_app

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")
_SYMBOL = re.compile(r"[^A-Za-z0-9]")

_DEFAULTS = {
    "PASSWORD_MIN_LEN": 12,
    "PASSWORD_MAX_BYTES": 72,
}

# rule key -> message shown when the rule is not met
RULES = (
    ("min_length", "Password must be at least {min_len} characters"),
    ("has_upper", "Password must include at least 1 uppercase letter"),
    ("has_lower", "Password must include at least 1 lowercase letter"),
    ("has_digit", "Password must include at least 1 number"),
    ("has_special", "Password must include at least 1 special character"),
)


def _cfg(name: str):
    try:
        return current_app.config.get(name, _DEFAULTS[name])
    except RuntimeError:
        # outside an app context
        return _DEFAULTS[name]


def check_password(pw: str) -> Dict[str, bool]:
    """Each rule evaluated on its own so callers can show all of them."""
    if not isinstance(pw, str):
        pw = ""
    return {
        "min_length": len(pw) >= int(_cfg("PASSWORD_MIN_LEN")),
        "has_upper": bool(_UPPER.search(pw)),
        "has_lower": bool(_LOWER.search(pw)),
        "has_digit": bool(_DIGIT.search(pw)),
        "has_special": bool(_SYMBOL.search(pw)),
    }


def missing_rules(requirements: Dict[str, bool]) -> List[str]:
    return [key for key, _ in RULES if not requirements.get(key)]


def validate_password(pw: str) -> Tuple[bool, List[str]]:
    if not isinstance(pw, str):
        return False, ["Password must be a string"]

    min_len = int(_cfg("PASSWORD_MIN_LEN"))
    max_bytes = int(_cfg("PASSWORD_MAX_BYTES"))
    requirements = check_password(pw)

    errors: List[str] = [
        message.format(min_len=min_len)
        for key, message in RULES
        if not requirements[key]
    ]
    if len(pw.encode("utf-8")) > max_bytes:
        errors.append(f"Password must be at most {max_bytes} bytes long")

    return (len(errors) == 0), errors


def password_strength(pw: str) -> dict:
    if not isinstance(pw, str):
        pw = ""

    requirements = check_password(pw)
    valid, errors = validate_password(pw)
    variety = sum(
        1 for key in ("has_upper", "has_lower", "has_digit", "has_special") if requirements[key]
    )

    if requirements["min_length"] and variety >= 4:
        strength = "strong"
    elif requirements["min_length"] and variety >= 3:
        strength = "medium"
    elif len(pw) >= 8 and variety >= 2:
        strength = "medium"
    else:
        strength = "weak"

    return {
        "strength": strength,
        "valid": valid,
        "requirements": requirements,
        "feedback": errors,
    }
