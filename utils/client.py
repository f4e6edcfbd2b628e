from dataclasses import dataclass
from typing import Optional

from flask import has_request_context, request


def client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        # first hop is the caller
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "unknown"


@dataclass(frozen=True)
class ClientContext:
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None

    @classmethod
    def from_request(cls) -> "ClientContext":
        if not has_request_context():
            return cls()
        return cls(
            ip=client_ip(),
            user_agent=(request.headers.get("User-Agent") or "")[:255] or None,
            location=(request.headers.get("X-Client-Location") or "")[:120] or None,
        )
