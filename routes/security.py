from datetime import datetime

from flask import Blueprint, jsonify, request

from models.blocked_ip import BlockedIp
from models.security_event import SecurityEvent
from security.rbac import require_capability

security_bp = Blueprint("security", __name__, url_prefix="/security")


@security_bp.get("/events")
@require_capability("security.events.read")
def list_security_events():

    limit = request.args.get("limit", type=int) or 200
    limit = max(1, min(limit, 500))

    event_type = request.args.get("event_type")
    severity = request.args.get("severity")
    account_id = request.args.get("account_id", type=int)

    q = SecurityEvent.query
    if event_type:
        q = q.filter(SecurityEvent.event_type == event_type)
    if severity:
        q = q.filter(SecurityEvent.severity == severity)
    if account_id is not None:
        q = q.filter(SecurityEvent.account_id == account_id)

    rows = q.order_by(SecurityEvent.created_at.desc(), SecurityEvent.id.desc()).limit(limit).all()
    return jsonify([
        {
            "id": r.id,
            "created_at": r.created_at.isoformat(),
            "event_type": r.event_type,
            "severity": r.severity,
            "account_id": r.account_id,
            "email": r.email,
            "ip": r.ip,
            "location": r.location,
            "user_agent": r.user_agent,
            "details": r.details_json,
        }
        for r in rows
    ]), 200


@security_bp.get("/blocked-ips")
@require_capability("security.blocked_ips.read")
def list_blocked_ips():
    q = BlockedIp.query
    if request.args.get("active", "true").lower() == "true":
        q = q.filter(BlockedIp.expires_at > datetime.utcnow())

    rows = q.order_by(BlockedIp.blocked_at.desc()).limit(200).all()
    return jsonify([
        {
            "id": b.id,
            "ip": b.ip,
            "reason": b.reason,
            "blocked_by": b.blocked_by,
            "blocked_at": b.blocked_at.isoformat(),
            "expires_at": b.expires_at.isoformat(),
        }
        for b in rows
    ]), 200
