import json
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.crm.models import AuditEvent, User

# Widths of the audit_events string columns.
_REASON_MAX = 512
_ENTITY_ID_MAX = 128


def _clip(value: str | None, limit: int) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    return value if len(value) <= limit else value[: limit - 3] + "..."


def _client_ip() -> str | None:
    # First hop of X-Forwarded-For when behind the gunicorn/ingress proxy.
    route = request.access_route
    return (route[0] if route else request.remote_addr or "")[:64] or None


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: Any = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append one audit row for a customer, note, order or account change.

    `reason` is free text from the client (stage changes, revenue overrides) and
    is clipped to the column width rather than failing the surrounding change.
    Decimal amounts in `metadata` are stored as strings.
    """
    in_request = has_request_context()
    ev = AuditEvent(
        request_id=request_id or (getattr(g, "request_id", None) if in_request else None),
        actor_user_id=actor.id if actor else None,
        actor_username=actor.username if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=_clip(entity_id, _ENTITY_ID_MAX) if entity_id is not None else None,
        reason=_clip(reason, _REASON_MAX),
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=_client_ip() if in_request else None,
    )
    s.add(ev)
    return ev
