import json
import re
from datetime import date, datetime, time, timedelta

from flask import Blueprint, g, jsonify, request
from werkzeug.security import generate_password_hash

from app.crm.audit import record_event
from app.crm.auth import serialize_user
from app.crm.db import commit, db_session
from app.crm.errors import NotFoundError, ValidationError
from app.crm.models import AuditEvent, Role, User
from app.crm.modules.customers.lifecycle import parse_role
from app.crm.rbac import require_role

bp = Blueprint("admin", __name__)

_USERNAME_RE = re.compile(r"^[a-z0-9._@-]{3,150}$")


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        raise ValidationError(f"Invalid date '{s}'. Use YYYY-MM-DD.") from None


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _role(s, key: str) -> Role:
    r = s.query(Role).filter(Role.key == key).one_or_none()
    if not r:
        r = Role(key=key, name=key.capitalize())
        s.add(r)
    return r


# ============================================================================
# ACCOUNT MANAGEMENT (Admin Only)
# ============================================================================

@bp.get("/accounts")
@require_role("admin")
def accounts_list():
    s = db_session()
    users = s.query(User).order_by(User.username.asc()).all()
    return jsonify([serialize_user(u) for u in users])


@bp.post("/accounts")
@require_role("admin")
def accounts_create():
    s = db_session()
    u = _current_user()
    data = request.get_json(silent=True) or {}

    username = (data.get("username") or "").strip().lower()
    password = data.get("password") or ""
    role = parse_role(data.get("role") or "user")

    errors = []
    if not _USERNAME_RE.match(username):
        errors.append("username")
    elif s.query(User).filter(User.username == username).one_or_none():
        raise ValidationError("An account with this username already exists.", fields=["username"])
    if len(password) < 8:
        errors.append("password")
    if errors:
        raise ValidationError(
            "Username must be 3-150 chars [a-z0-9._@-]; password at least 8 characters.",
            fields=errors,
        )

    try:
        new_user = User(username=username, password_hash=generate_password_hash(password), is_active=True)
        new_user.roles.append(_role(s, role.value))
        s.add(new_user)
        s.flush()
        record_event(
            s,
            actor=u,
            action="user.create",
            entity_type="User",
            entity_id=str(new_user.id),
            metadata={"username": username, "role": role.value},
        )
        commit(s)
    except Exception:
        s.rollback()
        raise
    return jsonify(serialize_user(new_user)), 201


@bp.patch("/accounts/<int:user_id>")
@require_role("admin")
def accounts_update(user_id: int):
    s = db_session()
    u = _current_user()
    user = s.get(User, user_id)
    if not user:
        raise NotFoundError(f"User {user_id} not found.")
    if user.id == u.id:
        raise ValidationError("You cannot modify your own account.")

    data = request.get_json(silent=True) or {}
    before = serialize_user(user)
    try:
        if "is_active" in data:
            user.is_active = bool(data["is_active"])
        if "role" in data:
            role = parse_role(data["role"])
            user.roles.clear()
            user.roles.append(_role(s, role.value))
        if data.get("password"):
            if len(data["password"]) < 8:
                raise ValidationError("Password must be at least 8 characters.", fields=["password"])
            user.password_hash = generate_password_hash(data["password"])
        record_event(
            s,
            actor=u,
            action="user.update",
            entity_type="User",
            entity_id=str(user.id),
            metadata={"before": before, "after": serialize_user(user), "password_reset": bool(data.get("password"))},
        )
        commit(s)
    except Exception:
        s.rollback()
        raise
    return jsonify(serialize_user(user))


@bp.get("/audit")
@require_role("admin")
def audit_list():
    """
    Last 200 audit events with simple filters:
    - action (contains)
    - entity_type / entity_id (exact)
    - date range (YYYY-MM-DD, inclusive)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    entity_type = (request.args.get("entity_type") or "").strip()
    entity_id = (request.args.get("entity_id") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    if entity_id:
        q = q.filter(AuditEvent.entity_id == entity_id)
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    return jsonify(
        [
            {
                "id": e.id,
                "created_at": e.created_at.isoformat(),
                "request_id": e.request_id,
                "actor": e.actor_username,
                "action": e.action,
                "entity_type": e.entity_type,
                "entity_id": e.entity_id,
                "reason": e.reason,
                "metadata": json.loads(e.metadata_json) if e.metadata_json else None,
            }
            for e in events
        ]
    )
