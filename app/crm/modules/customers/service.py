"""
CUSTOMER RECORD STORE
=====================

Persistence-backed customer, note and order operations. Every function takes
the caller's Session, flushes but never commits: the request layer commits
the whole unit of work (note/order row + customer counters) or rolls it back.

State changes go through the lifecycle engine:

Event                  | Lifecycle op          | Counter effect
-----------------------|-----------------------|-------------------------------
Note added             | apply_note            | touchpoints += 1, new -> engaged
Note deleted           | (none)                | touchpoints NOT decremented
Order added            | apply_order           | revenue += amount, stage = ordered
Order deleted          | remove_order          | revenue -= amount
Stage change request   | request_stage_change  | backward moves need admin
Revenue override       | edit_revenue_field    | admin only

Note and order submissions accept an optional idempotency key; a replayed key
returns the original row without applying the event a second time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.crm.audit import record_event
from app.crm.config import CustomerField, FieldSettings
from app.crm.errors import AuthorizationError, NotFoundError, StorageError, ValidationError
from app.crm.models import User
from app.crm.modules.customers.lifecycle import (
    Role,
    apply_note,
    apply_order,
    edit_revenue_field,
    parse_stage,
    remove_order,
    request_stage_change,
    to_money,
    validate_note_type,
)
from app.crm.modules.customers.models import Customer, Note, Order
from app.crm.rbac import actor_role

logger = logging.getLogger(__name__)


def _flush(s: Session) -> None:
    try:
        s.flush()
    except SQLAlchemyError as e:
        raise StorageError(f"Could not write to the customer store: {e.__class__.__name__}") from e


def _clean(val: Any) -> str | None:
    return (str(val) if val is not None else "").strip() or None


IDEMPOTENCY_KEY_MAX = 128  # notes/orders idempotency_key column width


def _idempotency_key(raw: Any) -> str | None:
    key = _clean(raw)
    if key and len(key) > IDEMPOTENCY_KEY_MAX:
        raise ValidationError(
            f"Idempotency key must be at most {IDEMPOTENCY_KEY_MAX} characters.",
            fields=["idempotency_key"],
        )
    return key


# ============================================================================
# Customers
# ============================================================================

def list_customers(s: Session, *, q: str | None = None, stage: str | None = None) -> list[Customer]:
    query = s.query(Customer)
    q = (q or "").strip()
    if q:
        like = f"%{q}%"
        query = query.filter(Customer.name.ilike(like) | Customer.email.ilike(like) | Customer.phone.ilike(like))
    if (stage or "").strip():
        query = query.filter(Customer.stage == parse_stage(stage).value)
    return query.order_by(Customer.name.asc(), Customer.id.asc()).all()


def get_customer_by_id(s: Session, customer_id: int) -> Customer | None:
    return s.query(Customer).filter(Customer.id == customer_id).one_or_none()


def require_customer(s: Session, customer_id: int) -> Customer:
    c = get_customer_by_id(s, customer_id)
    if c is None:
        raise NotFoundError(f"Customer {customer_id} not found.")
    return c


def lock_customer(s: Session, customer_id: int) -> Customer:
    """
    Load a customer with a row lock for counter read-modify-write.
    SELECT ... FOR UPDATE on Postgres; SQLite ignores the lock clause.
    """
    c = (
        s.query(Customer)
        .filter(Customer.id == customer_id)
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )
    if c is None:
        raise NotFoundError(f"Customer {customer_id} not found.")
    return c


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str


def validate_customer_payload(payload: dict[str, Any]) -> list[FieldError]:
    errs: list[FieldError] = []
    if not _clean(payload.get("name")):
        errs.append(FieldError("name", "Name is required."))
    email = _clean(payload.get("email"))
    if email and "@" not in email:
        errs.append(FieldError("email", "Email must contain '@'."))
    return errs


def _raise_field_errors(errs: list[FieldError]) -> None:
    if errs:
        raise ValidationError("; ".join(f"{e.field}: {e.message}" for e in errs), fields=[e.field for e in errs])


def create_customer(s: Session, payload: dict[str, Any], *, user: User) -> Customer:
    """
    Stage, revenue and touchpoints are derived state and always start at new/0/0,
    whatever the payload says.
    """
    _raise_field_errors(validate_customer_payload(payload))
    now = datetime.utcnow()
    c = Customer(
        name=_clean(payload.get("name")),
        email=_clean(payload.get("email")),
        phone=_clean(payload.get("phone")),
        stage="new",
        total_revenue=Decimal("0"),
        touchpoints=0,
        created_at=now,
        updated_at=now,
    )
    s.add(c)
    _flush(s)
    record_event(
        s,
        actor=user,
        action="customer.create",
        entity_type="Customer",
        entity_id=str(c.id),
        metadata={"name": c.name},
    )
    return c


_CONTACT_FIELDS = (CustomerField.NAME, CustomerField.EMAIL, CustomerField.PHONE)


def _snapshot(c: Customer) -> dict[str, Any]:
    return {
        "name": c.name,
        "email": c.email,
        "phone": c.phone,
        "stage": c.stage,
        "total_revenue": c.total_revenue,
        "touchpoints": c.touchpoints,
    }


def update_customer(
    s: Session,
    c: Customer,
    payload: dict[str, Any],
    *,
    user: User,
    settings: FieldSettings,
    reason: str | None = None,
) -> Customer:
    """
    Partial update. Only keys present in the payload are touched.
    stage and total_revenue are routed through the lifecycle gates so the same
    role rules apply as on their dedicated endpoints.
    """
    requested: dict[CustomerField, Any] = {}
    for key, value in payload.items():
        try:
            f = CustomerField(key)
        except ValueError:
            continue
        if not settings.is_editable(f):
            raise ValidationError(f"Field '{f.value}' is not editable.", fields=[f.value])
        requested[f] = value

    if CustomerField.NAME in requested and not _clean(requested[CustomerField.NAME]):
        raise ValidationError("Name is required.", fields=["name"])
    if CustomerField.EMAIL in requested:
        email = _clean(requested[CustomerField.EMAIL])
        if email and "@" not in email:
            raise ValidationError("Email must contain '@'.", fields=["email"])

    before = _snapshot(c)
    role = actor_role(user)

    if CustomerField.TOTAL_REVENUE in requested:
        edit_revenue_field(c, requested[CustomerField.TOTAL_REVENUE], role)
    if CustomerField.STAGE in requested:
        request_stage_change(c, requested[CustomerField.STAGE], role)
    for f in _CONTACT_FIELDS:
        if f in requested:
            setattr(c, f.value, _clean(requested[f]))

    after = _snapshot(c)
    fields_changed = [k for k in before if before[k] != after[k]]
    if fields_changed:
        c.updated_at = datetime.utcnow()
    _flush(s)
    record_event(
        s,
        actor=user,
        action="customer.update",
        entity_type="Customer",
        entity_id=str(c.id),
        reason=reason,
        metadata={"before": before, "after": after, "fields_changed": fields_changed},
    )
    return c


def delete_customer(s: Session, c: Customer, *, user: User) -> None:
    if actor_role(user) is not Role.ADMIN:
        raise AuthorizationError("Deleting a customer requires admin.")
    record_event(
        s,
        actor=user,
        action="customer.delete",
        entity_type="Customer",
        entity_id=str(c.id),
        metadata={"name": c.name, "notes": len(c.notes), "orders": len(c.orders)},
    )
    s.delete(c)
    _flush(s)


def change_stage(s: Session, c: Customer, target: Any, *, user: User, reason: str | None = None) -> Customer:
    old = c.stage
    request_stage_change(c, target, actor_role(user))
    if c.stage != old:
        c.updated_at = datetime.utcnow()
    _flush(s)
    logger.info("Customer %s stage %s -> %s by %s", c.id, old, c.stage, user.username)
    record_event(
        s,
        actor=user,
        action="customer.stage_change",
        entity_type="Customer",
        entity_id=str(c.id),
        reason=reason,
        metadata={"from": old, "to": c.stage},
    )
    return c


def override_revenue(s: Session, c: Customer, value: Any, *, user: User, reason: str | None = None) -> Customer:
    old = c.total_revenue
    edit_revenue_field(c, value, actor_role(user))
    c.updated_at = datetime.utcnow()
    _flush(s)
    logger.info("Customer %s revenue overridden %s -> %s by %s", c.id, old, c.total_revenue, user.username)
    record_event(
        s,
        actor=user,
        action="customer.revenue_override",
        entity_type="Customer",
        entity_id=str(c.id),
        reason=reason,
        metadata={"from": old, "to": c.total_revenue},
    )
    return c


# ============================================================================
# Notes
# ============================================================================

def list_notes(s: Session, c: Customer) -> list[Note]:
    """Pinned notes first, then newest first."""
    return (
        s.query(Note)
        .filter(Note.customer_id == c.id)
        .order_by(Note.is_pinned.desc(), Note.timestamp.desc(), Note.id.desc())
        .all()
    )


def get_note(s: Session, c: Customer, note_id: int) -> Note:
    note = s.query(Note).filter(Note.id == note_id, Note.customer_id == c.id).one_or_none()
    if note is None:
        raise NotFoundError(f"Note {note_id} not found for this customer.")
    return note


def add_note(
    s: Session,
    c: Customer,
    payload: dict[str, Any],
    *,
    user: User,
    idempotency_key: str | None = None,
) -> tuple[Note, bool]:
    """
    Returns (note, created). created is False when the idempotency key was
    already used for this customer; the counters are then left alone.
    """
    key = _idempotency_key(idempotency_key)
    if key:
        existing = s.query(Note).filter(Note.customer_id == c.id, Note.idempotency_key == key).one_or_none()
        if existing is not None:
            return existing, False

    note = Note(
        type=validate_note_type(payload.get("type")),
        content=payload.get("content"),
        sales_agent=_clean(payload.get("sales_agent")) or user.username,
        timestamp=datetime.utcnow(),
        is_pinned=False,
        is_highlighted=False,
        idempotency_key=key,
    )
    apply_note(c, note)
    c.updated_at = datetime.utcnow()
    _flush(s)
    record_event(
        s,
        actor=user,
        action="note.create",
        entity_type="Note",
        entity_id=str(note.id),
        metadata={"customer_id": c.id, "type": note.type, "touchpoints": c.touchpoints, "stage": c.stage},
    )
    return note, True


def set_note_flags(
    s: Session,
    note: Note,
    *,
    user: User,
    is_pinned: bool | None = None,
    is_highlighted: bool | None = None,
) -> Note:
    before = {"is_pinned": note.is_pinned, "is_highlighted": note.is_highlighted}
    if is_pinned is not None:
        note.is_pinned = bool(is_pinned)
    if is_highlighted is not None:
        note.is_highlighted = bool(is_highlighted)
    _flush(s)
    record_event(
        s,
        actor=user,
        action="note.flags",
        entity_type="Note",
        entity_id=str(note.id),
        metadata={
            "customer_id": note.customer_id,
            "before": before,
            "after": {"is_pinned": note.is_pinned, "is_highlighted": note.is_highlighted},
        },
    )
    return note


def delete_note(s: Session, c: Customer, note: Note, *, user: User) -> None:
    # touchpoints counts notes ever added; deleting one leaves the counter as is.
    record_event(
        s,
        actor=user,
        action="note.delete",
        entity_type="Note",
        entity_id=str(note.id),
        metadata={"customer_id": c.id, "touchpoints": c.touchpoints},
    )
    c.notes.remove(note)
    _flush(s)


# ============================================================================
# Orders
# ============================================================================

def list_orders(s: Session, c: Customer) -> list[Order]:
    return s.query(Order).filter(Order.customer_id == c.id).order_by(Order.date.desc(), Order.id.desc()).all()


def add_order(
    s: Session,
    c: Customer,
    payload: dict[str, Any],
    *,
    user: User,
    idempotency_key: str | None = None,
) -> tuple[Order, bool]:
    key = _idempotency_key(idempotency_key)
    if key:
        existing = s.query(Order).filter(Order.customer_id == c.id, Order.idempotency_key == key).one_or_none()
        if existing is not None:
            return existing, False

    old_stage = c.stage
    order = Order(
        amount=payload.get("amount"),
        description=_clean(payload.get("description")),
        date=datetime.utcnow(),
        idempotency_key=key,
    )
    apply_order(c, order)
    c.updated_at = datetime.utcnow()
    _flush(s)
    if old_stage != c.stage:
        logger.info("Customer %s stage %s -> %s (order %s)", c.id, old_stage, c.stage, order.id)
    record_event(
        s,
        actor=user,
        action="order.create",
        entity_type="Order",
        entity_id=str(order.id),
        metadata={"customer_id": c.id, "amount": order.amount, "total_revenue": c.total_revenue},
    )
    return order, True


def delete_order(s: Session, c: Customer, order_id: int, *, user: User) -> Order:
    order = remove_order(c, order_id)
    c.updated_at = datetime.utcnow()
    _flush(s)
    logger.info("Customer %s order %s removed, revenue now %s", c.id, order_id, c.total_revenue)
    record_event(
        s,
        actor=user,
        action="order.delete",
        entity_type="Order",
        entity_id=str(order_id),
        metadata={"customer_id": c.id, "amount": order.amount, "total_revenue": c.total_revenue},
    )
    return order


# ============================================================================
# Serialization
# ============================================================================

def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def _money_out(value: Decimal | None) -> float:
    return float(to_money(value))


def serialize_customer(c: Customer, settings: FieldSettings) -> dict[str, Any]:
    out: dict[str, Any] = {"id": c.id}
    for f in CustomerField:
        if settings.is_visible(f):
            value = getattr(c, f.value)
            out[f.value] = _money_out(value) if f is CustomerField.TOTAL_REVENUE else value
    out["created_at"] = _iso(c.created_at)
    out["updated_at"] = _iso(c.updated_at)
    return out


def serialize_note(n: Note) -> dict[str, Any]:
    return {
        "id": n.id,
        "customer_id": n.customer_id,
        "type": n.type,
        "content": n.content,
        "sales_agent": n.sales_agent,
        "timestamp": _iso(n.timestamp),
        "is_pinned": n.is_pinned,
        "is_highlighted": n.is_highlighted,
    }


def serialize_order(o: Order) -> dict[str, Any]:
    return {
        "id": o.id,
        "customer_id": o.customer_id,
        "amount": _money_out(o.amount),
        "description": o.description,
        "date": _iso(o.date),
    }
