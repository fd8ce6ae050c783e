"""
Customer lifecycle engine.

Pure derivation logic: each operation takes a customer (ORM object or anything
exposing `stage`, `total_revenue`, `touchpoints`, `notes` and `orders`),
mutates it in place to its next state and returns it. Nothing here touches the
database or the request; persistence is the caller's job.

Stage order is fixed: new < engaged < ordered < closed lost.
- A note moves a "new" customer to "engaged".
- An order always moves the customer to "ordered" (also from "closed lost").
- Any explicit move to a lower stage needs the admin role.

Money is Decimal quantized to cents, so adding and then removing the same
order restores revenue exactly.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any

from app.crm.errors import AuthorizationError, NotFoundError, ValidationError


class Stage(str, Enum):
    NEW = "new"
    ENGAGED = "engaged"
    ORDERED = "ordered"
    CLOSED_LOST = "closed lost"

    @property
    def ordinal(self) -> int:
        return STAGE_SEQUENCE.index(self)


STAGE_SEQUENCE: tuple[Stage, ...] = (Stage.NEW, Stage.ENGAGED, Stage.ORDERED, Stage.CLOSED_LOST)


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"


NOTE_TYPES = ("call", "email")


def parse_stage(value: Any) -> Stage:
    if isinstance(value, Stage):
        return value
    raw = str(value or "").strip().lower().replace("_", " ").replace("-", " ")
    try:
        return Stage(raw)
    except ValueError:
        valid = ", ".join(s.value for s in STAGE_SEQUENCE)
        raise ValidationError(f"Invalid stage '{value}'. Must be one of: {valid}", fields=["stage"]) from None


def parse_role(value: Any) -> Role:
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value or "").strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid role '{value}'.", fields=["role"]) from None


CENTS = Decimal("0.01")
# Numeric(12, 2) columns hold at most 10 integer digits.
MAX_MONEY = Decimal("9999999999.99")


def to_money(value: Any) -> Decimal:
    """Coerce a stored amount (Decimal, int, float or None) to cents."""
    if isinstance(value, Decimal):
        return value.quantize(CENTS, rounding=ROUND_HALF_UP)
    return Decimal(str(value or 0)).quantize(CENTS, rounding=ROUND_HALF_UP)


def _money(value: Any, field: str) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number.", fields=[field])
    try:
        n = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number.", fields=[field]) from None
    if not n.is_finite():
        raise ValidationError(f"{field} must be a finite number.", fields=[field])
    if abs(n) > MAX_MONEY:
        raise ValidationError(f"{field} must not exceed {MAX_MONEY}.", fields=[field])
    return n.quantize(CENTS, rounding=ROUND_HALF_UP)


def validate_note_content(content: str | None) -> str:
    text = (content or "").strip()
    if not text:
        raise ValidationError("Note content is required.", fields=["content"])
    return text


def validate_note_type(note_type: str | None) -> str:
    t = (note_type or "call").strip().lower()
    if t not in NOTE_TYPES:
        raise ValidationError(f"Invalid note type '{note_type}'. Must be one of: {', '.join(NOTE_TYPES)}", fields=["type"])
    return t


def validate_order_amount(amount: Any) -> Decimal:
    n = _money(amount, "amount")
    if n <= 0:
        raise ValidationError("Order amount must be greater than zero.", fields=["amount"])
    return n


def current_stage(customer: Any) -> Stage:
    return parse_stage(customer.stage or Stage.NEW.value)


def is_backward(current: Stage, target: Stage) -> bool:
    return target.ordinal < current.ordinal


def apply_note(customer: Any, note: Any) -> Any:
    """Count one touchpoint, promote new -> engaged and attach the note."""
    note.content = validate_note_content(note.content)
    customer.touchpoints = (customer.touchpoints or 0) + 1
    if current_stage(customer) is Stage.NEW:
        customer.stage = Stage.ENGAGED.value
    customer.notes.append(note)
    return customer


def apply_order(customer: Any, order: Any) -> Any:
    """Add the order amount to revenue and force the stage to "ordered"."""
    order.amount = validate_order_amount(order.amount)
    customer.total_revenue = to_money(customer.total_revenue) + order.amount
    customer.stage = Stage.ORDERED.value
    customer.orders.append(order)
    return customer


def remove_order(customer: Any, order_id: Any) -> Any:
    """
    Detach an order and reverse its revenue contribution. Stage is left as is.
    Returns the removed order.
    """
    order = next((o for o in customer.orders if o.id == order_id), None)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found for this customer.")
    customer.total_revenue = to_money(customer.total_revenue) - to_money(order.amount)
    customer.orders.remove(order)
    return order


def request_stage_change(customer: Any, target_stage: Any, actor_role: Any) -> Any:
    target = parse_stage(target_stage)
    role = parse_role(actor_role)
    if is_backward(current_stage(customer), target) and role is not Role.ADMIN:
        raise AuthorizationError(
            f"Moving a customer back from '{current_stage(customer).value}' to '{target.value}' requires admin."
        )
    customer.stage = target.value
    return customer


def edit_revenue_field(customer: Any, new_value: Any, actor_role: Any) -> Any:
    """Direct override of total revenue. Admin only."""
    if parse_role(actor_role) is not Role.ADMIN:
        raise AuthorizationError("Editing total revenue requires admin.")
    customer.total_revenue = _money(new_value, "total_revenue")
    return customer
