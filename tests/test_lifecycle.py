"""
Unit tests for the customer lifecycle engine.

Tests cover:
- Touchpoint counting and new -> engaged promotion on notes
- Revenue accumulation and forced "ordered" stage on orders
- Order removal round-trip
- Role gate on backward stage moves and revenue overrides
"""

from decimal import Decimal

import pytest

from app.crm.errors import AuthorizationError, NotFoundError, ValidationError
from app.crm.modules.customers.lifecycle import (
    Role,
    Stage,
    apply_note,
    apply_order,
    edit_revenue_field,
    is_backward,
    parse_stage,
    remove_order,
    request_stage_change,
    validate_order_amount,
)
from app.crm.modules.customers.models import Customer, Note, Order


def _customer(**kw) -> Customer:
    data = {"name": "Acme", "stage": "new", "total_revenue": 0.0, "touchpoints": 0}
    data.update(kw)
    return Customer(**data)


def _note(content: str = "Called about pricing", agent: str = "dana") -> Note:
    return Note(type="call", content=content, sales_agent=agent)


class TestApplyNote:
    def test_counts_touchpoint_and_engages_new_customer(self):
        c = _customer()
        n = _note()
        apply_note(c, n)
        assert c.touchpoints == 1
        assert c.stage == "engaged"
        assert n in c.notes

    def test_n_notes_add_n_touchpoints(self):
        c = _customer(touchpoints=3, stage="engaged")
        for i in range(5):
            apply_note(c, _note(f"note {i}"))
        assert c.touchpoints == 8
        assert len(c.notes) == 5

    @pytest.mark.parametrize("stage", ["engaged", "ordered", "closed lost"])
    def test_does_not_move_stage_past_new(self, stage):
        c = _customer(stage=stage)
        apply_note(c, _note())
        assert c.stage == stage

    @pytest.mark.parametrize("content", ["", "   ", None])
    def test_empty_content_rejected_without_side_effects(self, content):
        c = _customer()
        with pytest.raises(ValidationError):
            apply_note(c, _note(content))
        assert c.touchpoints == 0
        assert c.stage == "new"
        assert c.notes == []

    def test_content_is_trimmed(self):
        c = _customer()
        n = _note("  hello  ")
        apply_note(c, n)
        assert n.content == "hello"


class TestApplyOrder:
    def test_adds_revenue_and_sets_ordered(self):
        c = _customer(total_revenue=50.0, stage="engaged")
        o = Order(amount=100)
        apply_order(c, o)
        assert c.total_revenue == 150.0
        assert c.stage == "ordered"
        assert o in c.orders

    @pytest.mark.parametrize("stage", ["new", "engaged", "ordered", "closed lost"])
    def test_always_ordered_even_from_closed_lost(self, stage):
        c = _customer(stage=stage)
        apply_order(c, Order(amount=10))
        assert c.stage == "ordered"

    @pytest.mark.parametrize("amount", [0, -5, "abc", None, float("nan"), float("inf"), True])
    def test_rejects_non_positive_or_non_numeric_amount(self, amount):
        c = _customer(stage="engaged")
        with pytest.raises(ValidationError):
            apply_order(c, Order(amount=amount))
        assert c.total_revenue == 0.0
        assert c.stage == "engaged"
        assert c.orders == []

    def test_numeric_string_amount_accepted(self):
        assert validate_order_amount("12.5") == 12.5


class TestRemoveOrder:
    def test_round_trip_restores_revenue(self):
        c = _customer(total_revenue=20.0)
        o = Order(id=7, amount=100)
        apply_order(c, o)
        assert c.total_revenue == 120.0
        removed = remove_order(c, 7)
        assert removed is o
        assert c.total_revenue == 20.0
        assert c.orders == []
        # stage is not rolled back
        assert c.stage == "ordered"

    def test_unknown_order_raises_not_found(self):
        c = _customer()
        apply_order(c, Order(id=1, amount=10))
        with pytest.raises(NotFoundError):
            remove_order(c, 99)
        assert c.total_revenue == 10.0


class TestMoney:
    def test_fractional_round_trip_is_exact(self):
        c = _customer()
        apply_order(c, Order(id=1, amount="0.1"))
        before = c.total_revenue
        apply_order(c, Order(id=2, amount=0.2))
        remove_order(c, 2)
        assert c.total_revenue == before == Decimal("0.10")

    def test_revenue_equals_sum_of_attached_orders(self):
        c = _customer()
        for i, amount in enumerate((0.1, 0.2, 0.3), start=1):
            apply_order(c, Order(id=i, amount=amount))
        remove_order(c, 1)
        remove_order(c, 2)
        assert c.total_revenue == sum(o.amount for o in c.orders) == Decimal("0.30")

    def test_amount_quantized_to_cents(self):
        assert validate_order_amount("12.345") == Decimal("12.35")
        assert validate_order_amount(Decimal("7")) == Decimal("7.00")

    def test_amount_above_column_range_rejected(self):
        with pytest.raises(ValidationError):
            validate_order_amount("10000000000")

    def test_float_revenue_on_existing_record(self):
        c = _customer(total_revenue=0.1, stage="ordered")
        apply_order(c, Order(id=1, amount="0.2"))
        assert c.total_revenue == Decimal("0.30")


class TestStageChange:
    def test_forward_move_allowed_for_user(self):
        c = _customer(stage="engaged")
        request_stage_change(c, "closed lost", "user")
        assert c.stage == "closed lost"

    def test_same_stage_is_allowed(self):
        c = _customer(stage="ordered")
        request_stage_change(c, Stage.ORDERED, Role.USER)
        assert c.stage == "ordered"

    def test_backward_move_denied_for_user(self):
        c = _customer(stage="ordered")
        with pytest.raises(AuthorizationError):
            request_stage_change(c, "new", "user")
        assert c.stage == "ordered"

    def test_backward_move_allowed_for_admin(self):
        c = _customer(stage="closed lost")
        request_stage_change(c, "engaged", "admin")
        assert c.stage == "engaged"

    def test_unknown_stage_rejected(self):
        c = _customer()
        with pytest.raises(ValidationError):
            request_stage_change(c, "won", "admin")

    def test_unknown_role_rejected(self):
        c = _customer(stage="ordered")
        with pytest.raises(ValidationError):
            request_stage_change(c, "new", "superuser")

    def test_stage_spellings(self):
        assert parse_stage("closed-lost") is Stage.CLOSED_LOST
        assert parse_stage("CLOSED_LOST") is Stage.CLOSED_LOST
        assert parse_stage(" Engaged ") is Stage.ENGAGED

    def test_ordinals(self):
        assert is_backward(Stage.ORDERED, Stage.ENGAGED)
        assert not is_backward(Stage.ENGAGED, Stage.ORDERED)
        assert not is_backward(Stage.NEW, Stage.NEW)


class TestEditRevenueField:
    def test_user_cannot_override(self):
        c = _customer(total_revenue=10.0)
        with pytest.raises(AuthorizationError):
            edit_revenue_field(c, 999, "user")
        assert c.total_revenue == 10.0

    def test_admin_can_override(self):
        c = _customer(total_revenue=10.0)
        edit_revenue_field(c, "250", "admin")
        assert c.total_revenue == 250.0

    def test_admin_override_must_be_numeric(self):
        c = _customer()
        with pytest.raises(ValidationError):
            edit_revenue_field(c, "lots", "admin")


def test_lifecycle_scenario():
    c = _customer()
    apply_note(c, _note())
    assert (c.stage, c.touchpoints) == ("engaged", 1)

    apply_order(c, Order(id=1, amount=100))
    assert (c.stage, c.total_revenue) == ("ordered", 100.0)

    remove_order(c, 1)
    assert (c.stage, c.total_revenue) == ("ordered", 0.0)
