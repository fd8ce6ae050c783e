from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, g, jsonify, request

from app.crm.config import FieldSettings
from app.crm.db import commit, db_session
from app.crm.errors import ValidationError
from app.crm.models import User
from app.crm.modules.customers.kpi import compute_kpis
from app.crm.modules.customers.service import (
    add_note,
    add_order,
    change_stage,
    create_customer,
    delete_customer,
    delete_note,
    delete_order,
    get_note,
    list_customers,
    list_notes,
    list_orders,
    lock_customer,
    override_revenue,
    require_customer,
    serialize_customer,
    serialize_note,
    serialize_order,
    set_note_flags,
    update_customer,
)
from app.crm.rbac import require_login

bp = Blueprint("customers", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _settings() -> FieldSettings:
    return current_app.config.get("CRM_FIELD_SETTINGS") or FieldSettings()


def _payload() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return request.form.to_dict()
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _idempotency_key(payload: dict[str, Any]) -> str | None:
    return request.headers.get("Idempotency-Key") or payload.get("idempotency_key")


def _optional_bool(payload: dict[str, Any], key: str) -> bool | None:
    if key not in payload:
        return None
    value = payload[key]
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("1", "true", "yes", "on", "0", "false", "no", "off"):
        return value.strip().lower() in ("1", "true", "yes", "on")
    raise ValidationError(f"{key} must be true or false.", fields=[key])


# ---------- Customers ----------
@bp.get("/customers")
@require_login
def customers_list():
    s = db_session()
    customers = list_customers(s, q=request.args.get("q"), stage=request.args.get("stage"))
    settings = _settings()
    return jsonify([serialize_customer(c, settings) for c in customers])


@bp.post("/customers")
@require_login
def customers_create():
    s = db_session()
    u = _current_user()
    try:
        c = create_customer(s, _payload(), user=u)
        commit(s)
    except Exception:
        s.rollback()
        raise
    return jsonify(serialize_customer(c, _settings())), 201


@bp.get("/customers/<int:customer_id>")
@require_login
def customer_detail(customer_id: int):
    s = db_session()
    c = require_customer(s, customer_id)
    return jsonify(serialize_customer(c, _settings()))


@bp.patch("/customers/<int:customer_id>")
@require_login
def customer_update(customer_id: int):
    s = db_session()
    u = _current_user()
    try:
        payload = _payload()
        c = require_customer(s, customer_id)
        update_customer(s, c, payload, user=u, settings=_settings(), reason=(payload.get("reason") or None))
        commit(s)
    except Exception:
        s.rollback()
        raise
    return jsonify(serialize_customer(c, _settings()))


@bp.delete("/customers/<int:customer_id>")
@require_login
def customer_delete(customer_id: int):
    s = db_session()
    u = _current_user()
    try:
        c = require_customer(s, customer_id)
        delete_customer(s, c, user=u)
        commit(s)
    except Exception:
        s.rollback()
        raise
    return "", 204


@bp.post("/customers/<int:customer_id>/stage")
@require_login
def customer_stage(customer_id: int):
    s = db_session()
    u = _current_user()
    try:
        payload = _payload()
        if not payload.get("stage"):
            raise ValidationError("stage is required.", fields=["stage"])
        c = require_customer(s, customer_id)
        change_stage(s, c, payload["stage"], user=u, reason=(payload.get("reason") or None))
        commit(s)
    except Exception:
        s.rollback()
        raise
    return jsonify(serialize_customer(c, _settings()))


@bp.put("/customers/<int:customer_id>/revenue")
@require_login
def customer_revenue(customer_id: int):
    s = db_session()
    u = _current_user()
    try:
        payload = _payload()
        if "total_revenue" not in payload:
            raise ValidationError("total_revenue is required.", fields=["total_revenue"])
        c = require_customer(s, customer_id)
        override_revenue(s, c, payload["total_revenue"], user=u, reason=(payload.get("reason") or None))
        commit(s)
    except Exception:
        s.rollback()
        raise
    return jsonify(serialize_customer(c, _settings()))


# ---------- Notes ----------
@bp.get("/customers/<int:customer_id>/notes")
@require_login
def notes_list(customer_id: int):
    s = db_session()
    c = require_customer(s, customer_id)
    return jsonify([serialize_note(n) for n in list_notes(s, c)])


@bp.post("/customers/<int:customer_id>/notes")
@require_login
def notes_create(customer_id: int):
    s = db_session()
    u = _current_user()
    try:
        payload = _payload()
        c = lock_customer(s, customer_id)
        note, created = add_note(s, c, payload, user=u, idempotency_key=_idempotency_key(payload))
        commit(s)
    except Exception:
        s.rollback()
        raise
    return jsonify(serialize_note(note)), (201 if created else 200)


@bp.patch("/customers/<int:customer_id>/notes/<int:note_id>")
@require_login
def notes_flags(customer_id: int, note_id: int):
    s = db_session()
    u = _current_user()
    try:
        payload = _payload()
        c = require_customer(s, customer_id)
        note = get_note(s, c, note_id)
        set_note_flags(
            s,
            note,
            user=u,
            is_pinned=_optional_bool(payload, "is_pinned"),
            is_highlighted=_optional_bool(payload, "is_highlighted"),
        )
        commit(s)
    except Exception:
        s.rollback()
        raise
    return jsonify(serialize_note(note))


@bp.delete("/customers/<int:customer_id>/notes/<int:note_id>")
@require_login
def notes_delete(customer_id: int, note_id: int):
    s = db_session()
    u = _current_user()
    try:
        c = require_customer(s, customer_id)
        note = get_note(s, c, note_id)
        delete_note(s, c, note, user=u)
        commit(s)
    except Exception:
        s.rollback()
        raise
    return "", 204


# ---------- Orders ----------
@bp.get("/customers/<int:customer_id>/orders")
@require_login
def orders_list(customer_id: int):
    s = db_session()
    c = require_customer(s, customer_id)
    return jsonify([serialize_order(o) for o in list_orders(s, c)])


@bp.post("/customers/<int:customer_id>/orders")
@require_login
def orders_create(customer_id: int):
    s = db_session()
    u = _current_user()
    try:
        payload = _payload()
        c = lock_customer(s, customer_id)
        order, created = add_order(s, c, payload, user=u, idempotency_key=_idempotency_key(payload))
        commit(s)
    except Exception:
        s.rollback()
        raise
    return jsonify(serialize_order(order)), (201 if created else 200)


@bp.delete("/customers/<int:customer_id>/orders/<int:order_id>")
@require_login
def orders_delete(customer_id: int, order_id: int):
    s = db_session()
    u = _current_user()
    try:
        c = lock_customer(s, customer_id)
        delete_order(s, c, order_id, user=u)
        commit(s)
    except Exception:
        s.rollback()
        raise
    return "", 204


# ---------- KPIs ----------
@bp.get("/kpis")
@require_login
def kpis():
    s = db_session()
    raw = (request.args.get("customer_id") or "").strip()
    if raw:
        try:
            customer_id = int(raw)
        except ValueError:
            raise ValidationError("customer_id must be a number.", fields=["customer_id"]) from None
        customers = [require_customer(s, customer_id)]
    else:
        customers = list_customers(s)
    return jsonify(compute_kpis(customers).to_dict())
