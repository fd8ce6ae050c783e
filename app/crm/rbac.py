from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g, jsonify

from app.crm.modules.customers.lifecycle import Role
from app.crm.models import User


def user_has_role(user: User | None, role_key: str) -> bool:
    if not user or not user.is_active:
        return False
    return any(r.key == role_key for r in user.roles)


def actor_role(user: User | None) -> Role:
    """Resolve the single actor role the lifecycle engine gates on."""
    return Role.ADMIN if user_has_role(user, Role.ADMIN.value) else Role.USER


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            return jsonify({"error": "unauthenticated", "message": "Login required."}), 401
        return fn(*args, **kwargs)

    return wrapped


def require_role(role_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated -> 401, authenticated but unauthorized -> 403
            if not user or not user.is_active:
                return jsonify({"error": "unauthenticated", "message": "Login required."}), 401
            if not user_has_role(user, role_key):
                return jsonify({"error": "authorization_error", "message": f"Role '{role_key}' required."}), 403
            return fn(*args, **kwargs)

        return wrapped

    return decorator
