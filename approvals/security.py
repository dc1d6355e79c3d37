"""
approvals/security.py

Access control helpers for the approval workflow API.

Key rules:
- UI is never trusted; all permission checks are server-side.
- Every request authenticates with HTTP Basic credentials (see load_user_from_request).
- Admin: passes every role gate.
- Each workflow stage is held by exactly one role; only that role may act on it.

IMPORTANT:
- Decorators must preserve wrapped function metadata to avoid Flask endpoint collisions.
  We use functools.wraps everywhere.
"""

from __future__ import annotations

from functools import wraps
from typing import Any, Callable, Optional, Tuple

from flask import Request, jsonify
from flask_login import current_user

from .models import User


def _unauthorized() -> Tuple[Any, int]:
    return jsonify({"error": "Authentication required"}), 401


def _forbidden(message: str = "Forbidden") -> Tuple[Any, int]:
    return jsonify({"error": message}), 403


def load_user_from_request(req: Request) -> Optional[User]:
    """
    Flask-Login request_loader: resolve HTTP Basic credentials to an active User.

    Returns None (anonymous) for missing/wrong credentials; routes then answer 401.
    """
    auth = req.authorization
    if not auth or not auth.username or auth.password is None:
        return None

    user = User.query.filter_by(username=auth.username).first()
    if not user or not user.is_active or not user.check_password(auth.password):
        return None
    return user


def is_admin() -> bool:
    """Return True if current user is authenticated and admin."""
    return bool(current_user.is_authenticated and getattr(current_user, "is_admin", False))


def has_role(*roles: str) -> bool:
    if not current_user.is_authenticated:
        return False
    return current_user.has_role(*roles)


def api_login_required(view_func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator: any authenticated user."""
    @wraps(view_func)
    def wrapper(*args: Any, **kwargs: Any):
        if not current_user.is_authenticated:
            return _unauthorized()
        return view_func(*args, **kwargs)

    return wrapper


def role_required(*roles: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator factory: only the given roles (or admin).

    Usage:
        @role_required(ROLE_ACCOUNTANT)
        def accountant_review(request_id): ...
    """
    def decorator(view_func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(view_func)
        def wrapper(*args: Any, **kwargs: Any):
            if not current_user.is_authenticated:
                return _unauthorized()
            if not has_role(*roles):
                return _forbidden(f"Requires role: {', '.join(roles)}")
            return view_func(*args, **kwargs)

        return wrapper

    return decorator


def role_param_required(param: str = "role") -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator factory for routes whose URL names the acting role (/orders/<id>/accept/<role>).

    The caller must hold that role (or be admin).
    """
    def decorator(view_func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(view_func)
        def wrapper(*args: Any, **kwargs: Any):
            if not current_user.is_authenticated:
                return _unauthorized()
            role = kwargs.get(param)
            if not role or not has_role(role):
                return _forbidden(f"Requires role: {role}")
            return view_func(*args, **kwargs)

        return wrapper

    return decorator
