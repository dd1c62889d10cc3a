from __future__ import annotations

from functools import wraps
from typing import Callable, TypeVar, Any, cast
from flask import g, session

F = TypeVar("F", bound=Callable[..., Any])

ADMIN_ROLES = {"admin", "director"}


def is_admin() -> bool:
    return bool(session.get("admin_logged_in")) or session.get("role") in ADMIN_ROLES


def admin_required(func: F) -> F:
    """Decorator that requires an admin or director session.

    Sessions are established by the login flow; this only reads
    ``session['admin_logged_in']`` or ``session['role']``.
    """

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any):
        from utils.errors import Forbidden

        if not is_admin():
            raise Forbidden("Administrator access required")
        return func(*args, **kwargs)

    return cast(F, wrapper)


def current_parent():
    """Return the logged-in parent account, loading it once per request into ``g.parent``."""
    from extensions import db
    from models import Parent
    from utils.errors import LoginRequired, NotFound

    parent_id = session.get("parent_id")
    if not parent_id:
        raise LoginRequired("Parent login required")
    parent = getattr(g, "parent", None)
    if parent is not None and parent.id == int(parent_id):
        return parent
    parent = db.session.get(Parent, int(parent_id))
    if parent is None:
        raise NotFound("Parent not found", parent_id=parent_id)
    g.parent = parent
    return parent


def parent_required(func: F) -> F:
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any):
        current_parent()
        return func(*args, **kwargs)

    return cast(F, wrapper)
