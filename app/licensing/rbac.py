from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g, jsonify

from app.licensing.models import User


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated -> 401 (JSON clients log in via /auth/login)
            if not user or not user.is_active:
                return jsonify({"error": "Unauthorized", "message": "Login required."}), 401
            # Authenticated but unauthorized -> 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                return jsonify({"error": "Forbidden", "message": f"Missing permission '{permission_key}'."}), 403
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def resolve_importer_id(s, user: User | None, requested: Any = None) -> int:
    """
    Officers with `importers.view_all` act on any importer (id required);
    importer logins are pinned to their own account.
    """
    from app.licensing.errors import NotFoundError, ValidationError
    from app.licensing.modules.quota.service import importer_for_user

    if user_has_permission(user, "importers.view_all"):
        if requested in (None, ""):
            raise ValidationError("importer_id is required.", details={"field": "importer_id"})
        try:
            return int(requested)
        except (TypeError, ValueError) as e:
            raise ValidationError("importer_id must be an integer.", details={"field": "importer_id"}) from e
    acct = importer_for_user(s, user.id) if user else None
    if acct is None:
        raise NotFoundError("No importer account is linked to this login.")
    return acct.id
