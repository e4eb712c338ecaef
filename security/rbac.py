from functools import wraps
from typing import Set

from flask import g

from security.errors import AuthenticationError, AuthorizationError


def role_names(user) -> Set[str]:
    if user is None:
        return set()
    return {r.name for r in user.roles}


def require_roles(*required: str):
    """
    Usage: @require_roles("ADMIN"), stacked under @login_required.
    Holding any one of the listed roles is enough.
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, "user", None)
            if user is None:
                raise AuthenticationError("Authentication required", error_code="auth_required")
            if role_names(user).isdisjoint(required):
                raise AuthorizationError("Insufficient role")
            return fn(*args, **kwargs)
        return wrapper
    return decorator
