import hmac
import os
from functools import wraps
from typing import Callable, Mapping, Tuple

from flask import current_app, request

from .errors import UnauthorizedError


def admin_credentials() -> Tuple[str, str]:
    username = current_app.config.get("ADMIN_USERNAME") or os.environ.get("ADMIN_USERNAME", "")
    password = current_app.config.get("ADMIN_PASSWORD") or os.environ.get("ADMIN_PASSWORD", "")
    return username, password


def _same(given: str, expected: str) -> bool:
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


def check_admin(headers: Mapping[str, str]) -> None:
    """
    Plain shared-secret check on the `username` / `password` headers.
    Unconfigured credentials lock the admin surface entirely.
    """
    username, password = admin_credentials()
    if not username or not password:
        raise UnauthorizedError()

    given_user = headers.get("username", "")
    given_pass = headers.get("password", "")
    # both compared unconditionally
    user_ok = _same(given_user, username)
    pass_ok = _same(given_pass, password)
    if not (user_ok and pass_ok):
        raise UnauthorizedError()


def require_admin(view: Callable) -> Callable:
    @wraps(view)
    def wrapper(*args, **kwargs):
        check_admin(request.headers)
        return view(*args, **kwargs)

    return wrapper
