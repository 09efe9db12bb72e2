"""Propagate the authenticated principal through the call stack using contextvars."""

from contextvars import ContextVar
from contextlib import contextmanager
from dataclasses import dataclass
from uuid import UUID


@dataclass(frozen=True)
class Principal:
    """Who the current request is acting as, taken from a verified access token."""

    user_id: UUID
    email: str
    role: str


_current_principal: ContextVar[Principal | None] = ContextVar(
    "current_principal", default=None
)


def get_current_principal() -> Principal:
    """
    Get the current principal from context.

    Raises RuntimeError if no principal is set. Code paths that need an
    authenticated caller and run without one are bugs, not 401s.
    """
    principal = _current_principal.get()
    if principal is None:
        raise RuntimeError(
            "No principal set. This usually means you're calling "
            "user-scoped code outside of an authenticated request."
        )
    return principal


def get_current_user_id() -> UUID:
    """Shortcut for get_current_principal().user_id."""
    return get_current_principal().user_id


def set_current_principal(principal: Principal) -> None:
    """
    Set current principal in context.

    Called by auth middleware after verifying the bearer token.
    """
    _current_principal.set(principal)


def clear_current_principal() -> None:
    """
    Clear principal context.

    Must be called in a finally block to prevent context leakage.
    """
    _current_principal.set(None)


@contextmanager
def principal_context(principal: Principal):
    """
    Temporarily act as principal.

    Useful for tests and for admin jobs that operate on behalf of a user.
    """
    previous = _current_principal.get()
    set_current_principal(principal)
    try:
        yield principal
    finally:
        if previous is None:
            clear_current_principal()
        else:
            set_current_principal(previous)
