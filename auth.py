from typing import Optional, Protocol

from errors import NotLoggedInError


class AuthProvider(Protocol):
    """Whatever signs the user in; the core only asks for the current id."""

    def current_user_id(self) -> Optional[str]: ...


class StaticAuthProvider:
    """Auth provider holding a user id set by the embedding application."""

    def __init__(self, user_id: Optional[str] = None) -> None:
        self.user_id = user_id

    def current_user_id(self) -> Optional[str]:
        return self.user_id

    def sign_in(self, user_id: str) -> None:
        self.user_id = user_id

    def sign_out(self) -> None:
        self.user_id = None


def resolve_user(auth: Optional[AuthProvider], user_id: Optional[str] = None) -> str:
    """Return ``user_id`` or the signed-in user, raising when there is neither."""
    if user_id:
        return user_id
    current = auth.current_user_id() if auth is not None else None
    if not current:
        raise NotLoggedInError()
    return current
