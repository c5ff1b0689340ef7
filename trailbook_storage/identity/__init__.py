"""
Authentication state and guest identity.
"""

from .guest_store import AuthMode, GuestIdentityStore, generate_guest_id
from .state import AuthStateHolder
from .types import (
    UNAUTHENTICATED,
    Authenticated,
    AuthenticationState,
    Guest,
    Unauthenticated,
    User,
    guest_id_of,
    is_authenticated,
    user_of,
)

__all__ = [
    "UNAUTHENTICATED",
    "AuthMode",
    "AuthStateHolder",
    "Authenticated",
    "AuthenticationState",
    "Guest",
    "GuestIdentityStore",
    "Unauthenticated",
    "User",
    "generate_guest_id",
    "guest_id_of",
    "is_authenticated",
    "user_of",
]
