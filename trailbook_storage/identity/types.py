"""
Authentication state types.

``AuthenticationState`` is a closed union of three variants. Exactly one
is active at a time; the authentication subsystem replaces it wholesale
through ``AuthStateHolder.set`` and the storage core only reads it.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Union


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class User:
    """Registered account as seen by the storage layer."""

    uid: str
    email: str = ""
    display_name: str = ""
    handle: str = ""
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    is_active: bool = True
    last_login: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "uid": self.uid,
            "email": self.email,
            "display_name": self.display_name,
            "handle": self.handle,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "is_active": self.is_active,
            "last_login": self.last_login.isoformat() if self.last_login else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "User":
        """Deserialize from dictionary."""
        last_login = None
        if data.get("last_login"):
            last_login = datetime.fromisoformat(data["last_login"])

        return cls(
            uid=data["uid"],
            email=data.get("email", ""),
            display_name=data.get("display_name", ""),
            handle=data.get("handle", ""),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else _now(),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else _now(),
            is_active=data.get("is_active", True),
            last_login=last_login,
        )


@dataclass(frozen=True)
class Unauthenticated:
    """No session at all (fresh install or signed out)."""


@dataclass(frozen=True)
class Guest:
    """Anonymous user whose data stays on the device."""

    guest_id: str


@dataclass(frozen=True)
class Authenticated:
    """Signed-in user whose data lives in the cloud."""

    user: User


AuthenticationState = Union[Unauthenticated, Guest, Authenticated]

UNAUTHENTICATED = Unauthenticated()


def is_authenticated(state: AuthenticationState) -> bool:
    return isinstance(state, Authenticated)


def guest_id_of(state: AuthenticationState) -> str | None:
    match state:
        case Guest(guest_id=guest_id):
            return guest_id
        case _:
            return None


def user_of(state: AuthenticationState) -> User | None:
    match state:
        case Authenticated(user=user):
            return user
        case _:
            return None
