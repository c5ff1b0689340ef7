"""
Persisted guest identity bookkeeping.

State lives in a small YAML file (``~/.trailbook/guest.yaml`` by default):

```yaml
guest_id: "guest_3f0c9e6a-..."
onboarding_complete: true
was_guest: false
last_auth_mode: guest
```

The store is best-effort: an unreadable or unwritable file is logged and
treated as empty, never raised to the caller.
"""

import logging
import uuid
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

KEY_GUEST_ID = "guest_id"
KEY_ONBOARDING_COMPLETE = "onboarding_complete"
KEY_WAS_GUEST = "was_guest"
KEY_LAST_AUTH_MODE = "last_auth_mode"


class AuthMode(Enum):
    """Last authentication mode used, for session restore."""

    NONE = "none"
    GUEST = "guest"
    AUTHENTICATED = "authenticated"


def generate_guest_id() -> str:
    return f"guest_{uuid.uuid4()}"


class GuestIdentityStore:
    """Guest id, onboarding and last-auth-mode persistence."""

    def __init__(self, path: Path | None = None):
        """
        Args:
            path: YAML file path. Defaults to ~/.trailbook/guest.yaml
        """
        self.path = path or Path.home() / ".trailbook" / "guest.yaml"

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to read guest state from {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed guest state in {self.path}")
            return {}
        return data

    def _save(self, data: dict[str, Any]) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(yaml.safe_dump(data, sort_keys=True), encoding="utf-8")
            return True
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to write guest state to {self.path}: {e}")
            return False

    def _update(self, **changes: Any) -> bool:
        data = self._load()
        for key, value in changes.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
        return self._save(data)

    # =========================================================================
    # Guest id
    # =========================================================================

    def get_or_create_guest_id(self) -> str:
        """Return the persisted guest id, creating one on first use.

        A freshly generated id is returned even if it cannot be persisted.
        """
        existing = self.get_guest_id()
        if existing:
            return existing

        guest_id = generate_guest_id()
        if self._update(**{KEY_GUEST_ID: guest_id}):
            logger.info(f"Created guest id {guest_id}")
        else:
            logger.warning(f"Using unpersisted guest id {guest_id}")
        return guest_id

    def get_guest_id(self) -> str | None:
        value = self._load().get(KEY_GUEST_ID)
        return value if isinstance(value, str) and value else None

    def clear_guest_id(self) -> None:
        """Forget the guest id (after its data has been migrated)."""
        self._update(**{KEY_GUEST_ID: None})

    # =========================================================================
    # Onboarding and account history
    # =========================================================================

    def has_completed_onboarding(self) -> bool:
        return bool(self._load().get(KEY_ONBOARDING_COMPLETE, False))

    def set_onboarding_complete(self) -> None:
        self._update(**{KEY_ONBOARDING_COMPLETE: True})

    def was_guest(self) -> bool:
        return bool(self._load().get(KEY_WAS_GUEST, False))

    def mark_as_former_guest(self) -> None:
        self._update(**{KEY_WAS_GUEST: True})

    def get_last_auth_mode(self) -> AuthMode:
        value = self._load().get(KEY_LAST_AUTH_MODE)
        try:
            return AuthMode(value) if value else AuthMode.NONE
        except ValueError:
            logger.warning(f"Unknown last auth mode {value!r}, treating as none")
            return AuthMode.NONE

    def set_last_auth_mode(self, mode: AuthMode) -> None:
        # NONE is stored as absence
        self._update(**{KEY_LAST_AUTH_MODE: None if mode is AuthMode.NONE else mode.value})

    def reset_all(self) -> None:
        """Remove all guest state."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Failed to reset guest state at {self.path}: {e}")
