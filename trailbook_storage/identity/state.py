"""
Observable holder of the process-wide authentication state.
"""

import logging
import threading

from ..streams import Channel, Subscription
from .types import UNAUTHENTICATED, AuthenticationState

logger = logging.getLogger(__name__)


class AuthStateHolder:
    """Current-value holder for ``AuthenticationState``.

    Single writer (the authentication subsystem), many readers. ``current``
    may be read from any thread without awaiting; ``set`` and ``subscribe``
    belong to the event loop thread.
    """

    def __init__(self, initial: AuthenticationState = UNAUTHENTICATED):
        self._lock = threading.Lock()
        self._state: AuthenticationState = initial
        self._channel: Channel[AuthenticationState] = Channel()

    @property
    def current(self) -> AuthenticationState:
        with self._lock:
            return self._state

    def set(self, state: AuthenticationState) -> bool:
        """Replace the current state.

        Returns:
            True if the state changed and subscribers were notified
        """
        with self._lock:
            if state == self._state:
                return False
            previous, self._state = self._state, state

        logger.info(
            "Authentication state changed: %s -> %s",
            type(previous).__name__,
            type(state).__name__,
        )
        self._channel.publish(state)
        return True

    def subscribe(self) -> Subscription[AuthenticationState]:
        """Live sequence starting with the current value, then every change."""
        subscription = self._channel.subscribe()
        subscription.push(self.current)
        return subscription

    @property
    def subscriber_count(self) -> int:
        return self._channel.subscriber_count

    def close(self) -> None:
        self._channel.close()
