"""Transport-health state machine for the client.

``CONNECTED`` -> ``DISCONNECTED`` -> ``POLLING`` -> ``CONNECTED``, with a
terminal ``GAVE_UP`` once the push-reconnect budget is spent. Every input
returns the list of actions the caller must perform, so the machine itself
owns no timers.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    POLLING = "polling"
    GAVE_UP = "gave_up"


class Action(str, Enum):
    START_POLLING = "start_polling"
    STOP_POLLING = "stop_polling"
    SCHEDULE_RECONNECT = "schedule_reconnect"
    FORCE_RECONNECT = "force_reconnect"
    REJOIN = "rejoin"
    REQUEST_SNAPSHOT = "request_snapshot"
    SURFACE_RETRY = "surface_retry"
    CLEAR_RETRY = "clear_retry"


@dataclass
class ReconnectPolicy:
    base_delay: float = 1.0
    factor: float = 1.5
    max_delay: float = 10.0
    max_attempts: int = 10
    explicit_every: int = 3
    poll_interval: float = 1.0

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * self.factor ** max(attempt - 1, 0), self.max_delay)

    def poll_delay(self, attempts: int) -> float:
        return min(self.poll_interval * self.factor ** attempts, self.max_delay)


RECOVERING = (ConnectionState.DISCONNECTED, ConnectionState.POLLING)


class ReconnectionManager:
    def __init__(self, policy: Optional[ReconnectPolicy] = None):
        self.policy = policy or ReconnectPolicy()
        self.state = ConnectionState.CONNECTED
        self.attempts = 0

        self._transitions = {
            (ConnectionState.CONNECTED, "lost"): self._on_lost,
            (ConnectionState.CONNECTED, "connected"): self._on_connected,
            (ConnectionState.DISCONNECTED, "connected"): self._on_connected,
            (ConnectionState.POLLING, "connected"): self._on_connected,
            (ConnectionState.GAVE_UP, "connected"): self._on_connected,
            (ConnectionState.DISCONNECTED, "poll_ok"): self._on_poll_ok,
            (ConnectionState.DISCONNECTED, "reconnect_failed"): self._on_reconnect_failed,
            (ConnectionState.POLLING, "reconnect_failed"): self._on_reconnect_failed,
            (ConnectionState.GAVE_UP, "retry"): self._on_retry,
        }

    @property
    def gave_up(self) -> bool:
        return self.state == ConnectionState.GAVE_UP

    def _fire(self, event: str) -> List[Action]:
        handler = self._transitions.get((self.state, event))
        if handler is None:
            return []
        previous = self.state
        actions = handler()
        if self.state != previous:
            logger.info(f"Connection {previous.value} -> {self.state.value} ({event})")
        return actions

    def transport_lost(self) -> List[Action]:
        return self._fire("lost")

    def connected(self) -> List[Action]:
        return self._fire("connected")

    def poll_succeeded(self) -> List[Action]:
        return self._fire("poll_ok")

    def reconnect_failed(self) -> List[Action]:
        return self._fire("reconnect_failed")

    def retry(self) -> List[Action]:
        return self._fire("retry")

    def begin_attempt(self) -> Optional[float]:
        """Claims the next push-reconnect attempt; returns its delay, or None if none may be issued."""
        if self.state not in RECOVERING or self.attempts >= self.policy.max_attempts:
            return None
        self.attempts += 1
        return self.policy.delay(self.attempts)

    def poll_delay(self) -> float:
        return self.policy.poll_delay(self.attempts)

    def _on_lost(self) -> List[Action]:
        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0
        return [Action.START_POLLING, Action.SCHEDULE_RECONNECT]

    def _on_connected(self) -> List[Action]:
        previous = self.state
        self.state = ConnectionState.CONNECTED
        self.attempts = 0
        # Server-side room membership is never assumed to survive a reconnect
        actions = [Action.STOP_POLLING, Action.REJOIN, Action.REQUEST_SNAPSHOT]
        if previous == ConnectionState.GAVE_UP:
            actions.insert(0, Action.CLEAR_RETRY)
        return actions

    def _on_poll_ok(self) -> List[Action]:
        self.state = ConnectionState.POLLING
        return []

    def _on_reconnect_failed(self) -> List[Action]:
        if self.attempts >= self.policy.max_attempts:
            self.state = ConnectionState.GAVE_UP
            logger.error(f"Giving up after {self.attempts} reconnect attempts")
            return [Action.STOP_POLLING, Action.SURFACE_RETRY]
        if self.attempts and self.attempts % self.policy.explicit_every == 0:
            return [Action.FORCE_RECONNECT]
        return [Action.SCHEDULE_RECONNECT]

    def _on_retry(self) -> List[Action]:
        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0
        return [Action.CLEAR_RETRY, Action.START_POLLING, Action.SCHEDULE_RECONNECT]
