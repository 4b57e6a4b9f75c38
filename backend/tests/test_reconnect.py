from __future__ import annotations

import pytest

from watchsync.client.reconnect import Action, ConnectionState, ReconnectionManager, ReconnectPolicy


def test_backoff_is_capped() -> None:
    policy = ReconnectPolicy()
    assert [policy.delay(n) for n in (1, 2, 3)] == [1.0, 1.5, 2.25]
    assert policy.delay(50) == 10.0
    assert policy.poll_delay(0) == 1.0
    assert policy.poll_delay(40) == 10.0


def test_lost_transport_starts_polling_and_reconnecting() -> None:
    manager = ReconnectionManager()
    assert manager.transport_lost() == [Action.START_POLLING, Action.SCHEDULE_RECONNECT]
    assert manager.state == ConnectionState.DISCONNECTED

    assert manager.poll_succeeded() == []
    assert manager.state == ConnectionState.POLLING

    # Already recovering
    assert manager.transport_lost() == []


def test_reconnect_rejoins_and_requests_snapshot() -> None:
    manager = ReconnectionManager()
    manager.transport_lost()
    manager.begin_attempt()

    assert manager.connected() == [Action.STOP_POLLING, Action.REJOIN, Action.REQUEST_SNAPSHOT]
    assert manager.state == ConnectionState.CONNECTED
    assert manager.attempts == 0


def test_every_third_failure_forces_a_fresh_connection() -> None:
    manager = ReconnectionManager(ReconnectPolicy(max_attempts=10))
    manager.transport_lost()

    actions = []
    for _ in range(6):
        assert manager.begin_attempt() is not None
        actions.append(manager.reconnect_failed())

    assert actions == [
        [Action.SCHEDULE_RECONNECT],
        [Action.SCHEDULE_RECONNECT],
        [Action.FORCE_RECONNECT],
        [Action.SCHEDULE_RECONNECT],
        [Action.SCHEDULE_RECONNECT],
        [Action.FORCE_RECONNECT],
    ]


@pytest.mark.parametrize("max_attempts", [1, 4, 10])
def test_attempts_never_exceed_the_bound(max_attempts: int) -> None:
    manager = ReconnectionManager(ReconnectPolicy(max_attempts=max_attempts))
    manager.transport_lost()

    issued = 0
    while not manager.gave_up:
        if manager.begin_attempt() is None:
            break
        issued += 1
        manager.reconnect_failed()

    assert issued == max_attempts
    assert manager.state == ConnectionState.GAVE_UP
    assert manager.begin_attempt() is None


def test_give_up_surfaces_retry_and_retry_restarts() -> None:
    manager = ReconnectionManager(ReconnectPolicy(max_attempts=1))
    manager.transport_lost()
    manager.begin_attempt()
    assert manager.reconnect_failed() == [Action.STOP_POLLING, Action.SURFACE_RETRY]

    # Ignored while given up
    assert manager.poll_succeeded() == []
    assert manager.reconnect_failed() == []

    assert manager.retry() == [Action.CLEAR_RETRY, Action.START_POLLING, Action.SCHEDULE_RECONNECT]
    assert manager.state == ConnectionState.DISCONNECTED
    assert manager.attempts == 0


def test_late_connect_after_giving_up_clears_retry() -> None:
    manager = ReconnectionManager(ReconnectPolicy(max_attempts=1))
    manager.transport_lost()
    manager.begin_attempt()
    manager.reconnect_failed()

    assert manager.connected()[0] == Action.CLEAR_RETRY
    assert not manager.gave_up


def test_retry_is_ignored_when_connected() -> None:
    manager = ReconnectionManager()
    assert manager.retry() == []
    assert manager.begin_attempt() is None
