from __future__ import annotations

import asyncio

import pytest

from conftest import make_viewer
from watchsync.client.state import LocalSessionView
from watchsync.errors import AuthenticationError, AuthorizationError, InvalidIndexError
from watchsync.models.protocol import parse_message
from watchsync.models.session import Role
from watchsync.services.identity import StaticRoleLookup


async def _join(service, session_id: str, viewer_id: str):
    message = parse_message("join", {"viewer": make_viewer(viewer_id).to_wire()})
    return await service.handle(session_id, message, viewer_id)


def _deliver(view: LocalSessionView, sio, start: int = 0) -> None:
    """Replays room broadcasts into a subscriber's view."""
    for emitted in sio.emitted[start:]:
        if emitted["room"] == view.session_id:
            view.apply(emitted["event"], emitted["data"])


async def test_join_takes_role_from_lookup_not_payload(service, sio) -> None:
    message = parse_message("join", {"viewer": {"id": "guest", "displayName": "G", "role": "elevated"}})
    session = (await service.handle("s1", message, "guest")).session

    assert session.viewers["guest"].role == Role.STANDARD
    assert sio.events("s1") == ["syncPresence"]


async def test_join_on_behalf_of_someone_else_is_rejected(service) -> None:
    message = parse_message("join", {"viewer": {"id": "host"}})
    with pytest.raises(AuthorizationError):
        await service.handle("s1", message, "guest")


async def test_join_into_non_empty_session_also_sends_snapshot(service, sio) -> None:
    await _join(service, "s1", "host")
    await service.handle("s1", parse_message("addMedia", {"item": {"url": "https://youtu.be/aaaaaaaaaaa"}}), "host")
    sio.emitted.clear()

    await _join(service, "s1", "guest")
    assert sio.events("s1") == ["syncPresence", "sync"]


@pytest.mark.parametrize(
    "event,data",
    [
        ("play", {}),
        ("pause", {"time": 3}),
        ("seek", {"time": 10}),
        ("advance", {"index": 0}),
        ("addMedia", {"item": {"url": "https://youtu.be/aaaaaaaaaaa"}}),
        ("updateProgress", {"progress": 5}),
    ],
)
async def test_standard_viewers_cannot_mutate(service, store, sio, event: str, data: dict) -> None:
    await _join(service, "s1", "guest")
    sio.emitted.clear()
    before = store.get("s1").model_dump()

    with pytest.raises(AuthorizationError):
        await service.handle("s1", parse_message(event, data), "guest")

    assert store.get("s1").model_dump() == before
    assert sio.emitted == []


async def test_anonymous_mutation_is_unauthenticated(service) -> None:
    with pytest.raises(AuthenticationError):
        await service.handle("s1", parse_message("play", {}), None)


async def test_invalid_advance_is_not_broadcast(service, sio) -> None:
    await service.handle("s1", parse_message("addMedia", {"item": {"url": "https://youtu.be/aaaaaaaaaaa"}}), "host")
    sio.emitted.clear()
    with pytest.raises(InvalidIndexError):
        await service.handle("s1", parse_message("advance", {"index": 3}), "host")
    assert sio.emitted == []


async def test_deltas_carry_only_given_fields(service, sio) -> None:
    await service.handle("s1", parse_message("play", {}), "host")
    await service.handle("s1", parse_message("pause", {"time": 4.5}), "host")
    await service.handle("s1", parse_message("updateProgress", {"progress": 6}), "host")

    room = [e for e in sio.emitted if e["room"] == "s1"]
    assert [(e["event"], e["data"]) for e in room] == [
        ("play", {"sessionId": "s1"}),
        ("pause", {"time": 4.5, "sessionId": "s1"}),
    ]


async def test_elevated_viewer_can_remove_others(service, store) -> None:
    await _join(service, "s1", "guest")
    await service.handle("s1", parse_message("leave", {"viewerId": "guest"}), "host")
    assert "guest" not in store.get("s1").viewers


async def test_standard_viewer_cannot_remove_others(service, store) -> None:
    await _join(service, "s1", "host")
    with pytest.raises(AuthorizationError):
        await service.handle("s1", parse_message("leave", {"viewerId": "host"}), "guest")
    assert "host" in store.get("s1").viewers


async def test_duplicate_add_then_reconnect_reproduces_state(service, store, sio) -> None:
    await _join(service, "s1", "host")
    subscriber = LocalSessionView("s1")
    await _join(service, "s1", "guest")
    _deliver(subscriber, sio)

    add = {"item": {"url": "https://x/y", "title": "A"}}
    first = await service.handle("s1", parse_message("addMedia", add), "host")
    second = await service.handle("s1", parse_message("addMedia", add), "host")
    assert first.accepted and not second.accepted
    assert len(store.get("s1").playlist) == 1

    await service.handle("s1", parse_message("advance", {"index": 0}), "host")
    await service.handle("s1", parse_message("play", {}), "host")
    _deliver(subscriber, sio)
    assert len(subscriber.playlist) == 1
    assert subscriber.current_index == 0
    assert subscriber.is_playing is True

    # Subscriber drops off and comes back with a fresh view
    reconnected = LocalSessionView("s1")
    mark = len(sio.emitted)
    await service.handle("s1", parse_message("requestSync", {}), "guest")
    _deliver(reconnected, sio, mark)

    assert [i.url for i in reconnected.playlist] == ["https://x/y"]
    assert reconnected.playlist[0].title == "A"
    assert reconnected.current_index == 0
    assert reconnected.is_playing is True
    assert reconnected.to_dict()["playlist"] == subscriber.to_dict()["playlist"]


async def test_concurrent_submissions_of_same_video_keep_first(service, store) -> None:
    service.role_lookup = StaticRoleLookup(["host", "mod"])

    await asyncio.gather(
        service.handle("s1", parse_message("addMedia", {"item": {"url": "https://youtu.be/dQw4w9WgXcQ"}}), "host"),
        service.handle("s1", parse_message("addMedia", {"item": {"url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ"}}), "mod"),
    )

    playlist = store.get("s1").playlist
    assert len(playlist) == 1
    assert playlist[0].added_by == "host"


async def test_snapshot_is_cached_until_next_publish(service, clock) -> None:
    first = await service.snapshot("s1")
    assert await service.snapshot("s1") is first

    await service.handle("s1", parse_message("play", {}), "host")
    fresh = await service.snapshot("s1")
    assert fresh is not first
    assert fresh["isPlaying"] is True
    assert {"sessionId", "playlist", "currentIndex", "isPlaying", "progress", "viewers"} <= set(fresh)


async def test_snapshot_evicts_stale_viewers_and_publishes_presence(service, sio, clock) -> None:
    await _join(service, "s1", "guest")
    clock.advance(301)
    sio.emitted.clear()

    data = await service.snapshot("s1")
    assert data["viewers"] == []
    assert sio.events("s1") == ["syncPresence"]


async def test_sweep_publishes_presence_for_evicted(service, sio, clock) -> None:
    await _join(service, "s1", "guest")
    clock.advance(301)
    sio.emitted.clear()

    report = await service.sweep()
    assert report.evicted_viewers == {"s1": ["guest"]}
    assert sio.events("s1") == ["syncPresence"]
