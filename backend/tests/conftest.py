from __future__ import annotations

import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from watchsync.config import Settings  # noqa: E402
from watchsync.models.session import Role, Viewer  # noqa: E402
from watchsync.services.broadcaster import EventBroadcaster, SnapshotCache  # noqa: E402
from watchsync.services.dispatcher import SyncService  # noqa: E402
from watchsync.services.identity import StaticRoleLookup  # noqa: E402
from watchsync.services.presence import PresenceTracker  # noqa: E402
from watchsync.services.session import SessionStore  # noqa: E402


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeManager:
    def __init__(self, sio: "FakeSio") -> None:
        self.sio = sio

    def is_connected(self, sid, namespace) -> bool:
        return sid in self.sio.connected


class FakeSio:
    """Records emits and room membership the way socketio.AsyncServer would."""

    def __init__(self) -> None:
        self.emitted: list[dict] = []
        self.fail_room_emits = False
        self.connected: set[str] = set()
        self.rooms: dict[str, set[str]] = {}
        self.manager = FakeManager(self)

    async def emit(self, event, data=None, room=None, to=None, **kwargs):
        if room is not None and self.fail_room_emits:
            raise RuntimeError("room unavailable")
        self.emitted.append({"event": event, "data": data, "room": room, "to": to})

    async def enter_room(self, sid, room, namespace=None):
        if sid not in self.connected:
            raise ValueError("sid is not connected to requested namespace")
        self.rooms.setdefault(sid, set()).add(room)

    async def leave_room(self, sid, room, namespace=None):
        self.rooms.get(sid, set()).discard(room)

    def events(self, room=None) -> list[str]:
        return [e["event"] for e in self.emitted if e["room"] == room]

    def sent_to(self, sid) -> list[dict]:
        return [e for e in self.emitted if e["to"] == sid]


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings() -> Settings:
    return Settings(viewer_ttl=300, session_max_age=3600, snapshot_cache_ttl=5, elevated_viewers=["host"])


@pytest.fixture()
def store(settings: Settings, clock: FakeClock) -> SessionStore:
    return SessionStore(settings, clock=clock)


@pytest.fixture()
def presence(store: SessionStore) -> PresenceTracker:
    return PresenceTracker(store)


@pytest.fixture()
def sio() -> FakeSio:
    return FakeSio()


@pytest.fixture()
def service(store: SessionStore, presence: PresenceTracker, sio: FakeSio, clock: FakeClock) -> SyncService:
    broadcaster = EventBroadcaster(sio, SnapshotCache(ttl=5, clock=clock))
    return SyncService(store, presence, broadcaster, StaticRoleLookup(["host"], Role.STANDARD))


def make_viewer(viewer_id: str, name: str | None = None, role: Role = Role.STANDARD) -> Viewer:
    return Viewer(id=viewer_id, display_name=name or viewer_id.title(), role=role)
