import logging
import time
from typing import Callable, Dict, Optional, Tuple

from watchsync.models.protocol import SYNC

logger = logging.getLogger(__name__)

# Also sent to every connected socket: a subscriber may have lost the race
# between connecting and joining the session room.
GLOBAL_FALLBACK_EVENTS = frozenset({"addMedia", SYNC})


class SnapshotCache:
    """Short-lived cache of full snapshots served to HTTP pollers."""

    def __init__(self, ttl: float = 5.0, max_size: int = 1024, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self.max_size = max_size
        self.clock = clock
        self._entries: Dict[str, Tuple[float, dict]] = {}

    def get(self, session_id: str) -> Optional[dict]:
        entry = self._entries.get(session_id)
        if entry is None:
            return None
        stored_at, data = entry
        if self.clock() - stored_at >= self.ttl:
            del self._entries[session_id]
            return None
        return data

    def put(self, session_id: str, data: dict):
        if session_id not in self._entries and len(self._entries) >= self.max_size:
            self._entries.pop(next(iter(self._entries)))
        self._entries[session_id] = (self.clock(), data)

    def invalidate(self, session_id: str):
        self._entries.pop(session_id, None)


class EventBroadcaster:
    def __init__(self, sio, cache: Optional[SnapshotCache] = None):
        self.sio = sio
        self.cache = cache or SnapshotCache()

    async def publish(self, session_id: str, event_type: str, payload: Optional[dict] = None) -> bool:
        data = {**(payload or {}), "sessionId": session_id}
        self.cache.invalidate(session_id)

        try:
            await self.sio.emit(event_type, data, room=session_id)
            if event_type in GLOBAL_FALLBACK_EVENTS:
                await self.sio.emit(event_type, data)
            logger.debug(f"Broadcast {event_type} to session {session_id}")
            return True
        except Exception as e:
            logger.error(f"Error broadcasting {event_type} to {session_id}: {e}", exc_info=True)

        try:
            await self.sio.emit(event_type, data)
            logger.info(f"Fallback global broadcast of {event_type} for {session_id}")
            return True
        except Exception as e:
            logger.error(f"Fallback broadcast of {event_type} failed: {e}", exc_info=True)
            return False

    async def send_to(self, sid: str, event_type: str, payload: dict):
        await self.sio.emit(event_type, payload, to=sid)
