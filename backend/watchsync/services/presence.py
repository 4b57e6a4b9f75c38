import logging
from typing import Optional

from watchsync.models.session import Role, Session, Viewer
from watchsync.services.session import SessionStore, evict_stale_viewers

logger = logging.getLogger(__name__)


class PresenceTracker:
    def __init__(self, store: SessionStore):
        self.store = store

    def join(self, session_id: str, viewer: Viewer, role: Optional[Role] = None) -> Session:
        """Insert or refresh; a viewer id appears at most once per session."""
        session = self.store.get_or_create(session_id)
        now = self.store.clock()

        update = {"last_active_at": now}
        if role is not None:
            update["role"] = role
        entry = viewer.model_copy(update=update)

        if viewer.id in session.viewers:
            logger.info(f"Refreshing viewer {viewer.id} in session {session_id}")
        else:
            logger.info(f"Viewer {viewer.id} joined session {session_id}")
        session.viewers[viewer.id] = entry
        self.store.touch(session)
        return session

    def leave(self, session_id: str, viewer_id: str) -> Session:
        session = self.store.get_or_create(session_id)
        if session.viewers.pop(viewer_id, None) is not None:
            logger.info(f"Viewer {viewer_id} left session {session_id}")
            self.store.touch(session)
        return session

    def heartbeat(self, session_id: str, viewer_id: str) -> None:
        # Never resurrects a viewer that already left or was evicted
        session = self.store.get(session_id)
        if session is None:
            return
        viewer = session.viewers.get(viewer_id)
        if viewer is not None:
            viewer.last_active_at = self.store.clock()

    def sweep_stale(self, session_id: str, ttl: Optional[float] = None) -> int:
        session = self.store.get(session_id)
        if session is None:
            return 0
        if ttl is None:
            ttl = self.store.settings.viewer_ttl
        removed = evict_stale_viewers(session, self.store.clock(), ttl)
        if removed:
            logger.info(f"Evicted {len(removed)} stale viewer(s) from session {session_id}")
        return len(removed)
