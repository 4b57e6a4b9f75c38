import logging
import time
from typing import Callable, Dict, List, NamedTuple, Optional

from watchsync.config import Settings
from watchsync.errors import InvalidIndexError, ValidationError
from watchsync.models.protocol import (
    AddMedia, Advance, Intent, Pause, Play, RequestSnapshot, Seek, UpdateProgress,
)
from watchsync.models.session import MediaItem, Session
from watchsync.services import playlist as playlist_engine

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class IntentOutcome(NamedTuple):
    session: Session
    intent: Intent
    # Only meaningful for AddMedia: False when the item was already present
    accepted: bool = True
    item: Optional[MediaItem] = None


class SweepReport(NamedTuple):
    evicted_viewers: Dict[str, List[str]]
    removed_sessions: List[str]


class SessionStore:
    """Authoritative in-process session state.

    Every method runs to completion without awaiting, so on a single event
    loop each call is atomic with respect to every other call. Nothing here
    broadcasts; callers publish the resulting state.
    """

    def __init__(self, settings: Optional[Settings] = None, clock: Clock = time.time):
        self.settings = settings or Settings()
        self.clock = clock
        self._sessions: Dict[str, Session] = {}

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str) -> Session:
        if not session_id or not isinstance(session_id, str):
            raise ValidationError("sessionId is required")

        session = self._sessions.get(session_id)
        if session is None:
            now = self.clock()
            session = Session(session_id=session_id, last_updated_at=now, created_at=now)
            self._sessions[session_id] = session
            logger.info(f"Created session {session_id}")
        return session

    def touch(self, session: Session):
        session.last_updated_at = self.clock()

    def apply_intent(self, session_id: str, intent: Intent) -> IntentOutcome:
        session = self.get_or_create(session_id)

        if isinstance(intent, Play):
            if intent.time is not None:
                session.progress = intent.time
            session.is_playing = True
        elif isinstance(intent, Pause):
            if intent.time is not None:
                session.progress = intent.time
            session.is_playing = False
        elif isinstance(intent, Seek):
            session.progress = intent.time
        elif isinstance(intent, UpdateProgress):
            session.progress = intent.progress
        elif isinstance(intent, Advance):
            if not 0 <= intent.index < len(session.playlist):
                raise InvalidIndexError(
                    f"Index {intent.index} is outside the playlist (size {len(session.playlist)})"
                )
            session.current_index = intent.index
            session.progress = 0.0
        elif isinstance(intent, AddMedia):
            result = playlist_engine.try_add(session, intent.item, intent.submitter_id, self.clock())
            if not result.accepted:
                logger.info(f"Duplicate media {result.item.id} in session {session_id}, not adding")
                return IntentOutcome(session, intent, False, result.item)
            session.playlist = result.playlist
            if len(session.playlist) == 1:
                session.current_index = 0
            self.touch(session)
            logger.info(f"Added {result.item.id} to session {session_id}, playlist size {len(session.playlist)}")
            return IntentOutcome(session, intent, True, result.item)
        elif isinstance(intent, RequestSnapshot):
            return IntentOutcome(session, intent)
        else:
            raise ValidationError(f"Unsupported intent: {type(intent).__name__}")

        self.touch(session)
        return IntentOutcome(session, intent)

    def sweep(self) -> SweepReport:
        """Evict stale viewers everywhere, then drop old empty sessions."""
        now = self.clock()
        ttl = self.settings.viewer_ttl
        evicted: Dict[str, List[str]] = {}
        removed: List[str] = []

        for session_id, session in list(self._sessions.items()):
            stale = evict_stale_viewers(session, now, ttl)
            if stale:
                evicted[session_id] = stale

            too_old = now - session.created_at > self.settings.session_max_age
            if too_old and not session.viewers:
                logger.info(f"Cleaning up inactive session: {session_id}")
                del self._sessions[session_id]
                removed.append(session_id)

        return SweepReport(evicted, removed)


def evict_stale_viewers(session: Session, now: float, ttl: float) -> List[str]:
    stale = [vid for vid, viewer in session.viewers.items() if now - viewer.last_active_at > ttl]
    for vid in stale:
        del session.viewers[vid]
    return stale
