"""One intent path for both transports.

Socket.IO handlers and the HTTP fallback only (de)serialize; authorization,
mutation and the broadcast side effects all happen here.
"""
import logging
from typing import Optional

from watchsync.errors import AuthorizationError, ValidationError
from watchsync.models.protocol import (
    SYNC, SYNC_PRESENCE,
    AddMedia, Advance, Heartbeat, Join, Leave, Pause, Play, RequestSnapshot, Seek,
    is_mutating,
)
from watchsync.models.session import Role, Session
from watchsync.services.broadcaster import EventBroadcaster
from watchsync.services.presence import PresenceTracker
from watchsync.services.session import IntentOutcome, SessionStore, SweepReport

logger = logging.getLogger(__name__)


class SyncService:
    def __init__(self, store: SessionStore, presence: PresenceTracker,
                 broadcaster: EventBroadcaster, role_lookup):
        self.store = store
        self.presence = presence
        self.broadcaster = broadcaster
        self.role_lookup = role_lookup

    async def handle(self, session_id: str, message, caller_id: Optional[str]) -> IntentOutcome:
        if not session_id or not isinstance(session_id, str):
            raise ValidationError("sessionId is required")

        if isinstance(message, Join):
            return await self._join(session_id, message, caller_id)
        if isinstance(message, Leave):
            return await self._leave(session_id, message, caller_id)
        if isinstance(message, Heartbeat):
            self.presence.heartbeat(session_id, caller_id or message.viewer_id)
            return IntentOutcome(self.store.get_or_create(session_id), message)
        if isinstance(message, RequestSnapshot):
            session = self.store.get_or_create(session_id)
            if self.presence.sweep_stale(session_id):
                logger.info(f"Presence of session {session_id} changed during sync request")
            await self.publish_snapshot(session)
            await self.publish_presence(session)
            return IntentOutcome(session, message)

        if is_mutating(message):
            return await self._mutate(session_id, message, caller_id)

        raise ValidationError(f"Unsupported event: {type(message).__name__}")

    async def _authorize(self, session_id: str, caller_id: Optional[str]) -> Role:
        # Re-checked here regardless of what the client UI allowed
        role = await self.role_lookup.role_for(session_id, caller_id)
        if role != Role.ELEVATED:
            logger.warning(f"Rejected mutation by non-elevated viewer {caller_id} in {session_id}")
            raise AuthorizationError("Only hosts and moderators can control playback")
        return role

    async def _mutate(self, session_id: str, intent, caller_id: Optional[str]) -> IntentOutcome:
        await self._authorize(session_id, caller_id)

        if isinstance(intent, AddMedia):
            intent = intent.model_copy(update={"submitter_id": caller_id})

        outcome = self.store.apply_intent(session_id, intent)
        self.presence.heartbeat(session_id, caller_id)
        session = outcome.session

        if isinstance(intent, Play):
            await self.broadcaster.publish(session_id, "play", _with_time(intent.time))
        elif isinstance(intent, Pause):
            await self.broadcaster.publish(session_id, "pause", _with_time(intent.time))
        elif isinstance(intent, Seek):
            await self.broadcaster.publish(session_id, "seek", {"time": intent.time})
        elif isinstance(intent, Advance):
            await self.broadcaster.publish(session_id, "advance", {"index": session.current_index})
        elif isinstance(intent, AddMedia):
            # Echoed even for duplicates; clients ignore items they already hold
            await self.broadcaster.publish(session_id, "addMedia", {"item": outcome.item.to_wire()})
            if outcome.accepted and len(session.playlist) == 1:
                await self.publish_snapshot(session)

        return outcome

    async def _join(self, session_id: str, message: Join, caller_id: Optional[str]) -> IntentOutcome:
        viewer = message.viewer
        if caller_id and caller_id != viewer.id:
            raise AuthorizationError("Cannot join on behalf of another viewer")

        # The role comes from the identity collaborator, not from the payload
        role = await self.role_lookup.role_for(session_id, viewer.id)
        session = self.presence.join(session_id, viewer, role)

        await self.publish_presence(session)
        if session.playlist:
            await self.publish_snapshot(session)
        return IntentOutcome(session, message)

    async def _leave(self, session_id: str, message: Leave, caller_id: Optional[str]) -> IntentOutcome:
        if caller_id and caller_id != message.viewer_id:
            await self._authorize(session_id, caller_id)

        session = self.presence.leave(session_id, message.viewer_id)
        await self.publish_presence(session)
        return IntentOutcome(session, message)

    async def publish_snapshot(self, session: Session):
        await self.broadcaster.publish(session.session_id, SYNC, session.playback_snapshot())

    async def publish_presence(self, session: Session):
        await self.broadcaster.publish(session.session_id, SYNC_PRESENCE, session.presence_snapshot())

    async def snapshot(self, session_id: str, viewer_id: Optional[str] = None) -> dict:
        """Full state for HTTP pollers, with a short server-side cache."""
        if not session_id:
            raise ValidationError("sessionId is required")

        if viewer_id:
            self.presence.heartbeat(session_id, viewer_id)

        cached = self.broadcaster.cache.get(session_id)
        if cached is not None:
            return cached

        session = self.store.get_or_create(session_id)
        if self.presence.sweep_stale(session_id):
            await self.publish_presence(session)
        data = session.full_snapshot()
        self.broadcaster.cache.put(session_id, data)
        return data

    async def sweep(self) -> SweepReport:
        report = self.store.sweep()
        for session_id in report.evicted_viewers:
            session = self.store.get(session_id)
            if session is not None:
                await self.publish_presence(session)
        for session_id in report.removed_sessions:
            self.broadcaster.cache.invalidate(session_id)
        return report


def _with_time(time: Optional[float]) -> dict:
    return {} if time is None else {"time": time}
