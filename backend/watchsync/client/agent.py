import asyncio
import logging
import time
from typing import Callable, Iterable, Optional

import httpx
import socketio

from watchsync.client.reconnect import Action, ConnectionState, ReconnectionManager, ReconnectPolicy
from watchsync.client.state import LocalSessionView
from watchsync.errors import (
    AuthenticationError, AuthorizationError, InvalidIndexError, SyncError, TransportError, ValidationError,
)
from watchsync.models.protocol import DELTA_EVENTS, ERROR, SYNC, SYNC_PRESENCE
from watchsync.models.session import MediaCandidate, Role, Viewer
from watchsync.services.playlist import build_item, normalize_url

logger = logging.getLogger(__name__)

INBOUND_EVENTS = (*sorted(DELTA_EVENTS), SYNC, SYNC_PRESENCE)
MIN_REQUEST_INTERVAL = 0.5

_ERRORS_BY_STATUS = {
    400: ValidationError,
    401: AuthenticationError,
    403: AuthorizationError,
}


class SyncAgent:
    """Client side of one shared session.

    Sends intents over the push transport while it is healthy and over
    ``POST /session-event`` otherwise; reconciles every inbound event into
    ``self.view``. ``start()`` mounts, ``close()`` unmounts.
    """

    def __init__(self, server_url: str, session_id: str, viewer: Viewer, *,
                 policy: Optional[ReconnectPolicy] = None,
                 heartbeat_interval: float = 30.0,
                 connect_timeout: float = 10.0,
                 http: Optional[httpx.AsyncClient] = None,
                 client_factory: Callable = socketio.AsyncClient,
                 sleep: Callable = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic,
                 transports: Iterable[str] = ("websocket", "polling"),
                 on_change: Optional[Callable] = None,
                 on_give_up: Optional[Callable] = None):
        self.server_url = server_url.rstrip("/")
        self.session_id = session_id
        self.viewer = viewer
        self.view = LocalSessionView(session_id)
        self.manager = ReconnectionManager(policy)

        self.heartbeat_interval = heartbeat_interval
        self.connect_timeout = connect_timeout
        self.transports = list(transports)
        self.on_change = on_change
        self.on_give_up = on_give_up
        self.needs_manual_retry = False

        self._client_factory = client_factory
        self._sleep = sleep
        self._clock = clock
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(base_url=self.server_url, timeout=10.0)
        self._sio = None
        self._closing = False
        self._last_sync_request = None

        self._poll_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    # ============== Lifecycle ==============

    @property
    def connection_state(self) -> ConnectionState:
        return self.manager.state

    @property
    def is_connected(self) -> bool:
        return bool(self._sio is not None and self._sio.connected
                    and self.manager.state == ConnectionState.CONNECTED)

    @property
    def can_control(self) -> bool:
        role = self.view.role_of(self.viewer.id) or self.viewer.role
        return role == Role.ELEVATED

    async def start(self):
        self._closing = False
        self._sio = self._new_client()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        try:
            await self._connect()
        except Exception as e:
            logger.warning(f"Initial connection to {self.server_url} failed: {e}")
            await self._run(self.manager.transport_lost())

    async def close(self):
        """Cancels every timer and sends a best-effort leave."""
        self._closing = True
        tasks = [t for t in (self._poll_task, self._reconnect_task, self._heartbeat_task)
                 if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_task = self._reconnect_task = self._heartbeat_task = None

        if self._sio is not None and self._sio.connected:
            # Not retried: the server-side TTL sweep covers a lost leave
            try:
                await self._sio.emit("leave", {"sessionId": self.session_id, "viewerId": self.viewer.id})
            except Exception as e:
                logger.info(f"Leave notification not delivered: {e}")
            try:
                await self._sio.disconnect()
            except Exception as e:
                logger.info(f"Error while disconnecting: {e}")

        if self._owns_http:
            await self._http.aclose()

    async def retry(self):
        """Manual retry offered after the reconnect budget ran out."""
        await self._run(self.manager.retry())

    # ============== Intents ==============

    async def play(self, time: Optional[float] = None):
        self._require_control()
        data = {} if time is None else {"time": _seconds(time)}
        await self._send("play", data)

    async def pause(self, time: Optional[float] = None):
        self._require_control()
        data = {} if time is None else {"time": _seconds(time)}
        await self._send("pause", data)

    async def seek(self, time: float):
        self._require_control()
        await self._send("seek", {"time": _seconds(time)})

    async def advance(self, index: int):
        self._require_control()
        if not isinstance(index, int) or isinstance(index, bool) or index < 0:
            raise InvalidIndexError(f"Invalid playlist index: {index!r}")
        await self._send("advance", {"index": index})

    async def update_progress(self, progress: float):
        if not self.can_control or not self.is_connected:
            return
        # Only worth sending when it moved noticeably
        if abs(self.view.progress - progress) > 1:
            await self._send("updateProgress", {"progress": _seconds(progress)})

    async def add_media(self, url: str, title: Optional[str] = None,
                        thumbnail: Optional[str] = None, resolve: bool = False):
        """Raises ValidationError with a user-facing message for a malformed URL."""
        self._require_control()
        normalize_url(url)
        candidate = MediaCandidate(url=url.strip(), title=title, thumbnail=thumbnail)
        item = build_item(candidate, self.viewer.id, time.time())

        if resolve and not title:
            info = await self._resolve(item.url)
            if info:
                item = item.model_copy(update={
                    "title": info.get("title") or item.title,
                    "thumbnail": info.get("thumbnail") or item.thumbnail,
                })

        # Optimistic insert; the authoritative echo is deduplicated by (id, url)
        inserted = self.view.insert(item)
        if inserted:
            self._changed("addMedia")

        try:
            await self._send("addMedia", {"item": {
                "id": item.id, "url": item.url, "title": item.title, "thumbnail": item.thumbnail,
            }})
        except SyncError:
            if inserted and self.view.remove(item):
                self._changed("addMedia")
            raise
        return item

    async def request_sync(self):
        now = self._clock()
        if self._last_sync_request is not None and now - self._last_sync_request < MIN_REQUEST_INTERVAL:
            return
        await self._resync()

    async def _resync(self):
        self._last_sync_request = self._clock()
        if self.is_connected:
            await self._emit("requestSync", {})
        else:
            await self._poll_once()

    def _require_control(self):
        if not self.can_control:
            raise AuthorizationError("Only hosts and moderators can control playback")

    # ============== Transport ==============

    def _new_client(self):
        client = self._client_factory(reconnection=False)
        client.on("connect", self._on_connect)
        client.on("disconnect", self._on_disconnect)
        client.on(ERROR, self._on_error)
        for event in INBOUND_EVENTS:
            client.on(event, self._inbound_handler(event))
        return client

    async def _connect(self):
        await self._sio.connect(self.server_url, transports=self.transports, wait_timeout=self.connect_timeout)

    def _inbound_handler(self, event: str):
        async def handler(data):
            if self.view.apply(event, data):
                self._changed(event)
        return handler

    async def _on_connect(self):
        logger.info(f"Connected to {self.server_url} for session {self.session_id}")
        await self._run(self.manager.connected())

    async def _on_disconnect(self, *args):
        if self._closing:
            return
        logger.warning(f"Lost push transport for session {self.session_id}, switching to polling")
        await self._run(self.manager.transport_lost())

    async def _on_error(self, data):
        if not isinstance(data, dict) or data.get("sessionId") not in (None, self.session_id):
            return
        logger.warning(f"Server rejected intent: {data}")
        # Anything applied optimistically is replaced by the next snapshot
        await self._resync()

    async def _emit(self, event: str, data: dict):
        await self._sio.emit(event, {**data, "sessionId": self.session_id})

    async def _send(self, event: str, data: dict):
        if self.is_connected:
            try:
                await self._emit(event, data)
                return
            except Exception as e:
                logger.warning(f"Push send of {event} failed, using HTTP: {e}")
        await self._post(event, data)

    async def _post(self, event: str, data: dict) -> dict:
        try:
            response = await self._http.post(
                "/session-event",
                json={"sessionId": self.session_id, "event": event, "data": data},
                headers={"X-Viewer-Id": self.viewer.id},
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Could not deliver {event}: {e}")

        if response.status_code != 200:
            error = _ERRORS_BY_STATUS.get(response.status_code, TransportError)
            try:
                message = response.json().get("error")
            except ValueError:
                message = None
            raise error(message or f"HTTP {response.status_code}")

        body = response.json()
        if self.view.apply_full(body.get("state") or {}):
            self._changed(SYNC)
        return body

    async def _fetch_snapshot(self) -> dict:
        try:
            response = await self._http.get(
                "/session-state",
                params={"sessionId": self.session_id, "viewerId": self.viewer.id},
                headers={"Cache-Control": "no-cache", "Pragma": "no-cache"},
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise TransportError(f"Snapshot fetch failed: {e}")

    async def _resolve(self, url: str) -> Optional[dict]:
        try:
            response = await self._http.get("/media/resolve", params={"url": url})
            if response.status_code == 400:
                raise ValidationError(response.json().get("error") or "Invalid URL")
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            logger.info(f"Media lookup failed for {url}: {e}")
            return None

    # ============== Timers ==============

    async def _poll_once(self) -> bool:
        try:
            snapshot = await self._fetch_snapshot()
        except TransportError as e:
            logger.warning(f"Polling error: {e}")
            return False
        if self.view.apply_full(snapshot):
            self._changed(SYNC)
        return True

    async def _poll_loop(self):
        while True:
            if await self._poll_once():
                await self._run(self.manager.poll_succeeded())
            await self._sleep(self.manager.poll_delay())

    async def _reconnect(self, fresh: bool = False):
        delay = self.manager.begin_attempt()
        if delay is None:
            return
        await self._sleep(delay)
        try:
            if fresh:
                await self._replace_client()
            await self._connect()
        except Exception as e:
            logger.warning(f"Reconnect attempt {self.manager.attempts} failed: {e}")
            self._reconnect_task = None
            await self._run(self.manager.reconnect_failed())

    async def _replace_client(self):
        old = self._sio
        self._sio = self._new_client()
        try:
            await old.disconnect()
        except Exception as e:
            logger.debug(f"Discarding old client: {e}")

    async def _heartbeat_loop(self):
        while True:
            await self._sleep(self.heartbeat_interval)
            if self.is_connected:
                try:
                    await self._emit("heartbeat", {"viewerId": self.viewer.id})
                except Exception as e:
                    logger.info(f"Heartbeat not sent: {e}")

    async def _run(self, actions):
        for action in actions:
            if action == Action.START_POLLING:
                if self._poll_task is None or self._poll_task.done():
                    self._poll_task = asyncio.create_task(self._poll_loop())
            elif action == Action.STOP_POLLING:
                if self._poll_task is not None:
                    self._poll_task.cancel()
                    self._poll_task = None
            elif action in (Action.SCHEDULE_RECONNECT, Action.FORCE_RECONNECT):
                if self._reconnect_task is None or self._reconnect_task.done():
                    fresh = action == Action.FORCE_RECONNECT
                    self._reconnect_task = asyncio.create_task(self._reconnect(fresh))
            elif action == Action.REJOIN:
                await self._emit("join", {"viewer": self.viewer.to_wire()})
            elif action == Action.REQUEST_SNAPSHOT:
                self._last_sync_request = self._clock()
                await self._emit("requestSync", {})
            elif action == Action.SURFACE_RETRY:
                self.needs_manual_retry = True
                if self.on_give_up:
                    self.on_give_up(self)
            elif action == Action.CLEAR_RETRY:
                self.needs_manual_retry = False

    def _changed(self, event: str):
        if self.on_change:
            try:
                self.on_change(event, self.view)
            except Exception as e:
                logger.error(f"on_change callback failed: {e}", exc_info=True)


def _seconds(value) -> float:
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value != value or value < 0:
        raise ValidationError(f"Time must be a non-negative number, got {value!r}")
    if value == float("inf"):
        raise ValidationError("Time must be finite")
    return float(value)
