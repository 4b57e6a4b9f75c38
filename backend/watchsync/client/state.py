import logging
import uuid
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from watchsync.models.protocol import SYNC, SYNC_PRESENCE
from watchsync.models.session import MediaItem, Role, Viewer
from watchsync.services.playlist import canonical_id, find_match

logger = logging.getLogger(__name__)


def _number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def clean_playlist(entries: Any) -> List[MediaItem]:
    """Keeps the entries that carry a usable url, dropping the rest."""
    if not isinstance(entries, list):
        return []

    playlist: List[MediaItem] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        url = entry.get("url")
        if not isinstance(url, str) or not url.strip():
            logger.warning(f"Dropping playlist entry without url: {entry!r}")
            continue
        data = {**entry}
        data["id"] = data.get("id") or canonical_id(url) or f"video-{uuid.uuid4().hex[:12]}"
        try:
            item = MediaItem.model_validate(data)
        except PydanticValidationError:
            logger.warning(f"Dropping malformed playlist entry: {entry!r}")
            continue
        if find_match(playlist, item.id, item.url) is None:
            playlist.append(item)
    return playlist


class LocalSessionView:
    """A client's reconciled copy of one session. Never authoritative."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.playlist: List[MediaItem] = []
        self.current_index = 0
        self.is_playing = False
        self.progress = 0.0
        self.viewers: Dict[str, Viewer] = {}

    @property
    def current_item(self) -> Optional[MediaItem]:
        if 0 <= self.current_index < len(self.playlist):
            return self.playlist[self.current_index]
        return None

    def role_of(self, viewer_id: str) -> Optional[Role]:
        viewer = self.viewers.get(viewer_id)
        return viewer.role if viewer else None

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "playlist": [item.to_wire() for item in self.playlist],
            "currentIndex": self.current_index,
            "isPlaying": self.is_playing,
            "progress": self.progress,
            "viewers": [viewer.to_wire() for viewer in self.viewers.values()],
        }

    def apply(self, event: str, payload: Any) -> bool:
        """Reconciles one inbound event. Returns False when it was ignored."""
        if not isinstance(payload, dict) or payload.get("sessionId") != self.session_id:
            return False

        if event == SYNC:
            return self.apply_snapshot(payload)
        if event == SYNC_PRESENCE:
            return self.apply_presence(payload)
        if event == "play":
            if _number(payload.get("time")):
                self.progress = float(payload["time"])
            self.is_playing = True
            return True
        if event == "pause":
            if _number(payload.get("time")):
                self.progress = float(payload["time"])
            self.is_playing = False
            return True
        if event == "seek":
            if not _number(payload.get("time")):
                return False
            self.progress = float(payload["time"])
            return True
        if event == "advance":
            index = payload.get("index")
            if not isinstance(index, int) or isinstance(index, bool) or index < 0:
                return False
            self.current_index = index
            self.progress = 0.0
            return True
        if event == "addMedia":
            items = clean_playlist([payload.get("item")])
            return bool(items) and self.insert(items[0])

        logger.debug(f"Ignoring unknown event {event}")
        return False

    def insert(self, item: MediaItem) -> bool:
        """Appends unless an entry with the same id or url is already held."""
        if find_match(self.playlist, item.id, item.url) is not None:
            return False
        self.playlist.append(item)
        return True

    def remove(self, item: MediaItem) -> bool:
        match = find_match(self.playlist, item.id, item.url)
        if match is None:
            return False
        self.playlist = [entry for entry in self.playlist if entry is not match]
        if self.current_index >= len(self.playlist):
            self.current_index = max(len(self.playlist) - 1, 0)
        return True

    def apply_snapshot(self, payload: dict) -> bool:
        if "playlist" in payload:
            self.playlist = clean_playlist(payload.get("playlist"))
        index = payload.get("currentIndex")
        if isinstance(index, int) and not isinstance(index, bool):
            self.current_index = index
        if self.playlist and not 0 <= self.current_index < len(self.playlist):
            # Entries may have been dropped above
            self.current_index = len(self.playlist) - 1
        if not self.playlist:
            self.current_index = 0
        if isinstance(payload.get("isPlaying"), bool):
            self.is_playing = payload["isPlaying"]
        if _number(payload.get("progress")):
            self.progress = float(payload["progress"])
        return True

    def apply_presence(self, payload: dict) -> bool:
        entries = payload.get("viewers")
        if not isinstance(entries, list):
            return False
        viewers: Dict[str, Viewer] = {}
        for entry in entries:
            try:
                viewer = Viewer.model_validate(entry)
            except PydanticValidationError:
                logger.warning(f"Dropping malformed viewer entry: {entry!r}")
                continue
            viewers[viewer.id] = viewer
        self.viewers = viewers
        return True

    def apply_full(self, payload: dict) -> bool:
        """State fetched over HTTP: playback and presence in one payload."""
        if not isinstance(payload, dict) or payload.get("sessionId") != self.session_id:
            return False
        self.apply_snapshot(payload)
        if "viewers" in payload:
            self.apply_presence(payload)
        return True
