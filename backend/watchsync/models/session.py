from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Role(str, Enum):
    ELEVATED = "elevated"
    STANDARD = "standard"

    @classmethod
    def from_external(cls, value: Optional[str]) -> "Role":
        # Membership roles from the identity layer (ADMIN, MODERATOR, GUEST, ...)
        if not value:
            return cls.STANDARD
        value = str(value).strip().lower()
        if value in ("elevated", "admin", "moderator"):
            return cls.ELEVATED
        return cls.STANDARD


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class MediaItem(WireModel):
    id: str
    url: str
    title: str = ""
    thumbnail: Optional[str] = None
    added_at: float = 0.0
    added_by: Optional[str] = None


class MediaCandidate(WireModel):
    """An item as submitted by a client, before normalization."""
    id: Optional[str] = None
    url: str = Field(min_length=1)
    title: Optional[str] = None
    thumbnail: Optional[str] = None


class Viewer(WireModel):
    id: str = Field(min_length=1)
    display_name: str = ""
    role: Role = Role.STANDARD
    avatar_url: Optional[str] = None
    last_active_at: float = 0.0

    @property
    def is_elevated(self) -> bool:
        return self.role == Role.ELEVATED


class Session(BaseModel):
    session_id: str
    playlist: List[MediaItem] = []
    current_index: int = 0
    is_playing: bool = False
    progress: float = 0.0
    viewers: Dict[str, Viewer] = {}
    last_updated_at: float
    created_at: float

    def playback_snapshot(self) -> dict:
        """Payload of the `sync` event."""
        return {
            "sessionId": self.session_id,
            "playlist": [item.to_wire() for item in self.playlist],
            "currentIndex": self.current_index,
            "isPlaying": self.is_playing,
            "progress": self.progress,
        }

    def presence_snapshot(self) -> dict:
        """Payload of the `syncPresence` event."""
        return {
            "sessionId": self.session_id,
            "viewers": [viewer.to_wire() for viewer in self.viewers.values()],
        }

    def full_snapshot(self) -> dict:
        return {
            **self.playback_snapshot(),
            "viewers": [viewer.to_wire() for viewer in self.viewers.values()],
            "lastUpdatedAt": self.last_updated_at,
            "createdAt": self.created_at,
        }
