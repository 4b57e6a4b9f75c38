"""Event vocabulary shared by the push transport and the HTTP fallback.

Every inbound message is parsed into exactly one member of the closed
``Message`` union; an unknown event name fails at parse time with a
``ValidationError`` instead of falling through a string-keyed dispatch.
"""
from typing import Annotated, Literal, Optional, Union

from pydantic import Field, StrictInt, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from watchsync.errors import ValidationError
from watchsync.models.session import MediaCandidate, Viewer, WireModel

# Server -> client
SYNC = "sync"
SYNC_PRESENCE = "syncPresence"
ERROR = "error"

Seconds = Annotated[float, Field(ge=0, allow_inf_nan=False, strict=True)]


class Play(WireModel):
    event: Literal["play"] = "play"
    time: Optional[Seconds] = None


class Pause(WireModel):
    event: Literal["pause"] = "pause"
    time: Optional[Seconds] = None


class Seek(WireModel):
    event: Literal["seek"] = "seek"
    time: Seconds


class Advance(WireModel):
    event: Literal["advance"] = "advance"
    index: StrictInt


class AddMedia(WireModel):
    event: Literal["addMedia"] = "addMedia"
    item: MediaCandidate
    # Filled in from the authenticated caller, never trusted from the wire
    submitter_id: Optional[str] = None


class RequestSnapshot(WireModel):
    event: Literal["requestSync"] = "requestSync"


class UpdateProgress(WireModel):
    event: Literal["updateProgress"] = "updateProgress"
    progress: Seconds


class Join(WireModel):
    event: Literal["join"] = "join"
    viewer: Viewer


class Leave(WireModel):
    event: Literal["leave"] = "leave"
    viewer_id: str = Field(min_length=1)


class Heartbeat(WireModel):
    event: Literal["heartbeat"] = "heartbeat"
    viewer_id: str = Field(min_length=1)


Intent = Union[Play, Pause, Seek, Advance, AddMedia, RequestSnapshot, UpdateProgress]

Message = Annotated[
    Union[Play, Pause, Seek, Advance, AddMedia, RequestSnapshot, UpdateProgress, Join, Leave, Heartbeat],
    Field(discriminator="event"),
]

MUTATING = (Play, Pause, Seek, Advance, AddMedia, UpdateProgress)
DELTA_EVENTS = frozenset({"play", "pause", "seek", "advance", "addMedia"})
EVENT_NAMES = frozenset({
    "play", "pause", "seek", "advance", "addMedia", "requestSync",
    "updateProgress", "join", "leave", "heartbeat",
})

_message_adapter = TypeAdapter(Message)


def parse_message(event: str, data: Optional[dict]) -> Message:
    if not event or event not in EVENT_NAMES:
        raise ValidationError(f"Unknown event: {event!r}")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Event data must be an object")

    payload = {k: v for k, v in data.items() if k != "sessionId"}
    payload["event"] = event
    try:
        return _message_adapter.validate_python(payload)
    except PydanticValidationError as e:
        messages = []
        for err in e.errors():
            loc = ".".join(str(part) for part in err["loc"][1:]) or event
            messages.append(f"{loc}: {err['msg']}")
        raise ValidationError(" | ".join(messages))


def is_mutating(message) -> bool:
    return isinstance(message, MUTATING)
