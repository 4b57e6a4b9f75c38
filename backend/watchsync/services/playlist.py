import re
import uuid
from typing import List, NamedTuple, Optional, Tuple
from urllib.parse import urlparse

from watchsync.errors import ValidationError
from watchsync.models.session import MediaCandidate, MediaItem, Session

YOUTUBE_ID = re.compile(
    r"(?:youtube\.com/(?:[^/]+/.+/|(?:v|e(?:mbed)?|shorts|live)/|.*[?&]v=)|youtu\.be/)([^\"&?/\s]{11})",
    re.IGNORECASE,
)
VIMEO_ID = re.compile(r"vimeo\.com/(?:video/)?(\d+)", re.IGNORECASE)

DEFAULT_THUMBNAILS = {
    "youtube": "https://i.imgur.com/MJ6SogY.png",
    "vimeo": "https://i.imgur.com/HRjbr8L.png",
    "other": "https://i.imgur.com/MmXXUmY.png",
}


class AddResult(NamedTuple):
    accepted: bool
    item: MediaItem
    playlist: List[MediaItem]


def normalize_url(url: str) -> str:
    """Canonical form of a user-submitted media URL.

    Adds a missing protocol and rewrites YouTube short links, shorts and embeds
    to the plain watch URL. Raises ``ValidationError`` for anything that does
    not parse as an http(s) URL with a host.
    """
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("Media URL is required")

    processed = url.strip()
    if not processed.lower().startswith(("http://", "https://")):
        processed = "https://" + processed

    parsed = urlparse(processed)
    if not parsed.netloc or " " in processed:
        raise ValidationError(f"Not a valid URL: {url}")

    provider, media_id = extract_media_id(processed)
    if provider == "youtube" and media_id:
        return f"https://www.youtube.com/watch?v={media_id}"
    if provider == "vimeo" and media_id:
        return f"https://vimeo.com/{media_id}"
    return processed


def extract_media_id(url: str) -> Tuple[str, Optional[str]]:
    """Returns (provider, provider's own content id or None)."""
    host = urlparse(url if "://" in url else "https://" + url).netloc.lower()
    if "youtube.com" in host or "youtu.be" in host:
        match = YOUTUBE_ID.search(url)
        return "youtube", match.group(1) if match else None
    if "vimeo.com" in host:
        match = VIMEO_ID.search(url)
        return "vimeo", match.group(1) if match else None
    return "other", None


def canonical_id(url: str) -> Optional[str]:
    provider, media_id = extract_media_id(url)
    if media_id:
        return f"{provider}:{media_id}"
    return None


def default_thumbnail(url: str) -> str:
    provider, media_id = extract_media_id(url)
    if provider == "youtube" and media_id:
        return f"https://img.youtube.com/vi/{media_id}/hqdefault.jpg"
    return DEFAULT_THUMBNAILS[provider]


def default_title(url: str) -> str:
    provider, media_id = extract_media_id(url)
    if provider == "youtube" and media_id:
        return f"YouTube Video ({media_id})"
    if provider == "vimeo" and media_id:
        return f"Vimeo Video ({media_id})"
    return urlparse(url).netloc or "Video"


def build_item(candidate: MediaCandidate, submitter_id: Optional[str] = None, now: float = 0.0) -> MediaItem:
    url = normalize_url(candidate.url)
    item_id = canonical_id(url) or candidate.id or f"video-{uuid.uuid4().hex[:12]}"
    return MediaItem(
        id=item_id,
        url=url,
        title=(candidate.title or "").strip() or default_title(url),
        thumbnail=candidate.thumbnail or default_thumbnail(url),
        added_at=now,
        added_by=submitter_id,
    )


def find_match(playlist: List[MediaItem], item_id: Optional[str], url: Optional[str]) -> Optional[MediaItem]:
    for existing in playlist:
        if (item_id and existing.id == item_id) or (url and existing.url == url):
            return existing
    return None


def try_add(session: Session, candidate: MediaCandidate,
            submitter_id: Optional[str] = None, now: float = 0.0) -> AddResult:
    """Idempotent insert. Never mutates ``session``; safe to retry."""
    playlist = session.playlist
    item = build_item(candidate, submitter_id, now)

    existing = find_match(playlist, item.id, item.url)
    if existing is not None:
        return AddResult(False, existing, list(playlist))

    return AddResult(True, item, [*playlist, item])
