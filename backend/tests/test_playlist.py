from __future__ import annotations

import pytest

from watchsync.errors import ValidationError
from watchsync.models.session import MediaCandidate, Session
from watchsync.services import playlist


def _session(**kwargs) -> Session:
    return Session(session_id="s1", last_updated_at=0, created_at=0, **kwargs)


@pytest.mark.parametrize(
    "raw",
    [
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        "youtube.com/watch?v=dQw4w9WgXcQ&t=42",
        "https://youtu.be/dQw4w9WgXcQ",
        "https://www.youtube.com/shorts/dQw4w9WgXcQ",
        "https://www.youtube.com/embed/dQw4w9WgXcQ",
    ],
)
def test_youtube_variants_normalize_to_watch_url(raw: str) -> None:
    assert playlist.normalize_url(raw) == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
    assert playlist.canonical_id(playlist.normalize_url(raw)) == "youtube:dQw4w9WgXcQ"


def test_normalize_adds_protocol_and_keeps_unknown_hosts() -> None:
    assert playlist.normalize_url("  example.com/movie.mp4 ") == "https://example.com/movie.mp4"
    assert playlist.normalize_url("http://x/y") == "http://x/y"
    assert playlist.normalize_url("https://vimeo.com/video/123456") == "https://vimeo.com/123456"


@pytest.mark.parametrize("raw", ["", "   ", "https://", "not a url"])
def test_normalize_rejects_malformed(raw: str) -> None:
    with pytest.raises(ValidationError):
        playlist.normalize_url(raw)


def test_youtube_url_without_id_is_left_alone() -> None:
    url = "https://www.youtube.com/feed/subscriptions"
    assert playlist.normalize_url(url) == url
    assert playlist.canonical_id(url) is None


def test_build_item_fills_defaults() -> None:
    item = playlist.build_item(MediaCandidate(url="https://youtu.be/dQw4w9WgXcQ"), "host", 12.0)
    assert item.id == "youtube:dQw4w9WgXcQ"
    assert item.title == "YouTube Video (dQw4w9WgXcQ)"
    assert item.thumbnail == "https://img.youtube.com/vi/dQw4w9WgXcQ/hqdefault.jpg"
    assert item.added_by == "host"
    assert item.added_at == 12.0


def test_build_item_keeps_client_id_for_generic_urls() -> None:
    item = playlist.build_item(MediaCandidate(id="clip-1", url="https://cdn.example.com/a.mp4", title=" Clip "))
    assert item.id == "clip-1"
    assert item.title == "Clip"


def test_try_add_is_idempotent_and_does_not_mutate() -> None:
    session = _session()
    first = playlist.try_add(session, MediaCandidate(url="https://youtu.be/dQw4w9WgXcQ"))
    assert first.accepted
    assert session.playlist == []

    session.playlist = first.playlist
    again = playlist.try_add(session, MediaCandidate(url="https://www.youtube.com/watch?v=dQw4w9WgXcQ"))
    assert not again.accepted
    assert again.item == first.item
    assert len(again.playlist) == 1


def test_try_add_matches_by_url_as_well_as_id() -> None:
    session = _session()
    session.playlist = playlist.try_add(session, MediaCandidate(id="a", url="https://cdn.example.com/a.mp4")).playlist

    result = playlist.try_add(session, MediaCandidate(id="b", url="https://cdn.example.com/a.mp4"))
    assert not result.accepted
    assert result.item.id == "a"
