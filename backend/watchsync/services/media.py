import asyncio
import logging
from typing import Any, Dict, Optional

import requests
from bs4 import BeautifulSoup
from yt_dlp import YoutubeDL

from watchsync.services import playlist as playlist_engine

logger = logging.getLogger(__name__)

USER_AGENT = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36'


def _scrape_metadata(url: str) -> Optional[Dict[str, Optional[str]]]:
    try:
        response = requests.get(url, headers={'User-Agent': USER_AGENT}, timeout=5)
        response.raise_for_status()

        soup = BeautifulSoup(response.text, 'html.parser')

        metadata = {
            'title': None,
            'thumbnail': None,
        }

        og_title = soup.find('meta', property='og:title')
        if og_title and og_title.get('content'):
            metadata['title'] = og_title['content']

        og_image = soup.find('meta', property='og:image')
        if og_image and og_image.get('content'):
            metadata['thumbnail'] = og_image['content']

        if not metadata['title'] and soup.title and soup.title.string:
            metadata['title'] = soup.title.string.strip()

        if metadata['title']:
            for suffix in [' - YouTube', ' on Vimeo']:
                metadata['title'] = metadata['title'].replace(suffix, '')
            return metadata

        return None
    except Exception as e:
        logger.error(f"Metadata scraping error: {e}")
        return None


def _extract_info(url: str, proxy_url: Optional[str] = None) -> Optional[Dict[str, Any]]:
    ydl_opts = {
        'noplaylist': True,
        'quiet': True,
        'no_warnings': True,
        'skip_download': True,
        'source_address': '0.0.0.0',  # bind to ipv4
    }
    if proxy_url:
        ydl_opts['proxy'] = proxy_url

    with YoutubeDL(ydl_opts) as ydl:
        try:
            info = ydl.extract_info(url, download=False)
            if info and 'entries' in info:
                info = next(iter(info['entries']), None)
            if not info:
                return None
            return {
                "title": info.get('title'),
                "thumbnail": info.get('thumbnail'),
                "duration": info.get('duration'),
            }
        except Exception as e:
            logger.error(f"yt-dlp extraction error: {e}")
            return None


def _resolve(url: str, proxy_url: Optional[str] = None) -> Dict[str, Any]:
    normalized = playlist_engine.normalize_url(url)
    provider, _ = playlist_engine.extract_media_id(normalized)

    info = _extract_info(normalized, proxy_url) or _scrape_metadata(normalized) or {}

    return {
        "url": normalized,
        "id": playlist_engine.canonical_id(normalized),
        "provider": provider,
        "title": info.get("title") or playlist_engine.default_title(normalized),
        "thumbnail": info.get("thumbnail") or playlist_engine.default_thumbnail(normalized),
        "duration": info.get("duration"),
    }


async def resolve_media(url: str, proxy_url: Optional[str] = None) -> Dict[str, Any]:
    """
    Validates a user-entered URL and looks up its title and thumbnail.
    yt-dlp runs in a thread pool to avoid blocking the event loop.
    Raises ValidationError for malformed URLs before any network access.
    """
    playlist_engine.normalize_url(url)
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, _resolve, url, proxy_url)
