"""Audio source resolution for the encoder.

Remote audio is a page URL (e.g. a live radio stream) turned into a direct,
signed media URL with yt-dlp. Signed URLs expire, so the resolver keeps the
expiry next to the cached URL and the orchestrator restarts the encoder with a
fresh one before it runs out.
"""

import asyncio
import logging
import time
from typing import Callable, Optional
from urllib.parse import parse_qs, urlparse

import yt_dlp

from ..config import Settings
from ..domain.exceptions import AudioSourceError
from ..domain.models import AudioSource

logger = logging.getLogger(__name__)


def parse_expiry(url: str) -> Optional[float]:
    """Extract the unix expiry timestamp from a signed media URL.

    Handles both the query form (``?expire=1700000000``) and the path form
    (``/expire/1700000000/``) used by live manifests.
    """
    parsed = urlparse(url)
    values = parse_qs(parsed.query).get("expire")
    if values:
        try:
            return float(values[0])
        except ValueError:
            return None

    parts = parsed.path.split("/")
    for index, part in enumerate(parts[:-1]):
        if part == "expire":
            try:
                return float(parts[index + 1])
            except ValueError:
                return None
    return None


def extract_media_url(page_url: str, audio_format: str) -> str:
    """Resolve a page URL to a direct media URL (blocking).

    Raises:
        AudioSourceError: If nothing playable was found
    """
    ydl_opts = {
        "quiet": True,
        "no_warnings": True,
        "noprogress": True,
        "format": f"{audio_format}/bestaudio/best",
    }
    with yt_dlp.YoutubeDL(ydl_opts) as ydl:
        info = ydl.extract_info(page_url, download=False)

    if info is None:
        raise AudioSourceError(f"No media info for {page_url}")
    if "entries" in info and info["entries"]:
        info = info["entries"][0]

    media_url = info.get("url")
    if not media_url and info.get("requested_formats"):
        media_url = info["requested_formats"][0].get("url")
    if not media_url or not media_url.startswith("http"):
        raise AudioSourceError(f"Invalid media URL returned for {page_url}")
    return media_url


class AudioSourceResolver:
    """Owns the cached remote audio URL and its lifetime."""

    def __init__(
        self,
        settings: Settings,
        extractor: Callable[[str, str], str] = extract_media_url,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self._extractor = extractor
        self._clock = clock

        self._cached_url: Optional[str] = None
        self._expires_at: Optional[float] = None
        self.current: AudioSource = AudioSource.none()

    async def resolve(self) -> AudioSource:
        """Pick the audio source for the next encoder instance.

        Never raises: any remote failure degrades to the local fallback file.
        """
        if self.settings.audio_disabled:
            self.current = AudioSource.none()
            return self.current

        if self.settings.audio_forced_fallback:
            self.current = AudioSource.fallback(self.settings.fallback_audio_path)
            return self.current

        if self._cached_url and self.remaining_ttl() > self.settings.audio_refresh_threshold:
            logger.info("Reusing cached audio URL")
            self.current = AudioSource.remote(self._cached_url)
            return self.current

        try:
            url = await self._fetch()
        except (AudioSourceError, asyncio.TimeoutError) as e:
            logger.warning(f"Audio URL resolution failed, using fallback audio: {e}")
            self.invalidate()
            self.current = AudioSource.fallback(self.settings.fallback_audio_path)
            return self.current

        fetched_at = self._clock()
        self._cached_url = url
        self._expires_at = parse_expiry(url) or fetched_at + self.settings.audio_url_default_ttl
        logger.info(
            f"Resolved remote audio URL, valid for {int(self.remaining_ttl() / 60)} minutes"
        )
        self.current = AudioSource.remote(url)
        return self.current

    async def _fetch(self) -> str:
        logger.info(f"Fetching audio stream URL from {self.settings.audio_source_url}")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    self._extractor,
                    self.settings.audio_source_url,
                    self.settings.audio_format,
                ),
                timeout=self.settings.audio_fetch_timeout,
            )
        except (asyncio.TimeoutError, AudioSourceError):
            raise
        except Exception as e:
            raise AudioSourceError(str(e)) from e

    def remaining_ttl(self) -> float:
        """Seconds until the cached URL expires; 0 when nothing is cached."""
        if not self._cached_url or self._expires_at is None:
            return 0.0
        return max(0.0, self._expires_at - self._clock())

    def invalidate(self) -> None:
        """Drop the cached URL so the next resolve fetches a fresh one."""
        if self._cached_url:
            logger.info("Invalidating cached audio URL")
        self._cached_url = None
        self._expires_at = None
