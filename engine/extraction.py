"""Resolve a TikTok URL into a fetchable media URL plus descriptive metadata.

Two backends are available: the third-party RapidAPI downloader endpoint and
a local yt-dlp extraction. Both are blocking and are meant to be called from
a worker thread.
"""

import logging
from dataclasses import dataclass, field
from urllib.parse import quote

import requests
from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadError, ExtractorError

from config.settings import REQUEST_TIMEOUT_SECONDS
from engine.core import DEFAULT_RAPIDAPI_HOST, EXTRACTOR_RAPIDAPI, EXTRACTOR_YTDLP
from engine.job_store import FORMAT_AUDIO, FORMAT_VIDEO

logger = logging.getLogger(__name__)

_RAPIDAPI_VIDEO_QUALITIES = ("video_hd_original", "video_hd")


class ExtractionError(RuntimeError):
    pass


class MediaNotFoundError(ExtractionError):
    pass


@dataclass(frozen=True)
class ResolvedMedia:
    media_url: str
    http_headers: dict = field(default_factory=dict)
    title: str | None = None
    author: str | None = None
    duration: float | None = None
    thumbnail: str | None = None


class ExtractionAdapter:
    name = ""

    def resolve(self, url, media_format):
        raise NotImplementedError

    def preview(self, url):
        raise NotImplementedError


def _author_name(value):
    if isinstance(value, dict):
        value = value.get("nickname") or value.get("unique_id") or value.get("username")
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_seconds(value):
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def select_rapidapi_link(links, media_format):
    """Pick the download URL for ``media_format`` from a RapidAPI ``links`` list."""
    candidates = [link for link in links or [] if isinstance(link, dict)]

    def _quality(link):
        return str(link.get("quality") or "").lower()

    video_url = None
    for wanted in _RAPIDAPI_VIDEO_QUALITIES:
        match = next((link for link in candidates if _quality(link) == wanted and link.get("link")), None)
        if match:
            video_url = match["link"]
            break
    if video_url is None:
        match = next((link for link in candidates if "video" in _quality(link) and link.get("link")), None)
        video_url = match["link"] if match else None

    if media_format == FORMAT_VIDEO:
        return video_url
    audio = next((link for link in candidates if _quality(link) == "audio"), None)
    if audio:
        audio_url = audio.get("link") or audio.get("renderLink")
        if audio_url:
            return audio_url
    # No dedicated audio stream: fall back to the combined video.
    return video_url


class RapidApiAdapter(ExtractionAdapter):
    name = EXTRACTOR_RAPIDAPI

    def __init__(self, api_key, *, host=DEFAULT_RAPIDAPI_HOST, timeout=REQUEST_TIMEOUT_SECONDS, session=None):
        if not api_key:
            raise ValueError("RapidAPI key is required")
        self.api_key = api_key
        self.host = host
        self.timeout = timeout
        self.session = session or requests.Session()

    def _fetch(self, url):
        endpoint = f"https://{self.host}/smvd/get/tiktok?url={quote(url, safe='')}"
        headers = {
            "x-rapidapi-host": self.host,
            "x-rapidapi-key": self.api_key,
        }
        try:
            response = self.session.get(endpoint, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ExtractionError(f"rapidapi_request_failed: {exc}") from exc
        if not response.ok:
            raise ExtractionError(f"rapidapi_http_{response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise ExtractionError("rapidapi_invalid_json") from exc
        if not isinstance(data, dict) or not data.get("success"):
            raise ExtractionError("rapidapi_unsuccessful")
        if not data.get("links"):
            raise MediaNotFoundError("rapidapi_no_links")
        return data

    def resolve(self, url, media_format):
        data = self._fetch(url)
        media_url = select_rapidapi_link(data.get("links"), media_format)
        if not media_url:
            raise MediaNotFoundError(f"no {media_format} link in rapidapi response")
        return ResolvedMedia(
            media_url=media_url,
            title=data.get("title") or None,
            author=_author_name(data.get("author")),
            duration=_as_seconds(data.get("duration")),
            thumbnail=data.get("picture") or data.get("thumbnail"),
        )

    def preview(self, url):
        data = self._fetch(url)
        return {
            "title": data.get("title") or None,
            "author": _author_name(data.get("author")),
            "duration": _as_seconds(data.get("duration")),
            "thumbnail": data.get("picture") or data.get("thumbnail"),
            "viewCount": data.get("view_count"),
            "likeCount": data.get("like_count"),
        }


def _is_combined(fmt):
    return fmt.get("vcodec") != "none" and fmt.get("acodec") != "none"


def _is_audio_only(fmt):
    return fmt.get("vcodec") == "none" and fmt.get("acodec") not in (None, "none")


def select_ytdlp_format(info, media_format):
    """Pick the yt-dlp format dict to fetch for ``media_format``.

    Video prefers the tallest, then highest-bitrate, format carrying both
    streams. Audio prefers the best audio-only format and falls back to the
    best combined one.
    """
    if not isinstance(info, dict):
        return None
    formats = [fmt for fmt in info.get("formats") or [] if isinstance(fmt, dict) and fmt.get("url")]
    if not formats and info.get("url"):
        formats = [info]

    combined = sorted(
        (fmt for fmt in formats if _is_combined(fmt)),
        key=lambda fmt: (fmt.get("height") or 0, fmt.get("tbr") or 0),
        reverse=True,
    )
    if media_format == FORMAT_AUDIO:
        audio = sorted(
            (fmt for fmt in formats if _is_audio_only(fmt)),
            key=lambda fmt: (fmt.get("abr") or 0, fmt.get("tbr") or 0),
            reverse=True,
        )
        if audio:
            return audio[0]
    return combined[0] if combined else None


class YtDlpAdapter(ExtractionAdapter):
    name = EXTRACTOR_YTDLP

    def __init__(self, *, timeout=REQUEST_TIMEOUT_SECONDS, cookie_file=None):
        self.timeout = timeout
        self.cookie_file = cookie_file

    def _opts(self):
        opts = {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "noplaylist": True,
            "cachedir": False,
            "socket_timeout": self.timeout,
            "retries": 2,
        }
        if self.cookie_file:
            opts["cookiefile"] = self.cookie_file
        return opts

    def _extract(self, url):
        try:
            with YoutubeDL(self._opts()) as ydl:
                info = ydl.extract_info(url, download=False)
        except (DownloadError, ExtractorError) as exc:
            raise ExtractionError(f"ytdlp_extract_failed: {exc}") from exc
        if isinstance(info, dict) and info.get("entries"):
            info = next((entry for entry in info["entries"] if isinstance(entry, dict)), None)
        if not isinstance(info, dict):
            raise ExtractionError("ytdlp_no_info")
        return info

    def resolve(self, url, media_format):
        info = self._extract(url)
        fmt = select_ytdlp_format(info, media_format)
        if not fmt:
            raise MediaNotFoundError(f"no {media_format} format available")
        logger.debug("Selected yt-dlp format %s for %s", fmt.get("format_id"), url)
        return ResolvedMedia(
            media_url=fmt["url"],
            http_headers=dict(fmt.get("http_headers") or info.get("http_headers") or {}),
            title=info.get("title") or info.get("description") or None,
            author=_author_name(info.get("uploader") or info.get("creator") or info.get("channel")),
            duration=_as_seconds(info.get("duration")),
            thumbnail=info.get("thumbnail"),
        )

    def preview(self, url):
        info = self._extract(url)
        return {
            "title": info.get("title") or None,
            "author": _author_name(info.get("uploader") or info.get("creator") or info.get("channel")),
            "duration": _as_seconds(info.get("duration")),
            "thumbnail": info.get("thumbnail"),
            "viewCount": info.get("view_count"),
            "likeCount": info.get("like_count"),
        }


def build_adapter(config):
    extractor = (config or {}).get("extractor") or EXTRACTOR_YTDLP
    timeout = (config or {}).get("request_timeout_seconds") or REQUEST_TIMEOUT_SECONDS
    if extractor == EXTRACTOR_RAPIDAPI:
        return RapidApiAdapter(
            config.get("rapidapi_key"),
            host=config.get("rapidapi_host") or DEFAULT_RAPIDAPI_HOST,
            timeout=timeout,
        )
    if extractor == EXTRACTOR_YTDLP:
        return YtDlpAdapter(timeout=timeout, cookie_file=config.get("cookie_file") if config else None)
    raise ValueError(f"unknown extractor {extractor!r}")
