"""Link routing helpers for raw URL input."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import urlparse

_TIKTOK_HOSTS = {"tiktok.com", "www.tiktok.com", "m.tiktok.com"}
_TIKTOK_SHORT_HOSTS = {"vm.tiktok.com", "vt.tiktok.com"}


class LinkType(Enum):
    TIKTOK_VIDEO = "tiktok_video"
    TIKTOK_SHORT_LINK = "tiktok_short_link"
    TIKTOK_OTHER = "tiktok_other"
    UNSUPPORTED = "unsupported"


@dataclass
class Link:
    type: LinkType
    identifier: str  # video id, short code, or the original input

    @property
    def is_tiktok(self) -> bool:
        return self.type is not LinkType.UNSUPPORTED


def detect_link(user_input: str) -> Link:
    """Classify a pasted URL without network calls.

    Rules:
    - Only ``http``/``https`` URLs on a TikTok host are accepted.
    - ``/@user/video/<id>`` and ``/v/<id>.html`` yield the numeric video id.
    - ``vm.``/``vt.`` short links yield their short code; they are resolved
      by the extractor, not here.
    - Other TikTok paths are accepted as ``TIKTOK_OTHER``.
    """
    raw = (user_input or "").strip()
    parsed = urlparse(raw)
    if parsed.scheme not in ("http", "https"):
        return Link(type=LinkType.UNSUPPORTED, identifier=raw)
    host = (parsed.hostname or "").lower()

    if host in _TIKTOK_SHORT_HOSTS:
        code = _clean_identifier(parsed.path)
        if code:
            return Link(type=LinkType.TIKTOK_SHORT_LINK, identifier=code)
        return Link(type=LinkType.UNSUPPORTED, identifier=raw)

    if host not in _TIKTOK_HOSTS:
        return Link(type=LinkType.UNSUPPORTED, identifier=raw)

    video_id = _extract_video_id(parsed.path)
    if video_id:
        return Link(type=LinkType.TIKTOK_VIDEO, identifier=video_id)
    return Link(type=LinkType.TIKTOK_OTHER, identifier=raw)


def _extract_video_id(path: str) -> Optional[str]:
    parts = [segment for segment in (path or "").split("/") if segment]
    for index, segment in enumerate(parts[:-1]):
        if segment.lower() in ("video", "v"):
            candidate = parts[index + 1].split(".", 1)[0]
            if candidate.isdigit():
                return candidate
    return None


def _clean_identifier(value: str) -> str:
    return (value or "").split("?", 1)[0].strip().strip("/")
