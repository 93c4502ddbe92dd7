"""
Media URL detection.

YouTube links have no article body worth extracting, but their thumbnail
makes a good cover, so the reader records it as the cover image URL.
"""

import re
from dataclasses import dataclass
from urllib.parse import parse_qs, urlparse

YOUTUBE_HOSTS = {
    "youtube.com",
    "m.youtube.com",
    "youtu.be",
    "youtube-nocookie.com",
}

VIDEO_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{11}$")


@dataclass
class YouTubeInfo:
    video_id: str

    @property
    def thumbnail_url(self) -> str:
        return f"https://i.ytimg.com/vi/{self.video_id}/hqdefault.jpg"


def _extract_video_id(value: str | None) -> str | None:
    if not value:
        return None
    candidate = re.split(r"[?#&/]", value)[0]
    return candidate if VIDEO_ID_PATTERN.match(candidate) else None


def get_youtube_info(url: str | None) -> YouTubeInfo | None:
    if not isinstance(url, str):
        return None
    try:
        parsed = urlparse(url)
    except ValueError:
        return None

    hostname = re.sub(r"^www\.", "", (parsed.hostname or "").lower())
    if hostname not in YOUTUBE_HOSTS:
        return None

    segments = [segment for segment in parsed.path.split("/") if segment]
    if hostname == "youtu.be":
        video_id = _extract_video_id(segments[0] if segments else None)
    else:
        first = segments[0] if segments else ""
        second = segments[1] if len(segments) > 1 else None
        if first in ("shorts", "embed", "v", "live"):
            video_id = _extract_video_id(second)
        else:
            video_id = _extract_video_id(parse_qs(parsed.query).get("v", [None])[0])

    if not video_id:
        return None
    return YouTubeInfo(video_id=video_id)
