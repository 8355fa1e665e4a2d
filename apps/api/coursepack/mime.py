from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import Optional
from urllib.parse import parse_qs, urlparse

from .schemas import MediaType

FALLBACK_EXTENSION = "bin"

MIME_TO_EXTENSION: dict[str, str] = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/svg+xml": "svg",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/wav": "wav",
    "audio/ogg": "ogg",
    "text/vtt": "vtt",
}

_ID_PREFIX_TO_EXTENSION = {
    "audio-": "mp3",
    "caption-": "vtt",
    "image-": "jpg",
    "video-": "mp4",
}

_TYPE_TO_EXTENSION = {
    MediaType.audio: "mp3",
    MediaType.caption: "vtt",
    MediaType.image: "jpg",
    MediaType.video: "mp4",
}

_AUDIO_EXTENSIONS = {"mp3", "wav", "ogg", "m4a", "aac", "flac"}
_VIDEO_EXTENSIONS = {"mp4", "webm", "mov", "avi", "mkv", "m4v"}
_CAPTION_EXTENSIONS = {"vtt", "srt"}

_EXTENSION_TO_MIME = {ext: mime for mime, ext in MIME_TO_EXTENSION.items()}
_EXTENSION_TO_MIME["jpg"] = "image/jpeg"
_EXTENSION_TO_MIME["mp3"] = "audio/mpeg"


def extension_for_mime(mime_type: Optional[str]) -> Optional[str]:
    if not mime_type:
        return None
    base = mime_type.split(";", 1)[0].strip().lower()
    return MIME_TO_EXTENSION.get(base)


def extension_for_media_id(media_id: str) -> Optional[str]:
    for prefix, ext in _ID_PREFIX_TO_EXTENSION.items():
        if media_id.startswith(prefix):
            return ext
    return None


def extension_from_name(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    suffix = PurePosixPath(urlparse(name).path).suffix.lower().lstrip(".")
    if suffix == "jpeg":
        return "jpg"
    return suffix or None


def resolve_extension(
    mime_type: Optional[str],
    media_id: str,
    media_type: MediaType,
    file_name_hint: Optional[str] = None,
) -> str:
    return (
        extension_for_mime(mime_type)
        or extension_from_name(file_name_hint)
        or extension_for_media_id(media_id)
        or _TYPE_TO_EXTENSION.get(media_type)
        or FALLBACK_EXTENSION
    )


def mime_for_extension(ext: Optional[str]) -> Optional[str]:
    if not ext:
        return None
    return _EXTENSION_TO_MIME.get(ext.lower())


def infer_type_from_url(url: str) -> MediaType:
    ext = extension_from_name(url)
    if ext in _AUDIO_EXTENSIONS:
        return MediaType.audio
    if ext in _VIDEO_EXTENSIONS:
        return MediaType.video
    if ext in _CAPTION_EXTENSIONS:
        return MediaType.caption
    return MediaType.image


def is_external_url(url: Optional[str]) -> bool:
    return bool(url) and (url.startswith("http://") or url.startswith("https://"))


def is_youtube_url(url: Optional[str]) -> bool:
    if not is_external_url(url):
        return False
    host = (urlparse(url).hostname or "").lower()
    return host == "youtu.be" or host.endswith("youtube.com") or host.endswith("youtube-nocookie.com")


def youtube_video_id(url: Optional[str]) -> Optional[str]:
    if not is_youtube_url(url):
        return None
    parsed = urlparse(url)
    if (parsed.hostname or "").lower() == "youtu.be":
        video_id = parsed.path.strip("/").split("/", 1)[0]
        return video_id or None
    query = parse_qs(parsed.query)
    if query.get("v"):
        return query["v"][0]
    match = re.search(r"/(?:embed|shorts|v)/([^/?#]+)", parsed.path)
    if match:
        return match.group(1)
    return None
