from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from .config import settings


class MediaType(str, Enum):
    image = "image"
    video = "video"
    audio = "audio"
    caption = "caption"
    youtube = "youtube"


class NodeKind(str, Enum):
    intro = "intro"
    objectives = "objectives"
    topic = "topic"


class FailureReason(str, Enum):
    not_found = "not_found"
    timeout = "timeout"
    fetch_failure = "fetch_failure"
    cancelled = "cancelled"


class RunStatus(str, Enum):
    succeeded = "succeeded"
    cancelled = "cancelled"


INTRO_PAGE_ID = "welcome"
OBJECTIVES_PAGE_ID = "objectives"

_AUDIO_KEYS = ("audioId", "audio_id", "audioFile", "audio_file", "audio")
_CAPTION_KEYS = ("captionId", "caption_id", "captionFile", "caption_file", "caption")
_INTRO_KEYS = ("intro", "welcome", "welcomePage")
_OBJECTIVES_KEYS = ("objectives", "objectivesPage", "learningObjectivesPage")


def _looks_like_youtube(url: Any) -> bool:
    return isinstance(url, str) and ("youtube.com" in url or "youtu.be" in url)


class MediaReference(BaseModel):
    """One media mention in the content tree."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = ""
    type: MediaType
    url: Optional[str] = None
    file_name_hint: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("file_name_hint", "fileNameHint", "fileName", "file_name"),
    )
    title: Optional[str] = None
    embed_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("embed_url", "embedUrl")
    )
    clip_start: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("clip_start", "clipStart")
    )
    clip_end: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("clip_end", "clipEnd")
    )

    @model_validator(mode="before")
    @classmethod
    def _normalize_youtube(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if data.get("type") == "video" and (
            data.get("isYouTube")
            or _looks_like_youtube(data.get("url"))
            or _looks_like_youtube(data.get("embedUrl") or data.get("embed_url"))
        ):
            data = {**data, "type": "youtube"}
        if data.get("id") is None:
            data = {**data, "id": ""}
        return data

    @property
    def composite_key(self) -> str:
        return f"{self.id}:{self.type.value}"

    @property
    def is_reference_only(self) -> bool:
        return self.type == MediaType.youtube


def _first_present(data: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return None


def _coerce_slot(value: Any, media_type: MediaType) -> Any:
    if value is None or isinstance(value, MediaReference):
        return value
    if isinstance(value, str):
        return {"id": value, "type": media_type.value}
    if isinstance(value, dict):
        return {**value, "type": value.get("type") or media_type.value}
    return value


class ContentNode(BaseModel):
    """A single intro, objectives, or topic page of the content tree."""

    model_config = ConfigDict(populate_by_name=True)

    page_id: str
    kind: NodeKind
    index: Optional[int] = None
    title: str = ""
    audio: Optional[MediaReference] = None
    caption: Optional[MediaReference] = None
    media: list[MediaReference] = Field(default_factory=list)
    # composite key -> blob file name, filled after loading
    attached: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _resolve_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        data["audio"] = _coerce_slot(_first_present(data, _AUDIO_KEYS), MediaType.audio)
        data["caption"] = _coerce_slot(_first_present(data, _CAPTION_KEYS), MediaType.caption)
        if data.get("media") is None:
            data["media"] = []
        return data

    @property
    def locator(self) -> str:
        if self.kind == NodeKind.topic:
            return f"topic-{self.index}"
        return self.kind.value


class CourseContent(BaseModel):
    """Hierarchical course content: intro, objectives, and ordered topics."""

    intro: Optional[ContentNode] = None
    objectives: Optional[ContentNode] = None
    topics: list[ContentNode] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _ingest(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        intro = _first_present(data, _INTRO_KEYS)
        objectives = _first_present(data, _OBJECTIVES_KEYS)
        topics = data.get("topics") or []
        return {
            "intro": _with_node_defaults(intro, NodeKind.intro, None),
            "objectives": _with_node_defaults(objectives, NodeKind.objectives, None),
            "topics": [
                _with_node_defaults(topic, NodeKind.topic, index)
                for index, topic in enumerate(topics)
            ],
        }

    def nodes(self) -> list[ContentNode]:
        found: list[ContentNode] = []
        if self.intro is not None:
            found.append(self.intro)
        if self.objectives is not None:
            found.append(self.objectives)
        found.extend(self.topics)
        return found


def _with_node_defaults(raw: Any, kind: NodeKind, index: Optional[int]) -> Any:
    if not isinstance(raw, dict):
        return raw
    node = dict(raw)
    node.setdefault("kind", kind.value)
    if index is not None:
        node.setdefault("index", index)
    if not node.get("page_id"):
        if kind == NodeKind.intro:
            node["page_id"] = INTRO_PAGE_ID
        elif kind == NodeKind.objectives:
            node["page_id"] = OBJECTIVES_PAGE_ID
        else:
            node["page_id"] = node.get("pageId") or node.get("id") or f"topic-{index}"
    return node


class MediaMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mime_type: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("mime_type", "mimeType")
    )
    youtube_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("youtube_url", "youtubeUrl")
    )
    embed_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("embed_url", "embedUrl")
    )
    clip_start: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("clip_start", "clipStart")
    )
    clip_end: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("clip_end", "clipEnd")
    )
    original_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("original_url", "originalUrl")
    )
    original_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("original_name", "originalName")
    )
    title: Optional[str] = None
    source: Optional[str] = None
    is_youtube: bool = Field(
        default=False, validation_alias=AliasChoices("is_youtube", "isYouTube")
    )


class StoredMediaItem(BaseModel):
    id: str
    type: MediaType
    page_id: str
    metadata: MediaMetadata = Field(default_factory=MediaMetadata)

    @property
    def is_reference_only(self) -> bool:
        return (
            self.type == MediaType.youtube
            or self.metadata.is_youtube
            or self.metadata.source == "youtube"
        )


class StoredMedia(BaseModel):
    """A store lookup result: raw bytes plus the item's metadata."""

    item: StoredMediaItem
    data: Optional[bytes] = None


class LoadPlanEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    composite_key: str
    id: str
    type: MediaType
    file_name_hint: Optional[str] = None
    source_locator: str


class FailedMedia(BaseModel):
    source_locator: str
    type: MediaType
    id: str
    reason: FailureReason
    detail: str = ""


class MediaBlob(BaseModel):
    file_name: str
    data: bytes
    mime_type: str


class MediaCounts(BaseModel):
    binary_files: int
    embedded_references: int
    total_media_count: int

    def describe(self) -> str:
        return (
            f"{self.total_media_count} media files "
            f"({self.binary_files} binary files, {self.embedded_references} embedded references)"
        )


class PackageSettings(BaseModel):
    title: str = "Untitled Course"
    version: str = Field(default_factory=lambda: settings.default_package_version)
    scorm_version: str = "1.2"
    pass_mark: int = Field(default_factory=lambda: settings.default_pass_mark, ge=0, le=100)


class PackageGenerateRequest(BaseModel):
    settings: Optional[PackageSettings] = None


class YouTubeMediaCreate(BaseModel):
    url: str
    page_id: str
    title: Optional[str] = None
    clip_start: Optional[float] = None
    clip_end: Optional[float] = None


class PackageReport(BaseModel):
    status: RunStatus
    counts: MediaCounts
    summary: str
    failures: list[FailedMedia] = Field(default_factory=list)
    diagnostics: list[str] = Field(default_factory=list)
    warning: Optional[str] = None
    package_path: Optional[str] = None
