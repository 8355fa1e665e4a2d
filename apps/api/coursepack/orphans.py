from __future__ import annotations

import logging
from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import BaseModel, Field

from .config import settings
from .mime import youtube_video_id
from .schemas import (
    INTRO_PAGE_ID,
    OBJECTIVES_PAGE_ID,
    ContentNode,
    CourseContent,
    MediaReference,
    MediaType,
    StoredMediaItem,
)
from .walker import WalkedReference, referenced_ids_by_page, walk_content

logger = logging.getLogger(__name__)

_PAGE_ALIASES = {
    "intro": INTRO_PAGE_ID,
    "welcome-page": INTRO_PAGE_ID,
    "learning-objectives": OBJECTIVES_PAGE_ID,
    "objectives-page": OBJECTIVES_PAGE_ID,
}


class InjectionResult(BaseModel):
    course: CourseContent
    injected: list[WalkedReference] = Field(default_factory=list)
    gaps: list[str] = Field(default_factory=list)


def normalize_page_id(page_id: str) -> str:
    cleaned = (page_id or "").strip().lower()
    return _PAGE_ALIASES.get(cleaned, cleaned)


def _with_clip(url: str, clip_start: Optional[float], clip_end: Optional[float]) -> str:
    if clip_start is None and clip_end is None:
        return url
    parsed = urlparse(url)
    query = dict(parse_qsl(parsed.query))
    if clip_start is not None:
        query.setdefault("start", str(int(clip_start)))
    if clip_end is not None:
        query.setdefault("end", str(int(clip_end)))
    return urlunparse(parsed._replace(query=urlencode(query)))


def reference_only_url(item: StoredMediaItem) -> str:
    """Embeddable URL for a reference-only item; never empty."""
    meta = item.metadata
    url = meta.embed_url
    if not url and meta.youtube_url:
        video_id = youtube_video_id(meta.youtube_url)
        url = f"{settings.youtube_embed_base}{video_id}" if video_id else meta.youtube_url
    if not url:
        suffix = item.id.rsplit("-", 1)[-1] or item.id
        url = f"{settings.youtube_embed_base}{suffix}"
        logger.warning("Media %s has no embed or canonical URL, using %s", item.id, url)
    return _with_clip(url, meta.clip_start, meta.clip_end)


def synthesize_reference(item: StoredMediaItem) -> MediaReference:
    meta = item.metadata
    if item.is_reference_only:
        url = reference_only_url(item)
        return MediaReference(
            id=item.id,
            type=MediaType.youtube,
            url=url,
            embed_url=url,
            title=meta.title,
            clip_start=meta.clip_start,
            clip_end=meta.clip_end,
        )
    return MediaReference(
        id=item.id,
        type=item.type,
        url=meta.original_url,
        file_name_hint=meta.original_name,
        title=meta.title,
    )


def _index_nodes(course: CourseContent) -> dict[str, ContentNode]:
    by_page: dict[str, ContentNode] = {}
    for node in course.nodes():
        by_page.setdefault(normalize_page_id(node.page_id), node)
        if node.index is not None:
            by_page.setdefault(f"topic-{node.index}", node)
    return by_page


def _attach(node: ContentNode, reference: MediaReference) -> tuple[str, str, Optional[int]]:
    locator = node.locator
    if reference.type == MediaType.audio and node.audio is None:
        node.audio = reference
        return "audio", f"{locator} audio", None
    if reference.type == MediaType.caption and node.caption is None:
        node.caption = reference
        return "caption", f"{locator} caption", None
    node.media.append(reference)
    position = len(node.media) - 1
    return "media", f"{locator} media[{position}]", position


def inject_orphans(
    course: CourseContent,
    store_items: list[StoredMediaItem],
    unclassified: Iterable[str] = (),
) -> InjectionResult:
    """Append references for store items the tree does not mention yet.

    The input tree is left untouched; the augmented copy is returned. Items
    tagged to pages the tree does not have, and the store's ``unclassified``
    entries, are reported as gaps.
    """
    augmented = course.model_copy(deep=True)
    walked = walk_content(augmented)
    # An id already placed on any page is not an orphan on another.
    referenced_ids: set[str] = set().union(*referenced_ids_by_page(walked).values())
    referenced_urls = {
        url
        for w in walked
        for url in (w.reference.url, w.reference.embed_url)
        if url
    }
    nodes = _index_nodes(augmented)
    result = InjectionResult(course=augmented, gaps=list(unclassified))

    for item in store_items:
        if item.id in referenced_ids:
            continue
        known_urls = {item.metadata.original_url, item.metadata.youtube_url, item.metadata.embed_url}
        if referenced_urls & {u for u in known_urls if u}:
            continue
        if not item.page_id:
            result.gaps.append(f"{item.id}: no page assigned")
            continue
        node = nodes.get(normalize_page_id(item.page_id))
        if node is None:
            result.gaps.append(f"{item.id}: page {item.page_id} is not in the course")
            continue
        reference = synthesize_reference(item)
        slot, source_locator, position = _attach(node, reference)
        referenced_ids.add(item.id)
        result.injected.append(
            WalkedReference(
                reference=reference,
                page_id=node.page_id,
                node_locator=node.locator,
                source_locator=source_locator,
                slot=slot,
                position=position,
            )
        )

    if result.injected:
        logger.info("Injected %d orphaned media references", len(result.injected))
    for gap in result.gaps:
        logger.warning("Orphan injection skipped %s", gap)
    return result


def fill_reference_urls(course: CourseContent, store_items: list[StoredMediaItem]) -> int:
    """Give every reference-only tree entry a URL, in place."""
    by_id = {item.id: item for item in store_items}
    filled = 0
    for node in course.nodes():
        for idx, reference in enumerate(node.media):
            if not reference.is_reference_only or reference.url:
                continue
            item = by_id.get(reference.id)
            if item is None:
                item = StoredMediaItem(
                    id=reference.id or f"youtube-{node.locator}-{idx}",
                    type=MediaType.youtube,
                    page_id=node.page_id,
                )
            url = reference.embed_url or reference_only_url(item)
            node.media[idx] = reference.model_copy(update={"url": url, "embed_url": reference.embed_url or url})
            filled += 1
    return filled
