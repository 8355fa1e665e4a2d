from __future__ import annotations

from collections import defaultdict
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import ConversionFailure
from .schemas import ContentNode, CourseContent, MediaReference


class WalkedReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    reference: MediaReference
    page_id: str
    node_locator: str
    source_locator: str
    slot: str
    position: Optional[int] = None


def coerce_course(raw: Any) -> CourseContent:
    """Ingest raw course JSON (with its legacy aliases) into a typed tree."""
    if isinstance(raw, CourseContent):
        return raw
    if raw is None:
        raise ConversionFailure("Course content is missing")
    try:
        return CourseContent.model_validate(raw)
    except ValidationError as exc:
        raise ConversionFailure(f"Course content could not be converted: {exc}") from exc


def walk_node(node: ContentNode) -> list[WalkedReference]:
    locator = node.locator
    found: list[WalkedReference] = []
    if node.audio is not None:
        found.append(
            WalkedReference(
                reference=node.audio,
                page_id=node.page_id,
                node_locator=locator,
                source_locator=f"{locator} audio",
                slot="audio",
            )
        )
    if node.caption is not None:
        found.append(
            WalkedReference(
                reference=node.caption,
                page_id=node.page_id,
                node_locator=locator,
                source_locator=f"{locator} caption",
                slot="caption",
            )
        )
    for idx, reference in enumerate(node.media):
        found.append(
            WalkedReference(
                reference=reference,
                page_id=node.page_id,
                node_locator=locator,
                source_locator=f"{locator} media[{idx}]",
                slot="media",
                position=idx,
            )
        )
    return found


def walk_content(course: CourseContent) -> list[WalkedReference]:
    walked: list[WalkedReference] = []
    for node in course.nodes():
        walked.extend(walk_node(node))
    return walked


def referenced_ids_by_page(walked: list[WalkedReference]) -> dict[str, set[str]]:
    by_page: dict[str, set[str]] = defaultdict(set)
    for item in walked:
        if item.reference.id:
            by_page[item.page_id].add(item.reference.id)
    return dict(by_page)


def count_tree_references(course: CourseContent) -> int:
    return len(walk_content(course))
