from __future__ import annotations

from coursepack.planner import build_load_plan
from coursepack.schemas import MediaType
from coursepack.walker import coerce_course, walk_content


def _walked(course: dict):
    return walk_content(coerce_course(course))


def test_same_id_and_type_planned_once() -> None:
    walked = _walked(
        {
            "topics": [
                {"media": [{"id": "image-0", "type": "image"}]},
                {"media": [{"id": "image-0", "type": "image"}]},
            ]
        }
    )
    plan = build_load_plan(walked)
    assert len(plan) == 1
    assert plan.entries[0].source_locator == "topic-0 media[0]"


def test_same_id_different_type_both_survive() -> None:
    walked = _walked(
        {"topics": [{"audio": {"id": "x"}, "media": [{"id": "x", "type": "image"}]}]}
    )
    plan = build_load_plan(walked)
    assert [entry.composite_key for entry in plan] == ["x:audio", "x:image"]
    assert "x:audio" in plan
    assert {entry.type for entry in plan} == {MediaType.audio, MediaType.image}


def test_missing_ids_dropped_with_note_and_reference_only_skipped() -> None:
    walked = _walked(
        {
            "topics": [
                {
                    "media": [
                        {"type": "image", "fileName": "diagram.png"},
                        {"id": "youtube-0", "type": "youtube"},
                        {"id": "image-1", "type": "image", "fileName": "chart.svg"},
                    ]
                }
            ]
        }
    )
    plan = build_load_plan(walked)
    assert [entry.id for entry in plan] == ["image-1"]
    assert plan.entries[0].file_name_hint == "chart.svg"
    assert plan.notes == ["topic-0 media[0]: image reference has no id"]


def test_external_urls_set_aside_for_materialization() -> None:
    walked = _walked(
        {
            "topics": [
                {
                    "media": [
                        {"type": "image", "url": "https://cdn.example.com/a.png"},
                        {"id": "image-0", "type": "image", "url": "https://cdn.example.com/b.png"},
                        {"id": "image-7", "type": "image", "url": "https://cdn.example.com/c.png"},
                    ]
                }
            ]
        }
    )
    plan = build_load_plan(walked, store_ids={"image-0"})
    assert [w.reference.url for w in plan.pending_remote] == [
        "https://cdn.example.com/a.png",
        "https://cdn.example.com/c.png",
    ]
    assert [entry.id for entry in plan] == ["image-0"]
