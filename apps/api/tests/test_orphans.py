from __future__ import annotations

from urllib.parse import urlparse

from coursepack.orphans import fill_reference_urls, inject_orphans, normalize_page_id
from coursepack.schemas import MediaMetadata, MediaType, StoredMediaItem
from coursepack.walker import coerce_course


def _item(media_id: str, media_type: MediaType, page_id: str, **metadata: object) -> StoredMediaItem:
    return StoredMediaItem(id=media_id, type=media_type, page_id=page_id, metadata=MediaMetadata(**metadata))


def _course():
    return coerce_course(
        {
            "welcome": {"title": "Welcome", "audioId": "audio-0"},
            "topics": [{"title": "One"}, {"title": "Two"}],
        }
    )


def test_injects_missing_store_items_into_their_pages() -> None:
    course = _course()
    items = [
        _item("audio-0", MediaType.audio, "welcome"),
        _item("image-0", MediaType.image, "topic-1"),
        _item("audio-1", MediaType.audio, "topic-0"),
        _item("caption-0", MediaType.caption, "topic-0"),
    ]
    result = inject_orphans(course, items)

    assert [w.reference.id for w in result.injected] == ["image-0", "audio-1", "caption-0"]
    topics = result.course.topics
    assert [r.id for r in topics[1].media] == ["image-0"]
    assert topics[0].audio is not None and topics[0].audio.id == "audio-1"
    assert topics[0].caption is not None and topics[0].caption.id == "caption-0"
    assert result.injected[0].source_locator == "topic-1 media[0]"
    # the input tree is left alone
    assert course.topics[1].media == []
    assert course.topics[0].audio is None


def test_audio_orphan_lands_in_media_when_slot_taken() -> None:
    result = inject_orphans(_course(), [_item("audio-5", MediaType.audio, "intro")])
    intro = result.course.intro
    assert intro is not None
    assert intro.audio is not None and intro.audio.id == "audio-0"
    assert [r.id for r in intro.media] == ["audio-5"]


def test_reference_only_fallback_url_is_well_formed() -> None:
    result = inject_orphans(_course(), [_item("youtube-42", MediaType.youtube, "topic-0")])
    reference = result.course.topics[0].media[0]
    assert reference.url == "https://www.youtube.com/embed/42"
    parsed = urlparse(reference.url)
    assert parsed.scheme == "https"
    assert parsed.netloc
    assert reference.embed_url == reference.url


def test_reference_only_url_prefers_metadata_and_keeps_clip() -> None:
    items = [
        _item(
            "youtube-0",
            MediaType.youtube,
            "topic-0",
            youtube_url="https://www.youtube.com/watch?v=abc123",
            clip_start=10,
        ),
        _item("video-3", MediaType.video, "topic-1", embed_url="https://player.example.com/v/9", is_youtube=True),
    ]
    result = inject_orphans(_course(), items)
    assert result.course.topics[0].media[0].url == "https://www.youtube.com/embed/abc123?start=10"
    assert result.course.topics[1].media[0].url == "https://player.example.com/v/9"
    assert result.course.topics[1].media[0].type == MediaType.youtube


def test_unknown_pages_are_gaps_not_errors() -> None:
    items = [
        _item("image-1", MediaType.image, "topic-9"),
        _item("image-2", MediaType.image, ""),
    ]
    result = inject_orphans(_course(), items)
    assert result.injected == []
    assert len(result.gaps) == 2
    assert result.gaps[0].startswith("image-1")


def test_items_referenced_by_url_are_not_orphans() -> None:
    course = coerce_course(
        {"topics": [{"media": [{"type": "image", "url": "https://cdn.example.com/a.png"}]}]}
    )
    items = [_item("image-0", MediaType.image, "topic-0", original_url="https://cdn.example.com/a.png")]
    assert inject_orphans(course, items).injected == []


def test_fill_reference_urls_for_tree_youtube_entries() -> None:
    course = coerce_course({"topics": [{"media": [{"id": "youtube-3", "type": "youtube"}]}]})
    assert fill_reference_urls(course, []) == 1
    assert course.topics[0].media[0].url == "https://www.youtube.com/embed/3"


def test_normalize_page_id_aliases() -> None:
    assert normalize_page_id("Intro") == "welcome"
    assert normalize_page_id("learning-objectives") == "objectives"
    assert normalize_page_id("topic-2") == "topic-2"


def test_unclassified_store_entries_become_gaps() -> None:
    result = inject_orphans(
        _course(),
        [_item("image-0", MediaType.image, "topic-0")],
        ["doc-0: cannot classify stored media of type 'document'"],
    )
    assert [w.reference.id for w in result.injected] == ["image-0"]
    assert result.gaps == ["doc-0: cannot classify stored media of type 'document'"]
