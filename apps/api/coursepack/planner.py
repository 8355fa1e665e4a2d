from __future__ import annotations

import logging
from typing import Iterable, Iterator, Optional

from .mime import is_external_url
from .schemas import LoadPlanEntry, MediaReference
from .walker import WalkedReference

logger = logging.getLogger(__name__)


class LoadPlan:
    """Ordered load entries keyed by ``id:type``.

    The same id legitimately shows up under more than one type, so the
    composite key is what keeps one entry from shadowing another.
    """

    def __init__(self) -> None:
        self._entries: dict[str, LoadPlanEntry] = {}
        self.notes: list[str] = []
        self.pending_remote: list[WalkedReference] = []

    def add(self, reference: MediaReference, source_locator: str) -> Optional[LoadPlanEntry]:
        if reference.is_reference_only:
            return None
        if not reference.id:
            self.notes.append(f"{source_locator}: {reference.type.value} reference has no id")
            return None
        key = reference.composite_key
        if key in self._entries:
            logger.debug("Skipping duplicate %s from %s", key, source_locator)
            return None
        entry = LoadPlanEntry(
            composite_key=key,
            id=reference.id,
            type=reference.type,
            file_name_hint=reference.file_name_hint,
            source_locator=source_locator,
        )
        self._entries[key] = entry
        return entry

    @property
    def entries(self) -> list[LoadPlanEntry]:
        return list(self._entries.values())

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[LoadPlanEntry]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)


def needs_materialization(reference: MediaReference, store_ids: Optional[set[str]]) -> bool:
    if reference.is_reference_only or not is_external_url(reference.url):
        return False
    if not reference.id:
        return True
    return store_ids is not None and reference.id not in store_ids


def build_load_plan(
    walked: Iterable[WalkedReference],
    store_ids: Optional[set[str]] = None,
) -> LoadPlan:
    """Plan one load per distinct ``(id, type)``.

    References that only carry an external URL are set aside in
    ``pending_remote`` for the materializer instead of being planned.
    """
    plan = LoadPlan()
    for item in walked:
        if needs_materialization(item.reference, store_ids):
            plan.pending_remote.append(item)
            continue
        plan.add(item.reference, item.source_locator)
    for note in plan.notes:
        logger.warning("Load plan dropped %s", note)
    return plan
