"""
Index Builder: folds MediaFile records into an immutable Snapshot.

    tag_index        normalized tag  -> {media id}
    attribute_index  key -> value    -> {media id}

Both indices are derived from ``media`` alone and exposed through read-only
mappings, so a published Snapshot can be shared between threads without a lock.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from .models import MediaFile

SCHEMA_VERSION = "1.0.0"


class Snapshot:
    """Fully self-consistent view of the index at one point in time."""

    __slots__ = ("version", "generated_at", "media", "tag_index", "attribute_index", "_by_id")

    def __init__(
        self,
        version: str,
        generated_at: datetime,
        media: tuple[MediaFile, ...],
        tag_index: Mapping[str, frozenset[str]],
        attribute_index: Mapping[str, Mapping[str, frozenset[str]]],
    ) -> None:
        object.__setattr__(self, "version", version)
        object.__setattr__(self, "generated_at", generated_at)
        object.__setattr__(self, "media", media)
        object.__setattr__(self, "tag_index", tag_index)
        object.__setattr__(self, "attribute_index", attribute_index)
        object.__setattr__(self, "_by_id", MappingProxyType({m.id: m for m in media}))

    def __setattr__(self, name, value):
        raise AttributeError("Snapshot is immutable")

    def __len__(self) -> int:
        return len(self.media)

    def get(self, media_id: str) -> Optional[MediaFile]:
        return self._by_id.get(media_id)

    @property
    def ids(self) -> frozenset[str]:
        return frozenset(self._by_id)

    def __repr__(self) -> str:
        return f"Snapshot({len(self.media)} media, version={self.version}, generated_at={self.generated_at.isoformat()})"


def build(files: Iterable[MediaFile], generated_at: Optional[datetime] = None) -> Snapshot:
    """
    Build a Snapshot from walker output.

    A file with an id already seen (same relative path twice) is dropped.
    Key/value tags are also indexed under their bare key so ``tags=camera``
    finds ``camera-alpha``.
    """
    media: list[MediaFile] = []
    seen: set[str] = set()
    tags: dict[str, set[str]] = defaultdict(set)
    attrs: dict[str, dict[str, set[str]]] = defaultdict(lambda: defaultdict(set))

    for item in files:
        if item.id in seen:
            continue
        seen.add(item.id)
        media.append(item)

        for tag in item.tags:
            tags[tag.normalized].add(item.id)
            if tag.is_key_value:
                tags[tag.name].add(item.id)
        for key, values in item.attributes.items():
            for value in values:
                attrs[key][value].add(item.id)

    tag_index = MappingProxyType({k: frozenset(v) for k, v in tags.items()})
    attribute_index = MappingProxyType({
        key: MappingProxyType({value: frozenset(ids) for value, ids in by_value.items()})
        for key, by_value in attrs.items()
    })

    return Snapshot(
        version=SCHEMA_VERSION,
        generated_at=generated_at or datetime.now(timezone.utc),
        media=tuple(media),
        tag_index=tag_index,
        attribute_index=attribute_index,
    )


def empty(generated_at: Optional[datetime] = None) -> Snapshot:
    return build((), generated_at=generated_at)
