"""
Search Engine: boolean tag/attribute queries over a published Snapshot.

    required tags        AND
    attribute values     OR within one key, AND across keys

Results are sorted by relative path before slicing so pagination is stable
for a given Snapshot regardless of set iteration order.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Optional

from .errors import InvalidQuery
from .index_builder import Snapshot
from .models import SearchResult, TagFilter

DEFAULT_PAGE_SIZE = 60
MAX_PAGE_SIZE = 200


def _normalize_token(token: str) -> Optional[str]:
    token = token.strip().lower()
    return token or None


def build_filter(
    tags: Iterable[str] = (),
    attributes: Optional[Mapping[str, Iterable[str]]] = None,
    page: Optional[int] = 1,
    page_size: Optional[int] = DEFAULT_PAGE_SIZE,
) -> TagFilter:
    """
    Normalize raw query input into a TagFilter.

    Tags and attribute keys/values are trimmed and lowercased; empty entries are
    dropped, and an attribute key left with no values is ignored.  ``page_size``
    above MAX_PAGE_SIZE is clamped.

    Raises:
        InvalidQuery: page < 1 or page_size < 1.
    """
    page = 1 if page is None else page
    page_size = DEFAULT_PAGE_SIZE if page_size is None else page_size
    if page < 1:
        raise InvalidQuery(f"page must be >= 1 (got {page})")
    if page_size < 1:
        raise InvalidQuery(f"pageSize must be >= 1 (got {page_size})")

    required: list[str] = []
    for tag in tags:
        norm = _normalize_token(tag)
        if norm and norm not in required:
            required.append(norm)

    attribute_filters: dict[str, list[str]] = {}
    for key, values in (attributes or {}).items():
        norm_key = _normalize_token(key)
        if not norm_key:
            continue
        norm_values = attribute_filters.get(norm_key, [])
        for value in values:
            norm = _normalize_token(value)
            if norm and norm not in norm_values:
                norm_values.append(norm)
        if norm_values:
            attribute_filters[norm_key] = norm_values

    return TagFilter(
        required_tags=required,
        attribute_filters=attribute_filters,
        page=page,
        page_size=min(page_size, MAX_PAGE_SIZE),
    )


def matching_ids(tag_filter: TagFilter, snapshot: Snapshot) -> set[str]:
    """Ids matching the filter, unordered."""
    result = set(snapshot.ids)

    for tag in tag_filter.required_tags:
        result &= snapshot.tag_index.get(tag, frozenset())
        if not result:
            return result

    for key, values in tag_filter.attribute_filters.items():
        by_value = snapshot.attribute_index.get(key, {})
        union: set[str] = set()
        for value in values:
            union |= by_value.get(value, frozenset())
        result &= union
        if not result:
            return result

    return result


def search(tag_filter: TagFilter, snapshot: Snapshot) -> SearchResult:
    """
    Run ``tag_filter`` against ``snapshot`` and return one page of results.

    Items are copies; the published records stay untouched whatever the
    caller does with them.
    """
    ids = matching_ids(tag_filter, snapshot)
    matches = sorted(
        (snapshot.get(media_id) for media_id in ids),
        key=lambda m: (m.relative_path, m.id),
    )

    start = (tag_filter.page - 1) * tag_filter.page_size
    return SearchResult(
        items=[m.model_copy(deep=True) for m in matches[start:start + tag_filter.page_size]],
        total=len(matches),
        page=tag_filter.page,
        page_size=tag_filter.page_size,
    )
