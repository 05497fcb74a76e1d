"""
Tag Parser — turns a filename into an ordered list of Tag values.

Grammar (user-authored, so parsing is forgiving):

    sunset_coast+location-okinawa_rating-5.png
    └────┘ └───┘ └───────────────┘ └──────┘
    simple simple      key/value    key/value

* Segments are separated by ``_`` (``+`` and whitespace are also accepted).
* A segment containing ``:`` or ``-`` is a key/value pair, split on the first
  ``:`` if there is one, otherwise on the first ``-``.  Both sides must be
  non-empty.
* Anything else with at least one alphanumeric character is a simple tag.

Malformed segments are reported in ``invalid_tokens`` and logged; they never
abort the parse.  ``parse()`` is total over ``str``.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Optional

from loguru import logger

from .models import Tag

_SEGMENT_SPLIT = re.compile(r"[_+\s]+")
_KV_SEPARATORS = (":", "-")


@dataclass
class TagParseResult:
    tags: list[Tag] = field(default_factory=list)
    invalid_tokens: list[str] = field(default_factory=list)


def filename_stem(filename: str) -> str:
    """
    Drop any directory part and the final extension.

    Only the last ``.ext`` is removed, so dots inside the stem survive:
    ``photo.v2_sunset.png`` yields ``photo.v2_sunset`` rather than ``photo``.
    Leading dots (hidden files) are kept.  Paths are '/'-separated; a
    backslash is an ordinary filename character.
    """
    name = filename.rsplit("/", 1)[-1]
    if "." in name.lstrip("."):
        head = name[: len(name) - len(name.lstrip("."))]
        name = head + name.lstrip(".").rsplit(".", 1)[0]
    return name


def _normalize(text: str) -> str:
    return text.strip().lower()


def _has_alnum(text: str) -> bool:
    return any(ch.isalnum() for ch in text)


def _split_kv(token: str) -> Optional[tuple[str, str]]:
    for sep in _KV_SEPARATORS:
        if sep in token:
            key, _, value = token.partition(sep)
            key, value = key.strip(), value.strip()
            if not key or not value or not _has_alnum(key) or not _has_alnum(value):
                return None
            return key, value
    return None


def classify_token(token: str) -> Optional[Tag]:
    """Return the Tag for one trimmed segment, or None if it is malformed."""
    if not _has_alnum(token):
        return None

    if any(sep in token for sep in _KV_SEPARATORS):
        kv = _split_kv(token)
        if kv is None:
            return None
        key, value = kv
        return Tag.key_value(token, _normalize(key), _normalize(value))

    return Tag.simple(token, _normalize(token))


def parse_filename_tokens(filename: str) -> TagParseResult:
    """Parse every segment of ``filename`` and keep the invalid ones for reporting."""
    result = TagParseResult()
    seen: set[str] = set()

    stem = unicodedata.normalize("NFC", filename_stem(filename))
    for segment in _SEGMENT_SPLIT.split(stem):
        raw = segment.strip()
        if not raw:
            continue

        tag = classify_token(raw)
        if tag is None:
            result.invalid_tokens.append(raw)
            continue
        if tag.normalized in seen:
            continue
        seen.add(tag.normalized)
        result.tags.append(tag)

    if result.invalid_tokens:
        logger.warning(f"invalid tag tokens in {filename!r}: {result.invalid_tokens}")
    return result


def parse(filename: str) -> list[Tag]:
    return parse_filename_tokens(filename).tags


def fold_attributes(tags: list[Tag]) -> dict[str, list[str]]:
    """Flatten key/value tags into key -> [values], keeping every value once, in order."""
    attributes: dict[str, list[str]] = {}
    for tag in tags:
        if not tag.is_key_value:
            continue
        values = attributes.setdefault(tag.name, [])
        if tag.value not in values:
            values.append(tag.value)
    return attributes
