"""Shared pytest fixtures for all tests."""

from datetime import datetime, timezone

import pytest

from galarie.media_walker import THUMBNAIL_URL, detect_media_type, stable_id
from galarie.models import MediaFile
from galarie.tag_parser import fold_attributes, parse

INDEXED_AT = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_media(relative_path, filesize=0):
    """Build a MediaFile the way the walker would, without touching the disk."""
    name = relative_path.rsplit("/", 1)[-1]
    tags = parse(name)
    media_id = stable_id(relative_path)
    media_type = detect_media_type(name)
    return MediaFile(
        id=media_id,
        relative_path=relative_path,
        media_type=media_type,
        tags=tags,
        attributes=fold_attributes(tags),
        filesize=filesize,
        thumbnail_path=THUMBNAIL_URL.format(id=media_id) if media_type.previewable else None,
        indexed_at=INDEXED_AT,
    )


@pytest.fixture
def sample_media():
    return [
        make_media("sunset_coast_rating-5.png", filesize=10),
        make_media("macro_rating-4.gif", filesize=20),
    ]


@pytest.fixture
def media_root(tmp_path):
    """Media root holding the two sample files from the search scenarios."""
    root = tmp_path / "media"
    root.mkdir()
    (root / "sunset_coast_rating-5.png").write_bytes(b"png-bytes")
    (root / "macro_rating-4.gif").write_bytes(b"gif")
    return root


@pytest.fixture
def cache_dir(tmp_path):
    path = tmp_path / "cache"
    path.mkdir()
    return path
