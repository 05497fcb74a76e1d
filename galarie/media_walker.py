"""
Media Walker — traverses the media root and produces MediaFile records.

Per-entry problems (permission denied, broken symlink, a path that resolves
outside the root) are skipped and logged so one bad file never blocks the
rest of the tree.  Only an unreadable root is fatal, and only to the current
rebuild attempt.
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional

from loguru import logger

from .errors import RebuildCancelled, RootUnreadable
from .models import MediaFile, MediaType
from .tag_parser import fold_attributes, parse

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EXTENSION_TYPES: dict[str, MediaType] = {
    **{ext: MediaType.IMAGE for ext in ("jpg", "jpeg", "png", "webp", "bmp", "heic", "tiff")},
    "gif": MediaType.GIF,
    **{ext: MediaType.VIDEO for ext in ("mp4", "mov", "mkv", "webm", "avi")},
    **{ext: MediaType.AUDIO for ext in ("mp3", "wav", "flac", "aac", "ogg")},
    "pdf": MediaType.PDF,
}

THUMBNAIL_URL = "/api/v1/media/{id}/thumbnail"


@dataclass(frozen=True)
class SkippedEntry:
    path: str
    reason: str


@dataclass
class WalkResult:
    files: list[MediaFile] = field(default_factory=list)
    skipped: list[SkippedEntry] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def detect_media_type(path: str | Path) -> MediaType:
    suffix = Path(path).suffix.lower().lstrip(".")
    return EXTENSION_TYPES.get(suffix, MediaType.UNKNOWN)


def stable_id(relative_path: str) -> str:
    """Content-free identity: same path, same id; renamed file, new id."""
    return hashlib.sha1(relative_path.encode("utf-8")).hexdigest()


def _relative_posix(path: Path, root: Path) -> Optional[str]:
    try:
        relative = path.relative_to(root)
    except ValueError:
        return None
    rel = relative.as_posix()
    if rel in ("", ".") or ".." in relative.parts:
        return None
    return rel


def build_media_file(root: Path, path: Path, indexed_at: datetime) -> MediaFile:
    """Stat, classify and tag one file. Raises OSError / ValueError on bad entries."""
    resolved = path.resolve(strict=True)
    if _relative_posix(resolved, root) is None:
        raise ValueError("resolves outside the media root")

    relative_path = _relative_posix(path, root)
    if relative_path is None:
        raise ValueError("not under the media root")

    stat = resolved.stat()
    media_id = stable_id(relative_path)
    media_type = detect_media_type(path.name)
    tags = parse(path.name)

    return MediaFile(
        id=media_id,
        relative_path=relative_path,
        media_type=media_type,
        tags=tags,
        attributes=fold_attributes(tags),
        filesize=stat.st_size,
        thumbnail_path=THUMBNAIL_URL.format(id=media_id) if media_type.previewable else None,
        indexed_at=indexed_at,
    )


def _iter_files(root: Path, result: WalkResult) -> Iterator[Path]:
    """Depth-first over regular files (and symlinks to them). Symlinked dirs are not followed."""
    stack = [root]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as exc:
            if current == root:
                raise
            logger.warning(f"skipping unreadable directory {current}: {exc}")
            result.skipped.append(SkippedEntry(str(current), f"unreadable directory: {exc}"))
            continue

        subdirs = []
        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    subdirs.append(Path(entry.path))
                elif entry.is_file(follow_symlinks=True):
                    yield Path(entry.path)
                elif entry.is_symlink():
                    reason = "symlinked directory" if entry.is_dir() else "broken symlink"
                    logger.warning(f"skipping {reason} {entry.path}")
                    result.skipped.append(SkippedEntry(entry.path, reason))
            except OSError as exc:
                logger.warning(f"skipping {entry.path}: {exc}")
                result.skipped.append(SkippedEntry(entry.path, str(exc)))
        stack.extend(reversed(subdirs))


# ---------------------------------------------------------------------------
# Walk
# ---------------------------------------------------------------------------

def walk(
    root: str | Path,
    should_stop: Optional[Callable[[], bool]] = None,
    indexed_at: Optional[datetime] = None,
) -> WalkResult:
    """
    Walk ``root`` and return every media file below it, sorted by relative path.

    Args:
        root:        Media root directory.
        should_stop: Polled between entries; returning True abandons the walk
                     with ``RebuildCancelled`` and discards partial results.
        indexed_at:  Timestamp stamped on every record; defaults to now (UTC).

    Raises:
        RootUnreadable: root missing, not a directory, or not listable.
    """
    root_path = Path(root)
    if not root_path.is_dir():
        raise RootUnreadable(f"media root '{root_path}' does not exist or is not a directory")
    try:
        canonical_root = root_path.resolve(strict=True)
    except OSError as exc:
        raise RootUnreadable(f"media root '{root_path}' is not accessible: {exc}") from exc

    indexed_at = indexed_at or datetime.now(timezone.utc)
    result = WalkResult()

    try:
        for path in _iter_files(canonical_root, result):
            if should_stop is not None and should_stop():
                raise RebuildCancelled("walk cancelled")
            try:
                result.files.append(build_media_file(canonical_root, path, indexed_at))
            except (OSError, ValueError) as exc:
                logger.warning(f"skipping media file {path}: {exc}")
                result.skipped.append(SkippedEntry(str(path), str(exc)))
    except OSError as exc:
        raise RootUnreadable(f"media root '{root_path}' is not traversable: {exc}") from exc

    result.files.sort(key=lambda m: m.relative_path)
    logger.info(
        f"Walked {canonical_root}: {len(result.files)} files indexed, "
        f"{len(result.skipped)} skipped"
    )
    return result
