"""
Snapshot Store: durable JSON cache of the media index.

File layout (``<cache_dir>/index.json``):

    {
      "version": "1.0.0",
      "generatedAt": "2026-01-01T00:00:00Z",
      "media": [ {MediaFile}, ... ]
    }

Indices are not persisted; ``load()`` rebuilds them from ``media`` so they
can never drift from the data they index.  Writes go to a unique ``.tmp``
sibling first and are moved into place with ``os.replace()``, so a reader
sees either the old file or the new one, never a partial write.
"""

from __future__ import annotations

import json
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

from loguru import logger
from pydantic import ValidationError

from . import index_builder
from .errors import CorruptSnapshot, SchemaMismatch, SnapshotNotFound, SnapshotUnavailable
from .index_builder import SCHEMA_VERSION, Snapshot
from .models import MediaFile

CACHE_FILENAME = "index.json"


def _parse_timestamp(raw: object) -> datetime:
    if not isinstance(raw, str):
        raise CorruptSnapshot("cache generatedAt is missing")
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise CorruptSnapshot(f"cache generatedAt is not a timestamp: {raw!r}") from exc


class SnapshotStore:
    """Reads and writes the index snapshot under ``cache_dir``."""

    def __init__(self, cache_dir: str | Path) -> None:
        self.path: Path = Path(cache_dir) / CACHE_FILENAME

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def save(self, snapshot: Snapshot) -> Path:
        """Persist ``snapshot`` atomically and return the cache file path."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": snapshot.version,
            "generatedAt": snapshot.generated_at.isoformat().replace("+00:00", "Z"),
            "media": [m.to_wire() for m in snapshot.media],
        }
        tmp = self.path.with_name(f"{self.path.stem}.{time.time_ns()}.tmp")
        try:
            with tmp.open("w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2, ensure_ascii=False)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self.path)
        finally:
            if tmp.exists():
                tmp.unlink()
        logger.debug(f"SnapshotStore: wrote {len(snapshot.media)} records to {self.path}")
        return self.path

    def persist(self, media: Iterable[MediaFile]) -> Snapshot:
        """Build a Snapshot from ``media``, save it and return it."""
        snapshot = index_builder.build(media)
        self.save(snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def load(self) -> Snapshot:
        """
        Load and re-index the cached snapshot.

        Raises:
            SnapshotNotFound: no cache file yet.
            SchemaMismatch:   file written by an incompatible schema version.
            CorruptSnapshot:  unreadable JSON or records that fail validation.
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise SnapshotNotFound(f"no cache file at {self.path}") from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise CorruptSnapshot(f"failed to read cache file: {exc}") from exc

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CorruptSnapshot(f"failed to parse cache json: {exc}") from exc
        if not isinstance(data, dict):
            raise CorruptSnapshot("cache root is not an object")

        version = data.get("version")
        if version != SCHEMA_VERSION:
            raise SchemaMismatch(str(version), SCHEMA_VERSION)

        generated_at = _parse_timestamp(data.get("generatedAt"))
        records = data.get("media")
        if not isinstance(records, list):
            raise CorruptSnapshot("cache media is not a list")
        try:
            media = [MediaFile.model_validate(r) for r in records]
        except ValidationError as exc:
            raise CorruptSnapshot(f"invalid media record in cache: {exc.error_count()} errors") from exc

        snapshot = index_builder.build(media, generated_at=generated_at)
        logger.debug(f"SnapshotStore: loaded {len(snapshot)} records from {self.path}")
        return snapshot

    def load_or_rebuild(self, rebuild: Callable[[], Iterable[MediaFile]]) -> Snapshot:
        """Load the cache; on any unusable-cache error call ``rebuild`` and persist its result."""
        try:
            return self.load()
        except SnapshotNotFound:
            logger.info("cache missing, triggering rebuild")
        except SnapshotUnavailable as exc:
            logger.warning(f"failed to read cache, rebuilding: {exc}")
        return self.persist(rebuild())

    # ------------------------------------------------------------------
    # Freshness
    # ------------------------------------------------------------------

    def age_seconds(self) -> float | None:
        try:
            mtime = self.path.stat().st_mtime
        except OSError:
            return None
        return datetime.now(timezone.utc).timestamp() - mtime

    def is_fresh(self, max_age_seconds: float) -> bool:
        """True if the cache file exists and was written less than ``max_age_seconds`` ago."""
        age = self.age_seconds()
        return age is not None and age < max_age_seconds

    def __repr__(self) -> str:
        return f"SnapshotStore(path={self.path})"
