"""
Rebuild Coordinator — walker → builder → store, one rebuild at a time.

State machine:

    idle ──request──▶ rebuilding ──success──▶ idle   (new snapshot published)
                                  └─failure──▶ idle   (previous snapshot kept)

A request that arrives while a rebuild is running gets ``AlreadyInProgress``;
it never starts a second walk.  The published Snapshot is swapped in with a
single reference assignment, so readers that already captured the previous
one keep a complete, consistent view.

Staleness policy: without ``force`` a cache file younger than
``max_age_seconds`` is reused as-is instead of walking the tree again.
``force=True`` always walks.  ``max_age_seconds=0`` disables reuse.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from . import index_builder
from .errors import AlreadyInProgress, RebuildCancelled, SnapshotNotFound, SnapshotUnavailable
from .index_builder import Snapshot
from .media_walker import WalkResult, walk
from .models import RebuildState, RebuildStatus
from .snapshot_store import SnapshotStore

DEFAULT_MAX_AGE_SECONDS = 3600


class RebuildCoordinator:
    """Owns the currently published Snapshot and the single rebuild slot."""

    def __init__(
        self,
        media_root: str | Path,
        store: SnapshotStore,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        walker: Callable[..., WalkResult] = walk,
    ) -> None:
        self.media_root = Path(media_root)
        self.store = store
        self.max_age_seconds = max_age_seconds
        self._walker = walker

        self._snapshot: Snapshot = index_builder.empty()
        self._generation = 0

        self._flight = threading.Lock()      # held for the whole rebuild
        self._status_lock = threading.Lock()  # guards the bookkeeping below
        self._cancel = threading.Event()
        self._closed = False
        self._thread: Optional[threading.Thread] = None

        self._state = RebuildState.IDLE
        self._started_at: Optional[datetime] = None
        self._last_completed_at: Optional[datetime] = None
        self._last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def current(self) -> Snapshot:
        """The published Snapshot. Callers keep the reference for one query only."""
        return self._snapshot

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def state(self) -> RebuildState:
        return self._state

    def status(self) -> dict[str, Any]:
        snapshot = self._snapshot
        with self._status_lock:
            return {
                "state": self._state.value,
                "generation": self._generation,
                "mediaCount": len(snapshot),
                "generatedAt": snapshot.generated_at.isoformat(),
                "startedAt": self._started_at.isoformat() if self._started_at else None,
                "lastCompletedAt": self._last_completed_at.isoformat() if self._last_completed_at else None,
                "lastError": self._last_error,
            }

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def initialize(self) -> Snapshot:
        """
        Publish whatever the cache holds, or walk the tree if it is unusable.

        A cache older than ``max_age_seconds`` is still served immediately and
        a background refresh is started.  With ``max_age_seconds == 0`` every
        cache counts as stale.  A failed cold-start walk leaves the
        empty Snapshot published rather than raising.
        """
        try:
            snapshot = self.store.load()
        except SnapshotNotFound:
            logger.info("No index cache found, walking media root")
            snapshot = None
        except SnapshotUnavailable as exc:
            logger.warning(f"Index cache unusable ({exc}), walking media root")
            snapshot = None

        if snapshot is not None:
            self._publish(snapshot)
            logger.info(f"Index loaded from cache: {len(snapshot)} records")
            if self.max_age_seconds <= 0 or not self.store.is_fresh(self.max_age_seconds):
                logger.info("Index cache is stale, refreshing in background")
                try:
                    self.start_rebuild(force=True)
                except AlreadyInProgress:
                    logger.debug("Refresh skipped, a rebuild is already running")
            return self._snapshot

        try:
            self.rebuild(force=True)
        except AlreadyInProgress:
            logger.info("Rebuild already running, serving the current snapshot")
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Initial index build failed, serving empty index: {exc}")
        return self._snapshot

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    def rebuild(self, force: bool = False) -> RebuildStatus:
        """
        Run a rebuild in the calling thread and return once it is published.

        Raises:
            AlreadyInProgress: another rebuild holds the slot.
            RootUnreadable:    media root missing; previous snapshot kept.
        """
        started_at = self._acquire()
        return self._execute(force, started_at, reraise=True)

    def start_rebuild(self, force: bool = False) -> RebuildStatus:
        """Claim the rebuild slot and run the rebuild on a background thread."""
        started_at = self._acquire()
        thread = threading.Thread(
            target=self._execute,
            args=(force, started_at, False),
            name="galarie-rebuild",
            daemon=True,
        )
        self._thread = thread
        try:
            thread.start()
        except RuntimeError:
            self._release()
            raise
        return RebuildStatus(status="queued", started_at=started_at)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the background rebuild (if any) finishes. True if idle."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            return not thread.is_alive()
        return True

    def shutdown(self, timeout: float = 5.0) -> None:
        """Refuse new rebuilds and cancel the running one; its partial work is discarded."""
        self._closed = True
        self._cancel.set()
        if not self.wait(timeout):
            logger.warning("Rebuild thread did not stop before shutdown timeout")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _acquire(self) -> datetime:
        if self._closed:
            raise RebuildCancelled("coordinator is shut down")
        if not self._flight.acquire(blocking=False):
            raise AlreadyInProgress(self._started_at)
        started_at = datetime.now(timezone.utc)
        with self._status_lock:
            self._state = RebuildState.REBUILDING
            self._started_at = started_at
        return started_at

    def _release(self) -> None:
        with self._status_lock:
            self._state = RebuildState.IDLE
        self._flight.release()

    def _load_fresh_cache(self) -> Optional[Snapshot]:
        if self.max_age_seconds <= 0 or not self.store.is_fresh(self.max_age_seconds):
            return None
        try:
            return self.store.load()
        except SnapshotUnavailable as exc:
            logger.warning(f"Fresh cache could not be loaded, walking instead: {exc}")
            return None

    def _execute(self, force: bool, started_at: datetime, reraise: bool) -> Optional[RebuildStatus]:
        try:
            snapshot = None if force else self._load_fresh_cache()
            reused = snapshot is not None
            if snapshot is None:
                result = self._walker(self.media_root, should_stop=self._cancel.is_set)
                snapshot = index_builder.build(result.files)
                self.store.save(snapshot)

            generation = self._publish(snapshot)
            completed_at = datetime.now(timezone.utc)
            with self._status_lock:
                self._last_completed_at = completed_at
                self._last_error = None

            elapsed = (completed_at - started_at).total_seconds()
            logger.info(
                f"Index rebuild complete: {len(snapshot)} records, generation {generation} "
                f"({'cache reused' if reused else 'fresh walk'}, {elapsed:.2f}s)"
            )
            return RebuildStatus(
                status="complete",
                started_at=started_at,
                completed_at=completed_at,
                reused_cache=reused,
                media_count=len(snapshot),
                generation=generation,
            )
        except Exception as exc:
            with self._status_lock:
                self._last_error = str(exc)
            if isinstance(exc, RebuildCancelled):
                logger.info("Index rebuild cancelled, previous snapshot kept")
            else:
                logger.error(f"Index rebuild failed, previous snapshot kept: {exc}")
            if reraise:
                raise
            return None
        finally:
            self._release()

    def _publish(self, snapshot: Snapshot) -> int:
        with self._status_lock:
            self._snapshot = snapshot
            self._generation += 1
            return self._generation

    def __repr__(self) -> str:
        return (
            f"RebuildCoordinator(root={self.media_root}, state={self._state.value}, "
            f"generation={self._generation}, records={len(self._snapshot)})"
        )
