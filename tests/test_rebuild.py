"""Tests for the single-flight rebuild coordinator."""

import os
import shutil
import threading
import time

import pytest

from galarie.errors import AlreadyInProgress, RebuildCancelled, RootUnreadable
from galarie.media_walker import walk
from galarie.models import RebuildState
from galarie.rebuild import RebuildCoordinator
from galarie.search import build_filter, search
from galarie.snapshot_store import SnapshotStore


@pytest.fixture
def store(cache_dir):
    return SnapshotStore(cache_dir)


@pytest.fixture
def coordinator(media_root, store):
    coord = RebuildCoordinator(media_root, store)
    yield coord
    coord.shutdown(timeout=5)


class BlockingWalker:
    """Walker that parks inside the walk until released, counting calls."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def __call__(self, root, should_stop=None):
        self.calls += 1
        self.entered.set()
        assert self.release.wait(5), "walker was never released"
        return walk(root, should_stop=should_stop)


def media_identity(snapshot):
    return [(m.id, m.relative_path, m.tag_names(), m.attributes) for m in snapshot.media]


# ---------------------------------------------------------------------------
# Synchronous rebuilds
# ---------------------------------------------------------------------------

class TestRebuild:
    def test_starts_empty(self, coordinator):
        assert len(coordinator.current()) == 0
        assert coordinator.generation == 0
        assert coordinator.state is RebuildState.IDLE

    def test_forced_rebuild_publishes(self, coordinator, store):
        status = coordinator.rebuild(force=True)
        assert status.status == "complete"
        assert status.reused_cache is False
        assert status.media_count == 2
        assert status.generation == 1
        assert len(coordinator.current()) == 2
        assert len(store.load()) == 2

    def test_rebuild_is_idempotent(self, coordinator):
        coordinator.rebuild(force=True)
        first = coordinator.current()
        coordinator.rebuild(force=True)
        second = coordinator.current()
        assert first is not second
        assert media_identity(first) == media_identity(second)

    def test_reader_keeps_captured_snapshot(self, coordinator, media_root):
        coordinator.rebuild(force=True)
        captured = coordinator.current()

        (media_root / "new_sunset.png").write_bytes(b"")
        coordinator.rebuild(force=True)

        assert len(captured) == 2
        assert search(build_filter(tags=["sunset"]), captured).total == 1
        assert search(build_filter(tags=["sunset"]), coordinator.current()).total == 2

    def test_failure_keeps_previous_snapshot(self, coordinator, media_root):
        coordinator.rebuild(force=True)
        published = coordinator.current()

        shutil.rmtree(media_root)
        with pytest.raises(RootUnreadable):
            coordinator.rebuild(force=True)

        assert coordinator.current() is published
        assert coordinator.generation == 1
        assert coordinator.state is RebuildState.IDLE
        assert "does not exist" in coordinator.status()["lastError"]

    def test_slot_is_released_after_failure(self, coordinator, media_root):
        shutil.rmtree(media_root)
        with pytest.raises(RootUnreadable):
            coordinator.rebuild(force=True)

        media_root.mkdir()
        (media_root / "back.png").write_bytes(b"")
        assert coordinator.rebuild(force=True).media_count == 1
        assert coordinator.status()["lastError"] is None


class TestStalenessPolicy:
    def test_fresh_cache_is_reused_without_walking(self, coordinator, media_root):
        coordinator.rebuild(force=True)
        (media_root / "added_later.png").write_bytes(b"")

        status = coordinator.rebuild()
        assert status.reused_cache is True
        assert status.media_count == 2

    def test_force_always_walks(self, coordinator, media_root):
        coordinator.rebuild(force=True)
        (media_root / "added_later.png").write_bytes(b"")

        status = coordinator.rebuild(force=True)
        assert status.reused_cache is False
        assert status.media_count == 3

    def test_stale_cache_is_walked(self, coordinator, media_root, store):
        coordinator.rebuild(force=True)
        (media_root / "added_later.png").write_bytes(b"")
        old = time.time() - 7200
        os.utime(store.path, (old, old))

        status = coordinator.rebuild()
        assert status.reused_cache is False
        assert status.media_count == 3

    def test_zero_ttl_disables_reuse(self, media_root, store):
        coord = RebuildCoordinator(media_root, store, max_age_seconds=0)
        coord.rebuild(force=True)
        (media_root / "added_later.png").write_bytes(b"")
        assert coord.rebuild().media_count == 3


# ---------------------------------------------------------------------------
# Single flight
# ---------------------------------------------------------------------------

class TestSingleFlight:
    def test_second_request_is_rejected(self, media_root, store):
        walker = BlockingWalker()
        coord = RebuildCoordinator(media_root, store, walker=walker)

        queued = coord.start_rebuild(force=True)
        assert queued.status == "queued"
        assert walker.entered.wait(5)
        assert coord.state is RebuildState.REBUILDING

        with pytest.raises(AlreadyInProgress) as excinfo:
            coord.rebuild(force=True)
        assert excinfo.value.started_at == queued.started_at
        with pytest.raises(AlreadyInProgress):
            coord.start_rebuild(force=True)

        walker.release.set()
        assert coord.wait(5)
        assert walker.calls == 1
        assert coord.generation == 1
        assert len(coord.current()) == 2
        assert coord.state is RebuildState.IDLE

    def test_readers_are_not_blocked_by_rebuild(self, media_root, store):
        walker = BlockingWalker()
        coord = RebuildCoordinator(media_root, store, walker=walker)
        walker.release.set()
        coord.rebuild(force=True)

        walker.release.clear()
        walker.entered.clear()
        (media_root / "third.png").write_bytes(b"")
        coord.start_rebuild(force=True)
        assert walker.entered.wait(5)

        result = search(build_filter(), coord.current())
        assert result.total == 2

        walker.release.set()
        assert coord.wait(5)
        assert search(build_filter(), coord.current()).total == 3

    def test_shutdown_cancels_running_rebuild(self, media_root, store):
        entered = threading.Event()

        def waits_for_cancel(root, should_stop=None):
            entered.set()
            deadline = time.monotonic() + 5
            while not should_stop() and time.monotonic() < deadline:
                time.sleep(0.01)
            return walk(root, should_stop=should_stop)

        coord = RebuildCoordinator(media_root, store, walker=waits_for_cancel)
        coord.start_rebuild(force=True)
        assert entered.wait(5)

        coord.shutdown(timeout=5)
        assert coord.generation == 0
        assert len(coord.current()) == 0
        assert coord.status()["lastError"] == "walk cancelled"
        assert not store.path.exists()

        with pytest.raises(RebuildCancelled):
            coord.rebuild(force=True)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

class TestInitialize:
    def test_cold_start_walks(self, coordinator, store):
        snapshot = coordinator.initialize()
        assert len(snapshot) == 2
        assert store.path.exists()

    def test_cold_start_with_empty_root(self, tmp_path, store):
        root = tmp_path / "empty"
        root.mkdir()
        coord = RebuildCoordinator(root, store)
        snapshot = coord.initialize()
        assert len(snapshot) == 0
        assert search(build_filter(tags=["anything"]), snapshot).total == 0

    def test_missing_root_serves_empty_index(self, tmp_path, store):
        coord = RebuildCoordinator(tmp_path / "missing", store)
        snapshot = coord.initialize()
        assert len(snapshot) == 0
        assert coord.status()["lastError"] is not None

    def test_fresh_cache_is_loaded_without_walking(self, media_root, store, sample_media):
        store.persist(sample_media)

        def must_not_walk(root, should_stop=None):
            raise AssertionError("walked despite a fresh cache")

        coord = RebuildCoordinator(media_root, store, walker=must_not_walk)
        snapshot = coord.initialize()
        assert len(snapshot) == 2
        assert coord.generation == 1

    def test_corrupt_cache_falls_back_to_walk(self, coordinator, store):
        store.path.write_text("{definitely not json", encoding="utf-8")
        snapshot = coordinator.initialize()
        assert len(snapshot) == 2
        assert len(store.load()) == 2

    def test_schema_mismatch_falls_back_to_walk(self, coordinator, store):
        store.path.write_text('{"version": "0.1", "generatedAt": "2026-01-01T00:00:00Z", "media": []}', encoding="utf-8")
        assert len(coordinator.initialize()) == 2

    def test_stale_cache_is_served_then_refreshed(self, media_root, store, sample_media):
        store.persist(sample_media[:1])
        old = time.time() - 7200
        os.utime(store.path, (old, old))

        coord = RebuildCoordinator(media_root, store)
        snapshot = coord.initialize()
        assert len(snapshot) == 1
        assert coord.wait(5)
        assert len(coord.current()) == 2
        coord.shutdown()

    def test_zero_ttl_refreshes_an_existing_cache(self, media_root, store, sample_media):
        store.persist(sample_media[:1])

        coord = RebuildCoordinator(media_root, store, max_age_seconds=0)
        snapshot = coord.initialize()
        assert len(snapshot) == 1
        assert coord.wait(5)
        assert len(coord.current()) == 2
        coord.shutdown()
