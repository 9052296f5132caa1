"""
Sync Engine Tests

Tests for full and content-only sync cycles, throttling, error isolation,
periodic scheduling and local attempt recording.
"""

import asyncio

import pytest

from conftest import FakeRemoteClient
from playsync.config import SyncSettings
from playsync.engine import SyncEngine, create_sync_engine, sync_session
from playsync.levels import LevelState
from playsync.models import (
    DifficultyProgress,
    ErrorKind,
    LevelProgress,
    NetworkError,
    SubscriptionSnapshot,
    SyncPhase,
    SyncSnapshot,
)


def snapshot_with_progress() -> SyncSnapshot:
    return SyncSnapshot(
        progress=[LevelProgress(
            level_id="B",
            difficulty_progress=[DifficultyProgress(difficulty_name="easy", high_score=40, attempts=2)],
            updated_at=5,
        )],
        subscription=SubscriptionSnapshot(is_active=True, activated_till=2_000_000_000_000),
    )


class TestFullSync:
    """Tests for a complete sync cycle."""

    @pytest.mark.asyncio
    async def test_happy_path(self, engine, cache, clock):
        remote = FakeRemoteClient(snapshot_with_progress())

        result = await engine.sync(remote, "tok")

        assert result.success
        assert result.content_changed is True
        assert result.progress_synced is True
        assert remote.tokens == ["tok"]
        assert cache.levels_meta_count() == 3
        assert cache.get_progress()[0].level_id == "B"
        assert cache.get_subscription().is_active is True
        assert cache.get_last_sync_time() == clock.now

        status = engine.get_sync_status()
        assert status.last_sync_time == clock.now
        assert status.cached_level_count == 3
        assert status.content_synced is True
        assert status.is_syncing is False
        assert status.phase == SyncPhase.IDLE
        assert status.last_error is None

    @pytest.mark.asyncio
    async def test_content_failure_does_not_block_progress(self, engine, cache, host):
        host.fail_paths.add("manifest.json")
        remote = FakeRemoteClient(snapshot_with_progress())

        result = await engine.sync(remote, "tok")

        assert result.progress_synced is True
        assert [e.kind for e in result.errors] == [ErrorKind.MANIFEST]
        assert cache.get_progress()[0].level_id == "B"
        assert engine.get_sync_status().last_error is not None

    @pytest.mark.asyncio
    async def test_progress_failure_with_cached_content_records_sync_time(self, engine, cache, clock, remote):
        remote.query_error = NetworkError("backend down")

        result = await engine.sync(remote, "tok")

        assert result.progress_synced is False
        assert [e.kind for e in result.errors] == [ErrorKind.PROGRESS]
        assert cache.levels_meta_count() == 3
        assert engine.get_sync_status().last_sync_time == clock.now

    @pytest.mark.asyncio
    async def test_all_failures_accumulate(self, engine, host, remote):
        host.fail_paths.add("manifest.json")
        remote.query_error = NetworkError("backend down")

        result = await engine.sync(remote, "tok")

        status = engine.get_sync_status()
        assert [e.kind for e in status.errors] == [ErrorKind.MANIFEST, ErrorKind.PROGRESS]
        assert " | " in status.last_error
        assert "backend down" in status.last_error
        assert status.last_sync_time == 0.0
        assert result.success is False

    @pytest.mark.asyncio
    async def test_errors_reset_on_next_cycle(self, engine, host, remote):
        host.fail_paths.add("manifest.json")
        await engine.sync(remote, "tok")
        host.fail_paths.clear()

        await engine.sync(remote, "tok", force=True)

        assert engine.get_sync_status().errors == ()

    @pytest.mark.asyncio
    async def test_error_records_are_capped(self, cache, queue, fetcher, host, clock, tmp_path):
        settings = SyncSettings(cache_dir=tmp_path, max_error_records=1)
        engine = SyncEngine(cache, queue, fetcher, settings=settings, clock=clock)
        host.fail_paths.add("manifest.json")
        remote = FakeRemoteClient()
        remote.query_error = NetworkError("backend down")

        await engine.sync(remote, "tok")

        errors = engine.get_sync_status().errors
        assert len(errors) == 1
        assert errors[0].kind == ErrorKind.PROGRESS

    @pytest.mark.asyncio
    async def test_forced_resync_is_idempotent(self, engine, cache, host):
        remote = FakeRemoteClient(snapshot_with_progress())
        await engine.sync(remote, "tok", force=True)
        progress = [lp.to_wire() for lp in cache.get_progress()]
        manifest = cache.get_manifest().to_wire()
        host.requests.clear()

        result = await engine.sync(remote, "tok", force=True)

        assert result.content_changed is False
        assert host.level_fetches() == []
        assert [lp.to_wire() for lp in cache.get_progress()] == progress
        assert cache.get_manifest().to_wire() == manifest


class TestThrottle:
    """Tests for throttling and its bypass conditions."""

    @pytest.mark.asyncio
    async def test_sync_within_window_is_skipped(self, engine, clock, remote):
        await engine.sync(remote, "tok")
        clock.advance(10)

        result = await engine.sync(remote, "tok")

        assert result.skipped is True
        assert remote.query_count == 1

    @pytest.mark.asyncio
    async def test_sync_after_window_runs(self, engine, clock, remote):
        await engine.sync(remote, "tok")
        clock.advance(301)

        result = await engine.sync(remote, "tok")

        assert result.skipped is False
        assert remote.query_count == 2

    @pytest.mark.asyncio
    async def test_force_bypasses_throttle(self, engine, clock, remote):
        await engine.sync(remote, "tok")
        clock.advance(1)

        result = await engine.sync(remote, "tok", force=True)

        assert result.skipped is False
        assert remote.query_count == 2

    @pytest.mark.asyncio
    async def test_cold_cache_bypasses_throttle(self, engine, host, clock, remote):
        """Test a device with no level metadata is never throttled."""
        host.fail_paths.add("manifest.json")
        await engine.sync(remote, "tok")
        assert engine.get_sync_status().last_sync_time == clock.now

        host.fail_paths.clear()
        clock.advance(1)
        result = await engine.sync(remote, "tok")

        assert result.skipped is False
        assert engine.get_sync_status().cached_level_count == 3

    @pytest.mark.asyncio
    async def test_content_sync_without_meta_never_throttled(self, engine, host, clock):
        """Test two content syncs inside the window both fetch while no meta is cached."""
        host.levels_meta = []
        await engine.sync_content_only()
        host.requests.clear()
        clock.advance(1)

        await engine.sync_content_only()

        assert host.paths()[0] == "manifest.json"
        assert "levels-meta.json" in host.paths()

    @pytest.mark.asyncio
    async def test_concurrent_sync_is_noop(self, engine, host, remote):
        host.delay = 0.02

        first, second = await asyncio.gather(
            engine.sync(remote, "tok"),
            engine.sync(remote, "tok"),
        )

        assert first.skipped is False
        assert second.skipped is True
        assert remote.query_count == 1


class TestContentOnlySync:
    """Tests for the token-less content sync."""

    @pytest.mark.asyncio
    async def test_fetches_content_without_backend(self, engine, cache):
        changed = await engine.sync_content_only()

        assert changed is True
        assert cache.levels_meta_count() == 3
        assert engine.get_sync_status().last_sync_time == 0.0

    @pytest.mark.asyncio
    async def test_throttled_after_success(self, engine, host, clock):
        await engine.sync_content_only()
        host.requests.clear()
        clock.advance(10)

        assert await engine.sync_content_only() is False
        assert host.requests == []

        assert await engine.sync_content_only(force=True) is False
        assert host.paths() == ["manifest.json"]

    @pytest.mark.asyncio
    async def test_failure_is_recorded_not_raised(self, engine, host):
        host.fail_paths.add("levels-meta.json")

        assert await engine.sync_content_only() is False

        errors = engine.get_sync_status().errors
        assert [e.kind for e in errors] == [ErrorKind.CONTENT]

    @pytest.mark.asyncio
    async def test_phase_while_running(self, engine, host):
        host.delay = 0.02
        task = asyncio.create_task(engine.sync_content_only())
        await asyncio.sleep(0.005)

        assert engine.phase == SyncPhase.CONTENT_SYNCING
        assert engine.get_sync_status().is_syncing is True

        await task
        assert engine.phase == SyncPhase.IDLE


class TestPeriodicSync:
    """Tests for the periodic timer."""

    @pytest.fixture
    def fast_engine(self, cache, queue, fetcher, clock, tmp_path):
        settings = SyncSettings(cache_dir=tmp_path, sync_interval=0.03)
        return SyncEngine(cache, queue, fetcher, settings=settings, clock=clock)

    @pytest.mark.asyncio
    async def test_syncs_immediately_and_on_each_tick(self, fast_engine, clock, remote):
        def token_getter():
            clock.advance(1000)
            return "tok"

        await fast_engine.start_periodic_sync(remote, token_getter)
        assert fast_engine.is_running
        await asyncio.sleep(0.1)
        fast_engine.stop_sync()
        await fast_engine.wait_idle()

        assert remote.query_count >= 2
        assert fast_engine.is_running is False

    @pytest.mark.asyncio
    async def test_ticks_without_token_are_skipped(self, fast_engine, remote):
        await fast_engine.start_periodic_sync(remote, lambda: None)
        await asyncio.sleep(0.08)

        assert remote.query_count == 0
        assert fast_engine.is_running

        fast_engine.stop_sync()
        assert fast_engine.is_running is False

    @pytest.mark.asyncio
    async def test_stop_leaves_inflight_sync_running(self, fast_engine, host, clock, remote):
        host.delay = 0.02

        await fast_engine.start_periodic_sync(remote, lambda: "tok")
        fast_engine.stop_sync()
        await fast_engine.wait_idle()

        assert remote.query_count == 1
        assert fast_engine.get_sync_status().last_sync_time == clock.now

    @pytest.mark.asyncio
    async def test_failing_token_getter_keeps_timer_alive(self, fast_engine, clock, remote):
        calls = []

        def token_getter():
            calls.append(None)
            clock.advance(1000)
            if len(calls) <= 2:
                raise RuntimeError("secure storage locked")
            return "tok"

        await fast_engine.start_periodic_sync(remote, token_getter)
        await asyncio.sleep(0.15)

        assert fast_engine.is_running
        assert len(calls) >= 3
        assert remote.query_count >= 1

        fast_engine.stop_sync()
        await fast_engine.wait_idle()

    @pytest.mark.asyncio
    async def test_restart_replaces_timer(self, fast_engine, remote):
        await fast_engine.start_periodic_sync(remote, lambda: None)
        first_timer = fast_engine._timer_task

        await fast_engine.start_periodic_sync(remote, lambda: None)
        await asyncio.sleep(0.01)

        assert first_timer.cancelled()
        assert fast_engine.is_running
        fast_engine.stop_sync()


class TestConnectivityRestored:
    """Tests for the forced sync when the device comes back online."""

    @pytest.mark.asyncio
    async def test_forces_sync_inside_throttle_window(self, engine, clock, remote):
        await engine.sync(remote, "tok")
        clock.advance(10)

        result = await engine.on_connectivity_restored(remote, token="tok")

        assert result is not None
        assert result.skipped is False
        assert remote.query_count == 2

    @pytest.mark.asyncio
    async def test_uses_periodic_client_and_token_getter(self, engine, remote):
        await engine.start_periodic_sync(remote, lambda: "tok")
        await engine.wait_idle()

        result = await engine.on_connectivity_restored()

        assert result.skipped is False
        assert remote.tokens == ["tok", "tok"]

    @pytest.mark.asyncio
    async def test_no_token_skips(self, engine, remote):
        await engine.start_periodic_sync(remote, lambda: None)

        assert await engine.on_connectivity_restored() is None
        assert remote.query_count == 0

    @pytest.mark.asyncio
    async def test_no_client_skips(self, engine):
        assert await engine.on_connectivity_restored(token="tok") is None


class TestLocalWrites:
    """Tests for attempts recorded while offline."""

    @pytest.mark.asyncio
    async def test_attempt_is_queued_and_applied(self, engine, cache):
        await engine.sync_content_only()

        mutation = engine.record_level_attempt("A", "easy", 75)

        assert engine.get_sync_status().queue_length == 1
        assert mutation.payload == {"levelId": "A", "difficultyName": "easy", "score": 75}
        progress = cache.get_progress()[0]
        assert progress.difficulty("easy").passed is True
        assert progress.is_completed is True

    @pytest.mark.asyncio
    async def test_attempt_survives_sync_and_is_sent(self, engine, cache, remote):
        await engine.sync_content_only()
        mutation = engine.record_level_attempt("A", "easy", 75)

        result = await engine.sync(remote, "tok", force=True)

        assert [m.id for m in remote.submitted] == [mutation.id]
        assert result.drain.sent == 1
        assert engine.get_sync_status().queue_length == 0
        assert cache.get_progress()[0].difficulty("easy").high_score == 75

    @pytest.mark.asyncio
    async def test_drain_failure_does_not_block_cycle(self, engine, remote):
        mutation = engine.record_level_attempt("A", "easy", 75)
        remote.mutation_errors[mutation.id] = NetworkError("offline")

        result = await engine.sync(remote, "tok")

        assert result.progress_synced is True
        assert result.content_changed is True
        assert [e.kind for e in result.errors] == [ErrorKind.QUEUE_DRAIN]
        assert engine.get_sync_status().queue_length == 1

    @pytest.mark.asyncio
    async def test_level_views_from_cache(self, engine):
        await engine.sync_content_only()

        states = [view.state for view in engine.level_views()]
        assert states == [LevelState.UNLOCKED, LevelState.LOCKED, LevelState.LOCKED]

        engine.record_level_attempt("A", "easy", 90)

        states = [view.state for view in engine.level_views()]
        assert states == [LevelState.COMPLETED, LevelState.UNLOCKED, LevelState.LOCKED]

    @pytest.mark.asyncio
    async def test_clear_local_state(self, engine, remote):
        await engine.sync(remote, "tok")
        engine.record_level_attempt("A", "easy", 10)

        engine.clear_local_state()

        status = engine.get_sync_status()
        assert status.cached_level_count == 0
        assert status.queue_length == 0
        assert status.last_sync_time == 0.0
        assert engine.level_views() == []


class TestFactory:
    """Tests for engine construction helpers."""

    def test_create_sync_engine_uses_settings(self, tmp_path):
        settings = SyncSettings(cache_dir=tmp_path / "cache", max_queue_size=7)

        engine = create_sync_engine(settings)

        assert (tmp_path / "cache" / "playsync.db").exists()
        assert engine.queue.max_size == 7
        assert engine.get_sync_status().cached_level_count == 0

    @pytest.mark.asyncio
    async def test_sync_session_closes(self, tmp_path):
        settings = SyncSettings(cache_dir=tmp_path)

        async with sync_session(settings) as engine:
            assert engine.get_sync_status().queue_length == 0

        assert engine.is_running is False
