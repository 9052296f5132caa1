"""
Sync engine.

Coordinates the offline queue, content fetcher, remote progress client and
local cache into scheduled and on-demand sync cycles. A full cycle:

1. drain the offline mutation queue
2. fetch the manifest and stale content from the static host
3. fetch authoritative progress/subscription from the backend
4. merge fetched progress into cached progress
5. record the sync timestamp

Content and progress are independent failure domains. Nothing is raised to
the caller; failures are kept as ``SyncErrorRecord``s and surfaced through
``get_sync_status()``.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional

from .cache import LocalCache
from .config import SyncSettings, get_settings
from .content import ContentFetcher
from .levels import LevelView, build_level_views
from .merge import apply_attempt, merge_progress
from .models import (
    ErrorKind,
    ManifestFetchError,
    MutationKind,
    PendingMutation,
    SyncErrorRecord,
    SyncPhase,
    SyncResult,
    SyncStatus,
)
from .queue import OfflineQueue
from .remote import QueryDisabled, RemoteClient, sync_data_query

logger = logging.getLogger(__name__)

TokenGetter = Callable[[], Optional[str]]


def _describe(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class SyncEngine:
    """Owns sync scheduling, throttling and in-flight state for one session."""

    def __init__(
        self,
        cache: LocalCache,
        queue: OfflineQueue,
        fetcher: ContentFetcher,
        settings: Optional[SyncSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.queue = queue
        self.fetcher = fetcher
        self.settings = settings or get_settings()
        self._clock = clock

        self._is_syncing = False
        self._is_content_syncing = False
        self._errors: list[SyncErrorRecord] = []
        self._last_sync_time = cache.get_last_sync_time()
        self._last_content_sync_time = cache.get_last_content_sync_time()

        self._remote_client: Optional[RemoteClient] = None
        self._token_getter: Optional[TokenGetter] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()

    # === Status ===

    @property
    def phase(self) -> SyncPhase:
        if self._is_syncing:
            return SyncPhase.FULL_SYNCING
        if self._is_content_syncing:
            return SyncPhase.CONTENT_SYNCING
        return SyncPhase.IDLE

    @property
    def is_running(self) -> bool:
        """Whether the periodic timer is armed."""
        return self._timer_task is not None and not self._timer_task.done()

    def get_sync_status(self) -> SyncStatus:
        """Current sync state for UI display. Performs no I/O."""
        cached_levels = self.cache.levels_meta_count()
        return SyncStatus(
            last_sync_time=self._last_sync_time,
            cached_level_count=cached_levels,
            queue_length=self.queue.length(),
            is_syncing=self._is_syncing or self._is_content_syncing,
            content_synced=cached_levels > 0,
            phase=self.phase,
            errors=tuple(self._errors),
            dropped_mutations=self.queue.dropped_count,
        )

    def _record_error(self, kind: ErrorKind, message: str) -> SyncErrorRecord:
        record = SyncErrorRecord(kind=kind, message=message, timestamp=self._clock())
        self._errors.append(record)
        overflow = len(self._errors) - self.settings.max_error_records
        if overflow > 0:
            del self._errors[:overflow]
        return record

    def _is_throttled(self, last_time: float, now: float, force: bool) -> bool:
        if force:
            return False
        # A cold cache must always be allowed to get its first content
        if self.cache.levels_meta_count() == 0:
            return False
        return 0 <= now - last_time < self.settings.throttle_interval

    def _mark_content_synced(self, now: float) -> None:
        self.cache.set_last_content_sync_time(now)
        self._last_content_sync_time = now

    def _mark_synced(self, now: float) -> None:
        self.cache.set_last_sync_time(now)
        self._last_sync_time = now

    # === Content-only sync ===

    async def sync_content_only(self, force: bool = False) -> bool:
        """
        Sync public content from the static host. Needs no token.

        Returns:
            True if any content changed. False when skipped or failed.
        """
        if self._is_content_syncing:
            return False

        now = self._clock()
        if self._is_throttled(self._last_content_sync_time, now, force):
            logger.debug("Content sync throttled")
            return False

        self._is_content_syncing = True
        if not self._is_syncing:
            self._errors = []
        logger.info("Starting content-only sync...")

        try:
            changed = await self.fetcher.fetch_content(now)
            self._mark_content_synced(now)
            if changed:
                logger.info("Content-only sync complete")
            return changed
        except ManifestFetchError as e:
            logger.error(f"Content-only sync failed: {e}")
            self._record_error(ErrorKind.MANIFEST, _describe(e))
            return False
        except Exception as e:
            logger.error(f"Content-only sync failed: {e}")
            self._record_error(ErrorKind.CONTENT, _describe(e))
            return False
        finally:
            self._is_content_syncing = False

    # === Full sync ===

    async def sync(
        self,
        remote_client: RemoteClient,
        token: str,
        force: bool = False,
    ) -> SyncResult:
        """Run a full sync cycle. Never raises."""
        if self._is_syncing:
            return SyncResult(skipped=True)

        now = self._clock()
        if self._is_throttled(self._last_sync_time, now, force):
            logger.debug("Full sync throttled")
            return SyncResult(skipped=True)

        self._is_syncing = True
        self._errors = []
        result = SyncResult()
        started = time.monotonic()
        logger.info("Starting full sync...")

        try:
            # 1. Push local changes first so the fetch below reflects them
            try:
                result.drain = await self.queue.drain(remote_client, token)
                if result.drain.error:
                    self._record_error(ErrorKind.QUEUE_DRAIN, result.drain.error)
            except Exception as e:
                logger.error(f"Failed to drain queue: {e}")
                self._record_error(ErrorKind.QUEUE_DRAIN, _describe(e))

            # 2. Content from the static host
            try:
                result.content_changed = await self.fetcher.fetch_content(now)
                self._mark_content_synced(now)
            except ManifestFetchError as e:
                logger.error(f"Content sync failed: {e}")
                self._record_error(ErrorKind.MANIFEST, _describe(e))
            except Exception as e:
                logger.error(f"Content sync failed: {e}")
                self._record_error(ErrorKind.CONTENT, _describe(e))

            # 3. Progress and subscription from the backend
            try:
                snapshot = await remote_client.get_sync_data(token)
                merged = merge_progress(self.cache.get_progress(), snapshot.progress)
                self.cache.set_progress(merged)
                self.cache.set_subscription(snapshot.subscription)
                self._mark_synced(now)
                result.progress_synced = True
                logger.info(f"Progress synced for {len(merged)} level(s)")
            except Exception as e:
                self._record_error(ErrorKind.PROGRESS, _describe(e))
                if self.cache.levels_meta_count() > 0:
                    # Content is cached: record a partial sync
                    self._mark_synced(now)
                    logger.warning(f"Progress sync failed, but content is cached: {e}")
                else:
                    logger.error(f"Full sync failed: {e}")
        finally:
            self._is_syncing = False

        result.errors = list(self._errors)
        result.duration_seconds = time.monotonic() - started
        logger.info(
            f"Full sync finished in {result.duration_seconds:.2f}s "
            f"({len(result.errors)} error(s))"
        )
        return result

    # === Periodic sync ===

    def _spawn_sync(self, remote_client: RemoteClient, token: str) -> asyncio.Task:
        task = asyncio.create_task(self.sync(remote_client, token))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def start_periodic_sync(self, remote_client: RemoteClient, token_getter: TokenGetter) -> None:
        """
        Sync now (if a token is available) and then every ``sync_interval``.

        The token getter is called on every tick so rotated tokens are picked
        up; a tick with no token is skipped.
        """
        self.stop_sync()
        self._remote_client = remote_client
        self._token_getter = token_getter

        token = self._current_token()
        if token:
            self._spawn_sync(remote_client, token)

        self._timer_task = asyncio.create_task(self._timer_loop())
        logger.info(f"Periodic sync started (every {self.settings.sync_interval:.0f}s)")

    def _current_token(self) -> Optional[str]:
        if self._token_getter is None:
            return None
        try:
            return self._token_getter()
        except Exception as e:
            logger.error(f"Session token lookup failed: {e!r}")
            return None

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sync_interval)
            if self._remote_client is None or self._token_getter is None:
                return

            query = sync_data_query(self._current_token())
            if isinstance(query, QueryDisabled):
                logger.debug(f"Skipping periodic sync: {query.reason}")
                continue
            self._spawn_sync(self._remote_client, query.args["token"])

    async def on_connectivity_restored(
        self,
        remote_client: Optional[RemoteClient] = None,
        token: Optional[str] = None,
    ) -> Optional[SyncResult]:
        """
        Force a full sync after the device comes back online.

        Falls back to the periodic sync's client and token getter. Returns
        None when there is no client or no session token to sync with.
        """
        remote_client = remote_client or self._remote_client
        if remote_client is None:
            logger.debug("Connectivity restored, but no remote client is configured")
            return None

        query = sync_data_query(token or self._current_token())
        if isinstance(query, QueryDisabled):
            logger.debug(f"Connectivity restored, skipping sync: {query.reason}")
            return None

        logger.info("Connectivity restored, forcing full sync")
        return await self.sync(remote_client, query.args["token"], force=True)

    def stop_sync(self) -> None:
        """Disarm the timer. An in-flight sync is left to finish."""
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
            logger.info("Periodic sync stopped")
        self._remote_client = None
        self._token_getter = None

    async def wait_idle(self) -> None:
        """Wait for syncs spawned by the scheduler to finish."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def close(self) -> None:
        self.stop_sync()
        await self.wait_idle()
        await self.fetcher.close()
        logger.info("Sync engine closed")

    # === Local writes ===

    def record_level_attempt(
        self,
        level_id: str,
        difficulty_name: str,
        score: float,
    ) -> PendingMutation:
        """
        Queue a level attempt and apply it to cached progress right away.

        Works with no connectivity; the mutation is sent on the next drain.
        """
        now = self._clock()
        mutation = PendingMutation(
            kind=MutationKind.LEVEL_ATTEMPT,
            payload={"levelId": level_id, "difficultyName": difficulty_name, "score": score},
            created_at=now,
        )
        self.queue.enqueue(mutation)

        level_meta = next((m for m in self.cache.get_levels_meta() if m.id == level_id), None)
        progress = apply_attempt(
            self.cache.get_progress(),
            level_id,
            difficulty_name,
            score,
            now_ms=int(now * 1000),
            level_meta=level_meta,
        )
        self.cache.set_progress(progress)
        logger.debug(f"Recorded attempt on {level_id}/{difficulty_name}: {score}")
        return mutation

    def level_views(self) -> list[LevelView]:
        """Level list built from cached data only."""
        return build_level_views(
            self.cache.get_levels_meta(),
            self.cache.get_progress(),
            self.cache.get_subscription(),
            free_level_count=self.settings.free_level_count,
        )

    def clear_local_state(self) -> None:
        """Forget cached content, progress and pending mutations (logout)."""
        self.cache.clear_all()
        self.queue.clear()
        self._errors = []
        self._last_sync_time = 0.0
        self._last_content_sync_time = 0.0


# =============================================================================
# Convenience Functions
# =============================================================================

def create_sync_engine(
    settings: Optional[SyncSettings] = None,
    clock: Callable[[], float] = time.time,
) -> SyncEngine:
    """Build an engine with a SQLite cache and queue under ``settings.cache_dir``."""
    settings = settings or get_settings()
    db_path = settings.cache_db_path
    cache = LocalCache(db_path)
    queue = OfflineQueue(
        db_path,
        max_size=settings.max_queue_size,
        max_attempts=settings.max_mutation_attempts,
        clock=clock,
    )
    fetcher = ContentFetcher(
        cache,
        settings.content_base_url,
        batch_size=settings.content_batch_size,
        timeout=settings.request_timeout,
    )
    return SyncEngine(cache, queue, fetcher, settings=settings, clock=clock)


@asynccontextmanager
async def sync_session(settings: Optional[SyncSettings] = None):
    """
    Context manager for a sync session.

    Usage:
        async with sync_session() as engine:
            await engine.sync_content_only()
    """
    engine = create_sync_engine(settings)
    try:
        yield engine
    finally:
        await engine.close()
