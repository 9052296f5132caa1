"""
Manifest and content fetcher.

Downloads the versioned content manifest from the public static host and,
selectively, only the level payloads whose version advanced since the last
cache write (or that were never downloaded). Level payloads are fetched in
bounded parallel batches; one level failing does not stop the others.

The manifest is written to the cache last. If the process dies mid-fetch the
next run still sees the old manifest and recomputes the same stale set.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx
from pydantic import ValidationError

from .cache import LocalCache
from .models import ContentFetchError, LevelMeta, Manifest, ManifestFetchError, NetworkError

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5


@dataclass
class ContentReport:
    """What the last content fetch did."""
    meta_updated: bool = False
    stale: list[str] = field(default_factory=list)
    fetched: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    manifest_saved: bool = False

    @property
    def changed(self) -> bool:
        return self.meta_updated or bool(self.fetched)


def compute_stale_levels(
    manifest: Manifest,
    cached_manifest: Manifest,
    has_questions: Callable[[str], bool],
) -> list[str]:
    """
    Levels whose payload must be downloaded.

    A level is stale when the manifest version is ahead of the cached one,
    or when no payload is cached for it at all.
    """
    cached_versions = cached_manifest.level_versions
    stale = []
    for level_id, remote_version in manifest.level_versions.items():
        local_version = cached_versions.get(level_id, -1)
        if remote_version < local_version:
            logger.warning(
                f"Manifest version for level {level_id} went backwards "
                f"({local_version} -> {remote_version})"
            )
        if remote_version > local_version or not has_questions(level_id):
            stale.append(level_id)
    return stale


class ContentFetcher:
    """Fetches manifest, level metadata and stale level payloads."""

    def __init__(
        self,
        cache: LocalCache,
        base_url: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.batch_size = batch_size
        self.timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None
        self.last_report: Optional[ContentReport] = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(
                    max_keepalive_connections=self.batch_size,
                    max_connections=self.batch_size * 2,
                ),
            )
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._owns_client and self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def _get_json(self, path: str, now: float) -> Any:
        """GET a JSON document from the static host with a cache buster."""
        client = await self._get_http_client()
        url = f"{self.base_url}/{path}"
        try:
            response = await client.get(url, params={"t": int(now * 1000)})
        except httpx.RequestError as e:
            raise NetworkError(f"Request for {path} failed: {e}") from e

        if not response.is_success:
            raise NetworkError(f"{path} fetch failed: {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"{path} returned invalid JSON: {e}") from e

    async def fetch_manifest(self, now: float) -> Manifest:
        try:
            data = await self._get_json("manifest.json", now)
        except NetworkError as e:
            raise ManifestFetchError(f"Manifest fetch failed: {e}") from e
        try:
            return Manifest.model_validate(data)
        except ValidationError as e:
            raise ManifestFetchError(f"Malformed manifest: {e}") from e

    async def fetch_levels_meta(self, now: float) -> list[LevelMeta]:
        try:
            data = await self._get_json("levels-meta.json", now)
        except NetworkError as e:
            raise ContentFetchError(f"Meta fetch failed: {e}") from e
        if not isinstance(data, list):
            raise ContentFetchError("Meta fetch failed: expected a JSON array")
        try:
            return [LevelMeta.model_validate(item) for item in data]
        except ValidationError as e:
            raise ContentFetchError(f"Malformed level metadata: {e}") from e

    async def _fetch_level(self, level_id: str, now: float) -> bool:
        """Fetch and cache one level payload. Failures are logged, not raised."""
        try:
            payload = await self._get_json(f"questions/level_{level_id}.json", now)
            self.cache.set_questions(level_id, payload)
        except NetworkError as e:
            logger.warning(f"Failed to fetch questions for level {level_id}: {e}")
            return False
        except Exception as e:
            logger.error(f"Error caching questions for level {level_id}: {e!r}")
            return False
        return True

    async def fetch_content(self, now: float) -> bool:
        """
        Bring cached content up to date with the static host.

        Args:
            now: Current time in seconds, used for the cache-busting parameter.

        Returns:
            True if level metadata or any level payload was written.

        Raises:
            ManifestFetchError: the manifest could not be fetched.
            ContentFetchError: level metadata was needed but could not be fetched.
        """
        report = ContentReport()
        self.last_report = report

        # 1. Manifest
        manifest = await self.fetch_manifest(now)
        had_manifest = self.cache.has_manifest()
        cached_manifest = self.cache.get_manifest()

        # 2. Level metadata
        if (
            not had_manifest
            or manifest.published_at > cached_manifest.published_at
            or self.cache.levels_meta_count() == 0
        ):
            levels = await self.fetch_levels_meta(now)
            self.cache.set_levels_meta(levels)
            report.meta_updated = True

        # 3. Stale levels
        report.stale = compute_stale_levels(manifest, cached_manifest, self.cache.has_questions)
        logger.info(f"Found {len(report.stale)} stale level(s)")

        # 4. Payloads in bounded parallel batches
        for i in range(0, len(report.stale), self.batch_size):
            batch = report.stale[i:i + self.batch_size]
            results = await asyncio.gather(*(self._fetch_level(level_id, now) for level_id in batch))
            for level_id, ok in zip(batch, results):
                (report.fetched if ok else report.failed).append(level_id)

        # 5. Manifest last, keeping old versions for levels that failed
        if report.stale or report.meta_updated or not had_manifest:
            versions = dict(manifest.level_versions)
            for level_id in report.failed:
                if level_id in cached_manifest.level_versions:
                    versions[level_id] = cached_manifest.level_versions[level_id]
                else:
                    versions.pop(level_id, None)
            self.cache.set_manifest(manifest.model_copy(update={"level_versions": versions}))
            report.manifest_saved = True

        if report.failed:
            logger.warning(f"{len(report.failed)} level payload(s) failed: {', '.join(report.failed)}")

        return report.changed
