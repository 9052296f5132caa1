"""
Remote progress client.

The sync engine only depends on the ``RemoteClient`` interface: one
idempotent authenticated query returning the progress/subscription snapshot,
and one call per queued mutation. ``HttpRemoteClient`` implements it over the
hosted function backend's HTTP API.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import httpx
from pydantic import ValidationError

from .models import (
    AuthenticationError,
    NetworkError,
    PendingMutation,
    RemoteRejectedError,
    SyncError,
    SyncSnapshot,
)

logger = logging.getLogger(__name__)

SYNC_DATA_PATH = "levels:getSyncData"


# =============================================================================
# Query Descriptors
# =============================================================================

@dataclass(frozen=True)
class QueryDisabled:
    """A query that must not be sent, e.g. because nobody is logged in."""
    reason: str = "no session token"


@dataclass(frozen=True)
class QueryRequest:
    path: str
    args: dict = field(default_factory=dict)


RemoteQuery = Union[QueryDisabled, QueryRequest]


def sync_data_query(token: Optional[str]) -> RemoteQuery:
    """Build the progress/subscription query for a (possibly absent) token."""
    if not token:
        return QueryDisabled()
    return QueryRequest(path=SYNC_DATA_PATH, args={"token": token})


# =============================================================================
# Client Interface
# =============================================================================

class RemoteClient(ABC):
    """Authenticated backend used for progress reads and mutation replay."""

    @abstractmethod
    async def get_sync_data(self, token: str) -> SyncSnapshot:
        """Return the authoritative progress and subscription snapshot."""

    @abstractmethod
    async def submit_mutation(self, mutation: PendingMutation, token: str) -> Any:
        """Apply one queued mutation. Must be safe to resend."""

    async def close(self) -> None:
        pass


# =============================================================================
# HTTP Implementation
# =============================================================================

class HttpRemoteClient(RemoteClient):
    """Client for the backend's ``/api/query`` and ``/api/mutation`` endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        base_retry_delay: float = 1.0,
        max_retry_delay: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_retry_delay = base_retry_delay
        self.max_retry_delay = max_retry_delay
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        if self._owns_client and self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def _calculate_backoff(self, attempt: int) -> float:
        """Calculate exponential backoff delay."""
        delay = self.base_retry_delay * (2 ** attempt)
        # Add jitter (0-25% of delay)
        jitter = delay * 0.25 * random.random()
        return min(delay + jitter, self.max_retry_delay)

    @staticmethod
    def _rejection(message: str) -> RemoteRejectedError:
        lowered = message.lower()
        if "session" in lowered and ("invalid" in lowered or "expired" in lowered):
            return AuthenticationError(message)
        return RemoteRejectedError(message)

    async def _call(self, endpoint: str, path: str, args: dict) -> Any:
        """POST a function call, retrying transport and server errors."""
        client = await self._get_http_client()
        url = f"{self.base_url}/api/{endpoint}"
        body = {"path": path, "args": args, "format": "json"}

        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                response = await client.post(url, json=body)

                if response.status_code == 429 or response.status_code >= 500:
                    raise NetworkError(f"{path}: server returned {response.status_code}")

                try:
                    data = response.json()
                except ValueError:
                    data = None

                if not isinstance(data, dict):
                    if response.is_success:
                        raise NetworkError(f"{path}: invalid JSON response")
                    if response.status_code in (401, 403):
                        raise AuthenticationError(f"{path}: HTTP {response.status_code}")
                    raise RemoteRejectedError(f"{path}: HTTP {response.status_code}")

                if response.is_success and data.get("status") == "success":
                    return data.get("value")
                raise self._rejection(
                    data.get("errorMessage") or f"{path} failed: HTTP {response.status_code}"
                )

            except RemoteRejectedError:
                raise

            except NetworkError as e:
                last_exception = e

            except httpx.RequestError as e:
                last_exception = NetworkError(f"{path}: {e}")

            if attempt < self.max_retries - 1:
                wait_time = self._calculate_backoff(attempt)
                logger.warning(f"{last_exception}, retry in {wait_time:.1f}s")
                await asyncio.sleep(wait_time)

        raise last_exception or SyncError("Max retries exceeded")

    async def run_query(self, query: RemoteQuery) -> Optional[Any]:
        """Run a query descriptor. Disabled queries return None without I/O."""
        if isinstance(query, QueryDisabled):
            logger.debug(f"Query skipped: {query.reason}")
            return None
        return await self._call("query", query.path, query.args)

    async def get_sync_data(self, token: str) -> SyncSnapshot:
        value = await self._call("query", SYNC_DATA_PATH, {"token": token})
        try:
            return SyncSnapshot.model_validate(value or {})
        except ValidationError as e:
            raise SyncError(f"Malformed sync data: {e}") from e

    async def submit_mutation(self, mutation: PendingMutation, token: str) -> Any:
        args = {**mutation.payload, "token": token}
        return await self._call("mutation", mutation.kind.rpc_path, args)
