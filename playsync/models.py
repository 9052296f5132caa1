"""
Data models for the playsync client.

Wire models (manifest, level metadata, progress, subscription) are pydantic
models that accept the camelCase JSON served by the content host and the
RPC backend. Local bookkeeping records (queued mutations, status, errors)
are plain dataclasses.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# =============================================================================
# Wire Models
# =============================================================================

class WireModel(BaseModel):
    """Base for JSON documents exchanged with the content host and backend."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class Manifest(WireModel):
    """Top-level index of content versions per level."""
    published_at: int = 0
    level_versions: dict[str, int] = Field(default_factory=dict)

    @classmethod
    def empty(cls) -> "Manifest":
        return cls()

    @property
    def is_empty(self) -> bool:
        return self.published_at == 0 and not self.level_versions


class DifficultyMeta(WireModel):
    name: str
    display_name: str = ""
    required_score: float = 0
    order: int = 0


class LevelMeta(WireModel):
    """Lightweight descriptor needed to render a level list."""
    id: str = Field(alias="_id")
    level_number: int = 0
    name: str = ""
    description: Optional[str] = None
    is_enabled: bool = True
    difficulties: list[DifficultyMeta] = Field(default_factory=list)
    questions_version: int = 0

    def required_score(self, difficulty_name: str) -> Optional[float]:
        for difficulty in self.difficulties:
            if difficulty.name == difficulty_name:
                return difficulty.required_score
        return None


class DifficultyProgress(WireModel):
    difficulty_name: str
    high_score: float = 0
    passed: bool = False
    attempts: int = 0


class LevelProgress(WireModel):
    """Per-level completion state for the current user."""
    level_id: str
    difficulty_progress: list[DifficultyProgress] = Field(default_factory=list)
    is_completed: bool = False
    completed_at: Optional[int] = None
    updated_at: Optional[int] = None

    def difficulty(self, name: str) -> Optional[DifficultyProgress]:
        for dp in self.difficulty_progress:
            if dp.difficulty_name == name:
                return dp
        return None


class SubscriptionSnapshot(WireModel):
    """Account entitlement state. Read-through cache only."""
    is_active: bool = False
    activated_till: int = 0
    subscription_id: Optional[str] = None
    plan_id: Optional[str] = None

    @classmethod
    def inactive(cls) -> "SubscriptionSnapshot":
        return cls()


class SyncSnapshot(WireModel):
    """Authoritative progress and subscription returned by the backend."""
    progress: list[LevelProgress] = Field(default_factory=list)
    subscription: SubscriptionSnapshot = Field(default_factory=SubscriptionSnapshot)


# =============================================================================
# Offline Mutations
# =============================================================================

class MutationKind(Enum):
    """Kinds of state change that can be queued while offline."""
    LEVEL_ATTEMPT = "level_attempt"

    @property
    def rpc_path(self) -> str:
        return MUTATION_RPC_PATHS[self]


MUTATION_RPC_PATHS = {
    MutationKind.LEVEL_ATTEMPT: "levels:submitLevelAttempt",
}


@dataclass
class PendingMutation:
    """A state change not yet acknowledged by the backend."""
    kind: MutationKind
    payload: dict
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = 0.0
    attempts: int = 0
    rejections: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "payload": self.payload,
            "created_at": self.created_at,
            "attempts": self.attempts,
            "rejections": self.rejections,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "PendingMutation":
        """Create from dictionary."""
        return cls(
            id=d["id"],
            kind=MutationKind(d["kind"]),
            payload=d["payload"],
            created_at=d.get("created_at", 0.0),
            attempts=d.get("attempts", 0),
            rejections=d.get("rejections", 0),
            last_error=d.get("last_error"),
        )


@dataclass
class DrainResult:
    """Outcome of replaying the offline queue."""
    sent: int = 0
    dropped: int = 0
    remaining: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


# =============================================================================
# Sync Status
# =============================================================================

class SyncPhase(Enum):
    IDLE = "idle"
    CONTENT_SYNCING = "content_syncing"
    FULL_SYNCING = "full_syncing"


class ErrorKind(Enum):
    MANIFEST = "manifest"
    CONTENT = "content"
    PROGRESS = "progress"
    QUEUE_DRAIN = "queue_drain"


@dataclass(frozen=True)
class SyncErrorRecord:
    kind: ErrorKind
    message: str
    timestamp: float

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


@dataclass(frozen=True)
class SyncStatus:
    """Read-only view of sync state for UI display."""
    last_sync_time: float
    cached_level_count: int
    queue_length: int
    is_syncing: bool
    content_synced: bool
    phase: SyncPhase = SyncPhase.IDLE
    errors: tuple[SyncErrorRecord, ...] = ()
    dropped_mutations: int = 0

    @property
    def last_error(self) -> Optional[str]:
        if not self.errors:
            return None
        return " | ".join(record.message for record in self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_sync_time": self.last_sync_time,
            "cached_level_count": self.cached_level_count,
            "queue_length": self.queue_length,
            "is_syncing": self.is_syncing,
            "content_synced": self.content_synced,
            "phase": self.phase.value,
            "last_error": self.last_error,
            "errors": [
                {"kind": r.kind.value, "message": r.message, "timestamp": r.timestamp}
                for r in self.errors
            ],
            "dropped_mutations": self.dropped_mutations,
        }


@dataclass
class SyncResult:
    """Result of a sync cycle."""
    skipped: bool = False
    content_changed: bool = False
    progress_synced: bool = False
    drain: Optional[DrainResult] = None
    errors: list[SyncErrorRecord] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return not self.skipped and not self.errors


# =============================================================================
# Exceptions
# =============================================================================

class SyncError(Exception):
    """Base exception for sync operations."""
    pass


class NetworkError(SyncError):
    """Transport failure or non-2xx response."""
    pass


class ManifestFetchError(NetworkError):
    """The content manifest could not be fetched."""
    pass


class ContentFetchError(NetworkError):
    """Level metadata or a level payload could not be fetched."""
    def __init__(self, message: str, level_id: Optional[str] = None):
        super().__init__(message)
        self.level_id = level_id


class RemoteRejectedError(SyncError):
    """The backend understood the call and refused it."""
    pass


class AuthenticationError(RemoteRejectedError):
    """Session token is missing, invalid or expired."""
    pass


class QueueFullError(SyncError):
    """Offline queue is at capacity and eviction is disabled."""
    pass
