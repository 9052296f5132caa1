"""
playsync - offline content and progress sync

Keeps game content (levels, question sets) and play progress consistent
between the remote source of truth and a local on-device cache.
"""

from .cache import LocalCache
from .config import SyncSettings, get_settings
from .content import ContentFetcher, ContentReport, compute_stale_levels
from .engine import SyncEngine, create_sync_engine, sync_session
from .levels import LevelState, LevelView, build_level_views
from .merge import apply_attempt, merge_progress
from .models import (
    # Wire models
    Manifest,
    LevelMeta,
    DifficultyMeta,
    LevelProgress,
    DifficultyProgress,
    SubscriptionSnapshot,
    SyncSnapshot,

    # Local records
    MutationKind,
    PendingMutation,
    DrainResult,
    SyncPhase,
    ErrorKind,
    SyncErrorRecord,
    SyncStatus,
    SyncResult,

    # Exceptions
    SyncError,
    NetworkError,
    ManifestFetchError,
    ContentFetchError,
    RemoteRejectedError,
    AuthenticationError,
    QueueFullError,
)
from .queue import OfflineQueue
from .remote import (
    HttpRemoteClient,
    QueryDisabled,
    QueryRequest,
    RemoteClient,
    RemoteQuery,
    sync_data_query,
)

__version__ = "0.1.0"
__all__ = [
    # Main classes
    "SyncEngine",
    "LocalCache",
    "OfflineQueue",
    "ContentFetcher",
    "RemoteClient",
    "HttpRemoteClient",

    # Configuration
    "SyncSettings",
    "get_settings",

    # Data models
    "Manifest",
    "LevelMeta",
    "DifficultyMeta",
    "LevelProgress",
    "DifficultyProgress",
    "SubscriptionSnapshot",
    "SyncSnapshot",
    "MutationKind",
    "PendingMutation",
    "DrainResult",
    "SyncPhase",
    "ErrorKind",
    "SyncErrorRecord",
    "SyncStatus",
    "SyncResult",
    "ContentReport",
    "LevelState",
    "LevelView",

    # Query descriptors
    "QueryDisabled",
    "QueryRequest",
    "RemoteQuery",
    "sync_data_query",

    # Exceptions
    "SyncError",
    "NetworkError",
    "ManifestFetchError",
    "ContentFetchError",
    "RemoteRejectedError",
    "AuthenticationError",
    "QueueFullError",

    # Functions
    "compute_stale_levels",
    "merge_progress",
    "apply_attempt",
    "build_level_views",
    "create_sync_engine",
    "sync_session",
]
