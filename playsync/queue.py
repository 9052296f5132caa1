"""
Offline mutation queue.

Ordered, durable list of progress-affecting operations that the backend has
not acknowledged yet. Mutations are replayed strictly in enqueue order and
each one is removed from disk as soon as the backend acknowledges it, so a
crash or connectivity loss mid-drain loses nothing and replays nothing that
was already confirmed.

The queue is bounded. When full, the oldest mutation is evicted and counted
in ``dropped_count`` so the UI can warn that some changes may be lost.
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from .models import (
    AuthenticationError,
    DrainResult,
    MutationKind,
    PendingMutation,
    QueueFullError,
    RemoteRejectedError,
)
from .storage import SQLiteStore

if TYPE_CHECKING:
    from .remote import RemoteClient

logger = logging.getLogger(__name__)

META_DROPPED = "dropped_count"


class OfflineQueue(SQLiteStore):
    """SQLite-backed FIFO of pending mutations."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS mutation_queue (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        kind TEXT NOT NULL,
        payload TEXT NOT NULL,
        created_at REAL NOT NULL,
        attempts INTEGER DEFAULT 0,
        rejections INTEGER DEFAULT 0,
        last_error TEXT
    );

    CREATE TABLE IF NOT EXISTS queue_metadata (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """

    def __init__(
        self,
        db_path: Path,
        max_size: int = 1000,
        max_attempts: int = 5,
        evict_oldest: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(db_path)
        self.max_size = max_size
        self.max_attempts = max_attempts
        self.evict_oldest = evict_oldest
        self._clock = clock
        self._draining = False

        with self._get_connection() as conn:
            self._length = conn.execute("SELECT COUNT(*) FROM mutation_queue").fetchone()[0]
            row = conn.execute(
                "SELECT value FROM queue_metadata WHERE key = ?", (META_DROPPED,)
            ).fetchone()
        self._dropped = int(row["value"]) if row else 0

    def __len__(self) -> int:
        return self._length

    def length(self) -> int:
        """Number of pending mutations. No I/O."""
        return self._length

    @property
    def dropped_count(self) -> int:
        """Mutations lost to eviction or repeated rejection since last reset."""
        return self._dropped

    @property
    def is_draining(self) -> bool:
        return self._draining

    # === Persistence helpers ===

    @staticmethod
    def _row_to_mutation(row) -> PendingMutation:
        return PendingMutation(
            id=row["id"],
            kind=MutationKind(row["kind"]),
            payload=json.loads(row["payload"]),
            created_at=row["created_at"],
            attempts=row["attempts"],
            rejections=row["rejections"],
            last_error=row["last_error"],
        )

    def _write_dropped(self, conn, value: int) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO queue_metadata (key, value, updated_at) VALUES (?, ?, ?)",
            (META_DROPPED, str(value), datetime.now(timezone.utc).isoformat()),
        )

    # === Queue operations ===

    def enqueue(self, mutation: PendingMutation) -> list[PendingMutation]:
        """
        Durably append a mutation.

        Returns:
            Mutations evicted to make room (oldest first); usually empty.

        Raises:
            QueueFullError: if the queue is full and eviction is disabled.
        """
        if not mutation.created_at:
            mutation.created_at = self._clock()

        overflow = self._length + 1 - self.max_size
        if overflow > 0 and not self.evict_oldest:
            raise QueueFullError(f"Offline queue is full ({self.max_size} pending mutations)")

        evicted: list[PendingMutation] = []
        with self._get_connection() as conn:
            if overflow > 0:
                rows = conn.execute(
                    "SELECT * FROM mutation_queue ORDER BY seq ASC LIMIT ?",
                    (overflow,),
                ).fetchall()
                evicted = [self._row_to_mutation(row) for row in rows]
                conn.executemany(
                    "DELETE FROM mutation_queue WHERE id = ?",
                    [(m.id,) for m in evicted],
                )
                self._write_dropped(conn, self._dropped + len(evicted))

            conn.execute(
                """
                INSERT INTO mutation_queue (id, kind, payload, created_at, attempts, rejections, last_error)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    mutation.id,
                    mutation.kind.value,
                    json.dumps(mutation.payload),
                    mutation.created_at,
                    mutation.attempts,
                    mutation.rejections,
                    mutation.last_error,
                ),
            )
            conn.commit()

        self._length += 1 - len(evicted)
        if evicted:
            self._dropped += len(evicted)
            logger.warning(
                f"Offline queue full, evicted {len(evicted)} oldest mutation(s); "
                f"{self._dropped} dropped in total"
            )
        logger.debug(f"Enqueued mutation {mutation.id} ({mutation.kind.value})")
        return evicted

    def peek(self) -> Optional[PendingMutation]:
        """Oldest pending mutation, or None when empty."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM mutation_queue ORDER BY seq ASC LIMIT 1"
            ).fetchone()
        return self._row_to_mutation(row) if row else None

    def items(self) -> list[PendingMutation]:
        """All pending mutations in enqueue order."""
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM mutation_queue ORDER BY seq ASC").fetchall()
        return [self._row_to_mutation(row) for row in rows]

    def remove(self, mutation_id: str) -> None:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM mutation_queue WHERE id = ?", (mutation_id,))
            conn.commit()
        self._length -= cursor.rowcount

    def _record_failure(self, mutation: PendingMutation, error: str, rejected: bool = False) -> int:
        """Persist a failed submission. Returns the mutation's rejection count."""
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE mutation_queue
                SET attempts = attempts + 1, rejections = rejections + ?, last_error = ?
                WHERE id = ?
                """,
                (int(rejected), error, mutation.id),
            )
            conn.commit()
        mutation.attempts += 1
        mutation.rejections += int(rejected)
        mutation.last_error = error
        return mutation.rejections

    def _drop(self, mutation: PendingMutation) -> None:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM mutation_queue WHERE id = ?", (mutation.id,))
            self._write_dropped(conn, self._dropped + cursor.rowcount)
            conn.commit()
        self._length -= cursor.rowcount
        self._dropped += cursor.rowcount

    def reset_dropped_count(self) -> None:
        with self._get_connection() as conn:
            self._write_dropped(conn, 0)
            conn.commit()
        self._dropped = 0

    def clear(self) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM mutation_queue")
            conn.commit()
        self._length = 0
        logger.info("Offline queue cleared")

    # === Drain ===

    async def drain(self, remote_client: "RemoteClient", token: str) -> DrainResult:
        """
        Replay pending mutations in order until one fails or the queue is empty.

        A failed mutation stays at the head of the queue together with
        everything behind it. A mutation the backend has rejected
        ``max_attempts`` times is dropped so it cannot block the queue forever.
        Transport failures and session rejections never count toward that limit.
        """
        if self._draining:
            logger.debug("Drain already in progress, skipping")
            return DrainResult(remaining=self._length)

        result = DrainResult()
        self._draining = True
        try:
            if self._length:
                logger.info(f"Draining {self._length} queued mutation(s)...")

            while True:
                mutation = self.peek()
                if mutation is None:
                    break

                try:
                    await remote_client.submit_mutation(mutation, token)
                except AuthenticationError as e:
                    # The session was refused, not the mutation
                    self._record_failure(mutation, str(e))
                    logger.warning(f"Drain stopped, session rejected: {e}")
                    result.error = str(e)
                    break
                except RemoteRejectedError as e:
                    rejections = self._record_failure(mutation, str(e), rejected=True)
                    if rejections >= self.max_attempts:
                        logger.error(
                            f"Dropping mutation {mutation.id} after {rejections} rejections: {e}"
                        )
                        self._drop(mutation)
                        result.dropped += 1
                        continue
                    logger.warning(f"Mutation {mutation.id} rejected ({rejections}/{self.max_attempts}): {e}")
                    result.error = str(e)
                    break
                except Exception as e:
                    self._record_failure(mutation, str(e))
                    logger.warning(f"Failed to submit mutation {mutation.id}: {e}")
                    result.error = str(e)
                    break

                self.remove(mutation.id)
                result.sent += 1
                logger.debug(f"Mutation {mutation.id} acknowledged")
        finally:
            self._draining = False

        result.remaining = self._length
        if result.sent or result.error:
            logger.info(
                f"Drain complete: {result.sent} sent, {result.dropped} dropped, "
                f"{result.remaining} remaining"
            )
        return result
