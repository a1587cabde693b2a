"""
Background work queue using SQLite.

Stores typed tasks (statement promotion, contradiction checks, note
indexing) for the worker pool. Enqueue never fails visibly: losing a
background hint must not break the foreground operation that produced it.

Dequeue is atomic: a task transitions from 'pending' to 'processing' inside
a single IMMEDIATE transaction, so two concurrent workers never claim the
same task. Tasks whose attempts reach max_attempts are never claimed again;
fail_task() moves them to 'failed' (dead letter) rather than deleting them,
preserving the error for diagnosis.

Execution is at-least-once. Tasks orphaned in 'processing' by a crash are
reset by recover_stale_tasks() at startup, so handlers must be idempotent.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .store import Store, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

_TASK_COLUMNS = (
    "id, task_type, payload, priority, status, attempts, max_attempts, "
    "error, created_at, updated_at"
)


@dataclass
class QueueTask:
    """A queued work item."""
    id: int
    task_type: str
    payload: str
    priority: int
    status: str
    attempts: int
    max_attempts: int
    error: str
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row) -> "QueueTask":
        return cls(
            id=row["id"],
            task_type=row["task_type"],
            payload=row["payload"],
            priority=row["priority"],
            status=row["status"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            error=row["error"] or "",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class TaskQueue:
    """
    Prioritized, persisted task queue on the shared store.

    Higher priority is claimed first; equal priority is FIFO by insertion.
    """

    def __init__(self, store: Store, *, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        """
        Args:
            store: Shared SQLite store
            max_attempts: Attempt budget given to newly enqueued tasks
        """
        self._store = store
        self._max_attempts = max_attempts

    def enqueue(
        self,
        task_type: str,
        payload: str = "",
        priority: int = 0,
        *,
        max_attempts: Optional[int] = None,
    ) -> Optional[int]:
        """
        Append a pending task.

        Storage errors are logged, not raised. Returns the task id, or
        None if the task could not be stored.
        """
        now = utc_now()
        attempts_budget = max_attempts if max_attempts is not None else self._max_attempts
        try:
            cursor = self._store.execute("""
                INSERT INTO processing_queue
                    (task_type, payload, priority, status, attempts,
                     max_attempts, created_at, updated_at)
                VALUES (?, ?, ?, 'pending', 0, ?, ?, ?)
            """, (task_type, payload, priority, attempts_budget, now, now))
        except Exception as e:
            logger.warning("Enqueue %s failed (task dropped): %s", task_type, e)
            return None
        return cursor.lastrowid

    def dequeue(self, task_type: str) -> Optional[QueueTask]:
        """
        Atomically claim the best pending task of the given type.

        Selection order: priority DESC, then id ASC. Only tasks with
        attempts < max_attempts are eligible. The claimed task comes back
        with status 'processing' and its attempt counter already
        incremented. Returns None when nothing is claimable.
        """
        now = utc_now()
        with self._store.transaction() as conn:
            row = conn.execute(f"""
                SELECT {_TASK_COLUMNS}
                FROM processing_queue
                WHERE task_type = ? AND status = 'pending'
                  AND attempts < max_attempts
                ORDER BY priority DESC, id ASC
                LIMIT 1
            """, (task_type,)).fetchone()
            if row is None:
                return None

            conn.execute("""
                UPDATE processing_queue
                SET status = 'processing', attempts = attempts + 1, updated_at = ?
                WHERE id = ?
            """, (now, row["id"]))

        task = QueueTask.from_row(row)
        task.status = "processing"
        task.attempts += 1
        task.updated_at = now
        return task

    def complete_task(self, task_id: int) -> None:
        """Mark a task completed (terminal)."""
        self._store.execute("""
            UPDATE processing_queue
            SET status = 'completed', updated_at = ?
            WHERE id = ?
        """, (utc_now(), task_id))

    def fail_task(self, task_id: int, error: Optional[str] = None) -> str:
        """Record a failed attempt.

        The task returns to 'pending' while attempts remain, otherwise it
        becomes terminally 'failed'. The error message is stored either
        way. Returns the new status ('' if the task doesn't exist).
        """
        with self._store.transaction() as conn:
            row = conn.execute(
                "SELECT attempts, max_attempts FROM processing_queue WHERE id = ?",
                (task_id,),
            ).fetchone()
            if row is None:
                return ""
            attempts, max_attempts = row["attempts"], row["max_attempts"]
            new_status = "pending" if attempts < max_attempts else "failed"
            conn.execute("""
                UPDATE processing_queue
                SET status = ?, error = ?, updated_at = ?
                WHERE id = ?
            """, (new_status, error or "", utc_now(), task_id))

        if new_status == "failed":
            logger.warning(
                "Task %d abandoned after %d attempts: %s",
                task_id, attempts, error or "unknown",
            )
        else:
            logger.info(
                "Task %d failed (attempt %d/%d), will retry: %s",
                task_id, attempts, max_attempts, error or "unknown",
            )
        return new_status

    def recover_stale_tasks(self) -> int:
        """Reset every task left in 'processing' back to 'pending'.

        Run once at startup, before any worker starts: anything still
        processing at that point was orphaned by a crashed process.

        Returns count of recovered tasks.
        """
        try:
            cursor = self._store.execute("""
                UPDATE processing_queue
                SET status = 'pending', updated_at = ?
                WHERE status = 'processing'
            """, (utc_now(),))
        except Exception as e:
            logger.warning("Failed to recover stale tasks: %s", e)
            return 0
        recovered = cursor.rowcount
        if recovered:
            logger.info("Recovered %d stale tasks", recovered)
        return recovered

    def get_task(self, task_id: int) -> Optional[QueueTask]:
        row = self._store.fetchone(
            f"SELECT {_TASK_COLUMNS} FROM processing_queue WHERE id = ?",
            (task_id,),
        )
        return QueueTask.from_row(row) if row else None

    def processing_tasks(self) -> list[QueueTask]:
        """All tasks currently claimed by a worker."""
        rows = self._store.fetchall(f"""
            SELECT {_TASK_COLUMNS} FROM processing_queue
            WHERE status = 'processing'
            ORDER BY id ASC
        """)
        return [QueueTask.from_row(r) for r in rows]

    def count(self, task_type: Optional[str] = None) -> int:
        """Count of pending tasks (excludes processing, completed and failed)."""
        if task_type is None:
            row = self._store.fetchone(
                "SELECT COUNT(*) FROM processing_queue WHERE status = 'pending'"
            )
        else:
            row = self._store.fetchone(
                "SELECT COUNT(*) FROM processing_queue "
                "WHERE status = 'pending' AND task_type = ?",
                (task_type,),
            )
        return row[0]

    def stats(self) -> dict:
        """Queue statistics: counts by status plus open work by type."""
        by_status = {
            row["status"]: row["cnt"]
            for row in self._store.fetchall("""
                SELECT status, COUNT(*) AS cnt
                FROM processing_queue
                GROUP BY status
            """)
        }
        by_type = {
            row["task_type"]: row["cnt"]
            for row in self._store.fetchall("""
                SELECT task_type, COUNT(*) AS cnt
                FROM processing_queue
                WHERE status IN ('pending', 'processing')
                GROUP BY task_type
                ORDER BY cnt DESC
            """)
        }
        return {
            "pending": by_status.get("pending", 0),
            "processing": by_status.get("processing", 0),
            "completed": by_status.get("completed", 0),
            "failed": by_status.get("failed", 0),
            "by_type": by_type,
        }

    def list_failed(self) -> list[QueueTask]:
        """Tasks in failed (dead letter) status, oldest first."""
        rows = self._store.fetchall(f"""
            SELECT {_TASK_COLUMNS} FROM processing_queue
            WHERE status = 'failed'
            ORDER BY id ASC
        """)
        return [QueueTask.from_row(r) for r in rows]

    def retry_failed(self) -> int:
        """Reset all failed tasks back to pending with a fresh attempt budget.

        Returns count of tasks moved back to pending.
        """
        cursor = self._store.execute("""
            UPDATE processing_queue
            SET status = 'pending', attempts = 0, error = '', updated_at = ?
            WHERE status = 'failed'
        """, (utc_now(),))
        count = cursor.rowcount
        if count:
            logger.info("Reset %d failed tasks back to pending", count)
        return count

    def purge_completed(self) -> int:
        """Delete completed tasks. Returns count removed."""
        cursor = self._store.execute(
            "DELETE FROM processing_queue WHERE status = 'completed'"
        )
        return cursor.rowcount
