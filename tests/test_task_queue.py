"""
Tests for the SQLite task queue and the store underneath it.
"""

import threading

import pytest

from factbase.store import SCHEMA_VERSION, Store
from factbase.task_queue import TaskQueue


@pytest.fixture
def store(tmp_path):
    s = Store(tmp_path / "queue.db")
    yield s
    s.close()


@pytest.fixture
def queue(store):
    return TaskQueue(store, max_attempts=3)


class TestStore:

    def test_migrate_is_idempotent(self, store):
        assert store.migrate() == SCHEMA_VERSION
        assert store.migrate() == SCHEMA_VERSION
        version = store.fetchone("PRAGMA user_version")[0]
        assert version == SCHEMA_VERSION

    def test_reopen_keeps_data(self, tmp_path):
        path = tmp_path / "reopen.db"
        first = Store(path)
        TaskQueue(first).enqueue("promote", "x")
        first.close()

        second = Store(path)
        assert TaskQueue(second).count() == 1
        second.close()

    def test_transaction_rolls_back_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction() as conn:
                conn.execute(
                    "INSERT INTO processing_queue (task_type, created_at, updated_at) "
                    "VALUES ('t', 'now', 'now')"
                )
                raise RuntimeError("abort")
        assert store.fetchone("SELECT COUNT(*) FROM processing_queue")[0] == 0


class TestOrdering:

    def test_priority_then_fifo(self, queue):
        """Higher priority first; equal priority in insertion order."""
        low = queue.enqueue("promote", "low", 0)
        high1 = queue.enqueue("promote", "high1", 5)
        high2 = queue.enqueue("promote", "high2", 5)
        mid = queue.enqueue("promote", "mid", 1)

        claimed = [queue.dequeue("promote").id for _ in range(4)]
        assert claimed == [high1, high2, mid, low]
        assert queue.dequeue("promote") is None

    def test_dequeue_filters_by_type(self, queue):
        queue.enqueue("index_note", "1")
        assert queue.dequeue("promote") is None
        task = queue.dequeue("index_note")
        assert task.payload == "1"

    def test_claim_marks_processing_and_counts_attempt(self, queue):
        task_id = queue.enqueue("promote", "p")
        task = queue.dequeue("promote")
        assert task.status == "processing"
        assert task.attempts == 1

        stored = queue.get_task(task_id)
        assert stored.status == "processing"
        assert stored.attempts == 1
        assert queue.count() == 0

    def test_concurrent_claims_never_share_a_task(self, queue):
        for i in range(40):
            queue.enqueue("promote", str(i))
        claimed: list[int] = []
        lock = threading.Lock()

        def worker():
            while True:
                task = queue.dequeue("promote")
                if task is None:
                    return
                with lock:
                    claimed.append(task.id)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(claimed) == 40
        assert len(set(claimed)) == 40


class TestFailures:

    def test_failed_task_retries_until_max_attempts(self, queue):
        task_id = queue.enqueue("promote", "p")
        statuses = []
        claims = 0
        while True:
            task = queue.dequeue("promote")
            if task is None:
                break
            claims += 1
            statuses.append(queue.fail_task(task.id, f"boom {claims}"))

        assert claims == 3
        assert statuses == ["pending", "pending", "failed"]
        task = queue.get_task(task_id)
        assert task.status == "failed"
        assert task.error == "boom 3"

    def test_per_task_attempt_budget(self, queue):
        queue.enqueue("promote", "once", max_attempts=1)
        task = queue.dequeue("promote")
        assert queue.fail_task(task.id, "nope") == "failed"
        assert queue.dequeue("promote") is None

    def test_fail_unknown_task(self, queue):
        assert queue.fail_task(999, "missing") == ""

    def test_list_and_retry_failed(self, queue):
        queue.enqueue("promote", "p", max_attempts=1)
        queue.fail_task(queue.dequeue("promote").id, "bad")
        assert [t.payload for t in queue.list_failed()] == ["p"]

        assert queue.retry_failed() == 1
        task = queue.dequeue("promote")
        assert task is not None
        assert task.attempts == 1
        assert task.error == ""

    def test_complete_and_purge(self, queue):
        queue.enqueue("promote", "p")
        task = queue.dequeue("promote")
        queue.complete_task(task.id)
        assert queue.get_task(task.id).status == "completed"
        assert queue.dequeue("promote") is None
        assert queue.purge_completed() == 1
        assert queue.get_task(task.id) is None

    def test_enqueue_failure_returns_none(self, store):
        queue = TaskQueue(store)
        store.close()
        assert queue.enqueue("promote", "p") is None


class TestRecovery:

    def test_recover_stale_tasks(self, queue):
        queue.enqueue("promote", "a")
        queue.enqueue("index_note", "1")
        queue.dequeue("promote")
        queue.dequeue("index_note")
        assert len(queue.processing_tasks()) == 2

        assert queue.recover_stale_tasks() == 2
        assert queue.processing_tasks() == []
        task = queue.dequeue("promote")
        assert task.payload == "a"
        # Attempts carry over across recovery
        assert task.attempts == 2

    def test_stats(self, queue):
        queue.enqueue("promote", "a")
        queue.enqueue("promote", "b")
        queue.enqueue("index_note", "1")
        queue.complete_task(queue.dequeue("index_note").id)
        queue.dequeue("promote")

        stats = queue.stats()
        assert stats["pending"] == 1
        assert stats["processing"] == 1
        assert stats["completed"] == 1
        assert stats["failed"] == 0
        assert stats["by_type"] == {"promote": 2}
