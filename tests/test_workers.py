"""
Tests for the worker pool: task dispatch, failure bookkeeping, shutdown.
"""

import threading
import time

import pytest

from factbase.store import Store
from factbase.task_queue import TaskQueue
from factbase.workers import WorkerPool


@pytest.fixture
def queue(tmp_path):
    store = Store(tmp_path / "workers.db")
    yield TaskQueue(store, max_attempts=3)
    store.close()


class TestDrain:

    def test_successful_tasks_complete(self, queue):
        seen = []
        pool = WorkerPool(queue, {"promote": lambda task: seen.append(task.payload)})
        ids = [queue.enqueue("promote", p) for p in ("a", "b", "c")]

        assert pool.drain() == 3
        assert seen == ["a", "b", "c"]
        assert all(queue.get_task(i).status == "completed" for i in ids)

    def test_failing_handler_exhausts_attempts(self, queue):
        def boom(task):
            raise ValueError("boom")

        pool = WorkerPool(queue, {"promote": boom})
        task_id = queue.enqueue("promote", "x")

        assert pool.drain() == 3
        task = queue.get_task(task_id)
        assert task.status == "failed"
        assert task.error == "ValueError: boom"

    def test_drain_respects_limit(self, queue):
        pool = WorkerPool(queue, {"promote": lambda task: None})
        for i in range(5):
            queue.enqueue("promote", str(i))
        assert pool.drain(limit=2) == 2
        assert queue.count("promote") == 3

    def test_run_once_on_empty_queue(self, queue):
        pool = WorkerPool(queue, {"promote": lambda task: None})
        assert pool.run_once("promote") is False


class TestThreads:

    def test_workers_process_in_background(self, queue):
        done = threading.Event()
        seen = []

        def handler(task):
            seen.append(task.payload)
            if len(seen) == 3:
                done.set()

        pool = WorkerPool(queue, {"promote": handler}, poll_interval=0.05)
        pool.start()
        try:
            for p in ("a", "b", "c"):
                queue.enqueue("promote", p)
            assert done.wait(5)
        finally:
            assert pool.stop(grace=2) is True
        assert not pool.running
        assert sorted(seen) == ["a", "b", "c"]

    def test_one_thread_per_task_type(self, queue):
        pool = WorkerPool(
            queue,
            {"promote": lambda t: None, "index_note": lambda t: None},
            poll_interval=0.05,
        )
        pool.start()
        pool.start()  # no-op while running
        try:
            names = sorted(t.name for t in pool._threads)
            assert names == ["factbase-worker-index_note", "factbase-worker-promote"]
        finally:
            pool.stop(grace=2)

    def test_stop_interrupts_idle_wait(self, queue):
        pool = WorkerPool(queue, {"promote": lambda t: None}, poll_interval=30)
        pool.start()
        time.sleep(0.1)
        start = time.monotonic()
        assert pool.stop(grace=2) is True
        assert time.monotonic() - start < 2

    def test_stuck_handler_is_abandoned(self, queue):
        release = threading.Event()
        started = threading.Event()

        def stuck(task):
            started.set()
            release.wait(10)

        pool = WorkerPool(queue, {"promote": stuck}, poll_interval=0.05)
        queue.enqueue("promote", "slow")
        pool.start()
        try:
            assert started.wait(5)
            assert pool.stop(grace=0.2) is False
        finally:
            release.set()
            pool.stop(grace=2)

    def test_injected_stop_event(self, queue):
        stop = threading.Event()
        pool = WorkerPool(queue, {"promote": lambda t: None}, stop_event=stop)
        assert pool.stop_event is stop

    def test_injected_stop_event_not_rearmed(self, queue):
        stop = threading.Event()
        stop.set()
        pool = WorkerPool(queue, {"promote": lambda t: None}, stop_event=stop, poll_interval=0.05)
        pool.start()
        assert stop.is_set()
        assert pool.stop(grace=2) is True

    def test_restart_after_stop(self, queue):
        seen = []
        pool = WorkerPool(queue, {"promote": lambda t: seen.append(t.payload)}, poll_interval=0.05)
        pool.start()
        assert pool.stop(grace=2) is True
        assert not pool.running

        pool.start()
        assert pool.running
        assert not pool.stop_event.is_set()
        queue.enqueue("promote", "after restart")
        deadline = time.monotonic() + 5
        while not seen and time.monotonic() < deadline:
            time.sleep(0.02)
        assert pool.stop(grace=2) is True
        assert seen == ["after restart"]


class TestIdleHook:

    def test_runs_only_when_queue_is_empty(self, queue):
        calls = []
        ticked = threading.Event()

        def idle():
            calls.append(queue.count("promote"))
            ticked.set()

        queue.enqueue("promote", "x")
        pool = WorkerPool(
            queue, {"promote": lambda t: None}, poll_interval=0.05, idle={"promote": idle}
        )
        pool.start()
        assert ticked.wait(timeout=5)
        assert pool.stop(grace=2) is True
        assert calls and all(pending == 0 for pending in calls)

    def test_failing_hook_keeps_worker_alive(self, queue):
        ticks = []

        def idle():
            ticks.append(1)
            raise RuntimeError("model down")

        pool = WorkerPool(
            queue, {"promote": lambda t: None}, poll_interval=0.02, idle={"promote": idle}
        )
        pool.start()
        deadline = time.monotonic() + 5
        while len(ticks) < 3 and time.monotonic() < deadline:
            time.sleep(0.02)
        assert pool.running
        assert pool.stop(grace=2) is True
        assert len(ticks) >= 3

    def test_drain_does_not_run_hooks(self, queue):
        calls = []
        pool = WorkerPool(queue, {"promote": lambda t: None}, idle={"promote": lambda: calls.append(1)})
        pool.drain()
        assert calls == []
